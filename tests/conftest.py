import pytest

from builders import make_formulation, make_role, policy


@pytest.fixture
def s3_read_statement():
    return {
        "Sid": "S3Read",
        "Effect": "Allow",
        "Action": ["s3:GetObject"],
        "Resource": "arn:aws:s3:::acme-artifacts/*",
    }


@pytest.fixture
def valid_formulation(s3_read_statement):
    return make_formulation(make_role(policies=[policy(s3_read_statement)]))
