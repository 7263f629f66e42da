import pytest
from builders import GITHUB_PROVIDER, github_trust, policy

from least_privilege_validator.validate_trust_policy import claim_prefix, validate_trust_policy


def rule_ids(violations):
    return [v.rule_id for v in violations]


def test_github_oidc_trust_is_valid():
    violations, stats = validate_trust_policy(github_trust(), "app-trust", max_session_duration=3600)

    assert violations == []
    assert stats.total_statements == 1
    assert stats.total_actions == 1


@pytest.mark.parametrize("principal", [
    "*",
    {"Federated": "*"},
    {"AWS": ["arn:aws:iam::${account_id}:root", "*"]},
    {},
    "",
])
def test_wildcard_or_empty_principal_is_an_error(principal):
    statement = {"Sid": "Open", "Effect": "Allow", "Principal": principal, "Action": "sts:AssumeRole"}

    violations, _ = validate_trust_policy(policy(statement), "open-trust")

    assert rule_ids(violations) == ["wildcard-or-missing-principal"]
    assert violations[0].severity == "error"
    assert not violations[0].auto_fixable
    assert violations[0].field == "Principal"


def test_missing_principal_is_an_error():
    statement = {"Sid": "NoPrincipal", "Effect": "Allow", "Action": "sts:AssumeRole"}

    violations, _ = validate_trust_policy(policy(statement), "trust")

    assert rule_ids(violations) == ["wildcard-or-missing-principal"]


def test_service_principal_is_valid():
    statement = {
        "Sid": "Lambda",
        "Effect": "Allow",
        "Principal": {"Service": "lambda.amazonaws.com"},
        "Action": "sts:AssumeRole",
    }

    violations, _ = validate_trust_policy(policy(statement), "lambda-trust")

    assert violations == []


def test_federated_principal_needs_audience_and_subject():
    document = github_trust()
    del document["Statement"][0]["Condition"]["StringEquals"][f"{GITHUB_PROVIDER}:sub"]

    violations, _ = validate_trust_policy(document, "trust")

    assert rule_ids(violations) == ["federated-trust-missing-audience-subject"]
    assert f"{GITHUB_PROVIDER}:sub" in violations[0].message
    assert not violations[0].auto_fixable


def test_federated_principal_without_condition_is_one_error():
    document = github_trust()
    del document["Statement"][0]["Condition"]

    violations, _ = validate_trust_policy(document, "trust")

    assert rule_ids(violations) == ["federated-trust-missing-audience-subject"]


@pytest.mark.parametrize(("federated", "prefix"), [
    ("arn:aws:iam::123456789012:oidc-provider/token.actions.githubusercontent.com", "token.actions.githubusercontent.com"),
    ("arn:aws:iam::123456789012:saml-provider/Okta", "SAML"),
    ("cognito-identity.amazonaws.com", "cognito-identity.amazonaws.com"),
])
def test_claim_prefix(federated, prefix):
    assert claim_prefix(federated) == prefix


def test_saml_trust_uses_saml_claims():
    statement = {
        "Sid": "Saml",
        "Effect": "Allow",
        "Principal": {"Federated": "arn:aws:iam::${account_id}:saml-provider/Okta"},
        "Action": "sts:AssumeRoleWithSAML",
        "Condition": {"StringEquals": {"SAML:aud": "https://signin.aws.amazon.com/saml", "SAML:sub": "ops"}},
    }

    violations, _ = validate_trust_policy(policy(statement), "saml-trust")

    assert violations == []


@pytest.mark.parametrize(("duration", "clamped"), [(900, 3600), (86400, 43200)])
def test_session_duration_is_clamped_to_the_nearer_bound(duration, clamped):
    violations, stats = validate_trust_policy(github_trust(), "trust", max_session_duration=duration)

    assert rule_ids(violations) == ["session-duration-out-of-range"]
    assert violations[0].auto_fixable
    assert violations[0].fix_data == {"max_session_duration": clamped}
    assert stats.auto_fixable_errors == 1


@pytest.mark.parametrize("duration", [3600, 43200, None])
def test_session_duration_bounds_are_inclusive(duration):
    violations, _ = validate_trust_policy(github_trust(), "trust", max_session_duration=duration)

    assert violations == []


def test_unexpected_trust_action():
    document = github_trust()
    document["Statement"][0]["Action"] = ["sts:AssumeRoleWithWebIdentity", "s3:GetObject"]

    violations, _ = validate_trust_policy(document, "trust")

    assert rule_ids(violations) == ["unexpected-trust-action"]
    assert violations[0].current_value == "s3:GetObject"


@pytest.mark.parametrize("subject", ["*", "repo:acme/*:*", "repo:acme/infra:*"])
def test_org_wide_subject_is_an_error(subject):
    violations, _ = validate_trust_policy(github_trust(subject=subject, operator="StringLike"), "trust")

    assert rule_ids(violations) == ["subject-wildcard"]


@pytest.mark.parametrize("subject", [
    "repo:acme/infra:pull_request",
    "repo:acme/infra:ref:refs/heads/*",
    "repo:acme/infra:environment:*",
])
def test_narrowed_subject_wildcards_are_allowed(subject):
    violations, _ = validate_trust_policy(github_trust(subject=subject, operator="StringLike"), "trust")

    assert "subject-wildcard" not in rule_ids(violations)


def test_string_like_without_wildcards_prefers_string_equals():
    document = github_trust()
    condition = document["Statement"][0]["Condition"]
    condition["StringLike"] = {f"{GITHUB_PROVIDER}:sub": condition["StringEquals"].pop(f"{GITHUB_PROVIDER}:sub")}

    violations, stats = validate_trust_policy(document, "trust")

    assert rule_ids(violations) == ["prefer-string-equals"]
    violation = violations[0]
    assert violation.severity == "warning"
    assert violation.auto_fixable
    assert violation.fix_data == {
        "condition_key": f"{GITHUB_PROVIDER}:sub",
        "condition_value": "repo:acme/infra:ref:refs/heads/main",
    }
    assert stats.auto_fixable_warnings == 1


def test_unsupported_version_is_fixable():
    document = github_trust()
    document["Version"] = "2008-10-17"

    violations, _ = validate_trust_policy(document, "trust")

    assert rule_ids(violations) == ["unsupported-policy-version"]
    assert violations[0].fix_data == {"version": "2012-10-17"}
