import json
import sys

import pytest
from builders import github_trust, make_formulation, make_role, policy

from least_privilege_validator.formulation_output import (
    MAX_NESTING_DEPTH,
    MAX_POLICIES_PER_ROLE,
    MAX_ROLES,
    FormulationConfig,
    FormulationConfigError,
    FormulationOutputError,
    parse_formulation_config,
    parse_formulation_output,
    strip_dangerous_keys,
)


def formulation_json(roles=None, **extra):
    data = {
        "roles": roles if roles is not None else [
            {
                "role_name": "app-deploy",
                "role_path": "/ci/",
                "description": "Deploys the app",
                "max_session_duration": 3600,
                "permission_boundary_arn": None,
                "trust_policy": github_trust(),
                "permission_policies": [
                    {
                        "policy_name": "app-deploy-s3",
                        "policy_document": policy(
                            {"Sid": "Get", "Effect": "Allow", "Action": ["s3:GetObject"], "Resource": "arn:aws:s3:::a/*"}
                        ),
                        "estimated_size_bytes": 120,
                    },
                ],
            },
        ],
        "template_variables": {"account_id": "<ACCOUNT_ID>"},
    }
    data.update(extra)
    return json.dumps(data)


def test_parses_a_complete_formulation():
    formulation = parse_formulation_output(formulation_json())

    role = formulation.roles[0]
    assert role.role_name == "app-deploy"
    assert role.role_path == "/ci/"
    assert role.max_session_duration == 3600
    assert role.permission_boundary_arn is None
    assert role.permission_policies[0].policy_name == "app-deploy-s3"
    assert role.permission_policies[0].estimated_size_bytes == 120
    assert formulation.template_variables == {"account_id": "<ACCOUNT_ID>"}


def test_to_dict_round_trips():
    text = formulation_json()

    formulation = parse_formulation_output(text)

    assert formulation.to_dict() == json.loads(text)
    assert parse_formulation_output(json.dumps(formulation.to_dict())) == formulation


@pytest.mark.parametrize("field", [
    "role_path",
    "description",
    "max_session_duration",
    "permission_boundary_arn",
    "trust_policy",
])
def test_required_role_fields_must_be_present(field):
    data = json.loads(formulation_json())
    del data["roles"][0][field]

    with pytest.raises(FormulationOutputError, match=f'"{field}" is missing'):
        parse_formulation_output(json.dumps(data))


@pytest.mark.parametrize("field", ["policy_document", "estimated_size_bytes"])
def test_required_policy_fields_must_be_present(field):
    data = json.loads(formulation_json())
    del data["roles"][0]["permission_policies"][0][field]

    with pytest.raises(FormulationOutputError, match=f'"{field}" is missing'):
        parse_formulation_output(json.dumps(data))


def test_template_variables_must_be_present():
    data = json.loads(formulation_json())
    del data["template_variables"]

    with pytest.raises(FormulationOutputError, match="template_variables"):
        parse_formulation_output(json.dumps(data))


def test_permission_boundary_may_be_null_or_a_string():
    data = json.loads(formulation_json())
    data["roles"][0]["permission_boundary_arn"] = "arn:aws:iam::${account_id}:policy/boundary"

    formulation = parse_formulation_output(json.dumps(data))

    assert formulation.roles[0].permission_boundary_arn == "arn:aws:iam::${account_id}:policy/boundary"


@pytest.mark.parametrize("size", ["NaN", "Infinity", "-Infinity"])
def test_non_finite_numbers_are_rejected(size):
    text = formulation_json().replace('"estimated_size_bytes": 120', f'"estimated_size_bytes": {size}')

    with pytest.raises(FormulationOutputError, match="not valid JSON"):
        parse_formulation_output(text)


@pytest.mark.parametrize("size", ["1e400", "-5"])
def test_out_of_range_size_estimates_are_rejected(size):
    text = formulation_json().replace('"estimated_size_bytes": 120', f'"estimated_size_bytes": {size}')

    with pytest.raises(FormulationOutputError, match="finite, non-negative"):
        parse_formulation_output(text)


def test_invalid_json_names_the_stage():
    with pytest.raises(FormulationOutputError, match="formulation output is not valid JSON"):
        parse_formulation_output("{not json")


@pytest.mark.parametrize("payload", [
    [],
    {"template_variables": {}},
    {"roles": [{"trust_policy": {}, "permission_policies": []}]},
    {"roles": [{"role_name": "r", "permission_policies": []}]},
    {"roles": [{"role_name": "r", "trust_policy": {}}]},
    {"roles": [{"role_name": "r", "trust_policy": {}, "permission_policies": [{"policy_name": "p"}]}]},
    {"roles": [{"role_name": "r", "trust_policy": {}, "permission_policies": [], "max_session_duration": "1h"}]},
    {"roles": [], "template_variables": {"account_id": 123}},
])
def test_missing_or_malformed_fields_are_rejected(payload):
    with pytest.raises(FormulationOutputError):
        parse_formulation_output(json.dumps(payload))


def test_limits_are_enforced():
    role = json.loads(formulation_json())["roles"][0]
    with pytest.raises(FormulationOutputError, match="roles"):
        parse_formulation_output(formulation_json(roles=[role] * (MAX_ROLES + 1)))

    policies = [
        {"policy_name": f"p{i}", "policy_document": {}, "estimated_size_bytes": 2}
        for i in range(MAX_POLICIES_PER_ROLE + 1)
    ]
    with pytest.raises(FormulationOutputError, match="permission policies"):
        parse_formulation_output(formulation_json(roles=[dict(role, permission_policies=policies)]))

    statements = [{"Sid": f"S{i}"} for i in range(101)]
    with pytest.raises(FormulationOutputError, match="statements"):
        parse_formulation_output(formulation_json(roles=[dict(role, trust_policy={"Statement": statements})]))


def test_prototype_polluting_keys_are_stripped():
    text = formulation_json(__proto__={"admin": True})
    data = json.loads(text)
    data["roles"][0]["trust_policy"]["constructor"] = {"prototype": 1}
    data["roles"][0]["trust_policy"]["Statement"][0]["prototype"] = "x"

    formulation = parse_formulation_output(json.dumps(data))

    trust = formulation.roles[0].trust_policy
    assert "constructor" not in trust
    assert "prototype" not in trust["Statement"][0]


def test_strip_dangerous_keys_rejects_deep_nesting():
    nested = current = {}
    for _ in range(MAX_NESTING_DEPTH + 2):
        current["child"] = {}
        current = current["child"]

    with pytest.raises(ValueError, match="too deep"):
        strip_dangerous_keys(nested)


def test_deeply_nested_input_is_a_parse_error():
    text = '{"roles": ' + "[" * 70 + "]" * 70 + "}"

    with pytest.raises(FormulationOutputError, match="could not be sanitized"):
        parse_formulation_output(text)


def test_input_deeper_than_the_interpreter_can_decode_is_a_parse_error():
    depth = sys.getrecursionlimit() * 200
    text = '{"roles": ' + "[" * depth + "]" * depth + ', "template_variables": {}}'

    with pytest.raises(FormulationOutputError, match="nesting too deep"):
        parse_formulation_output(text)


def test_builders_match_the_parsed_shape():
    formulation = make_formulation(make_role())

    assert parse_formulation_output(json.dumps(formulation.to_dict())) == formulation


def test_parses_config():
    config = parse_formulation_config('{"account_id": "123456789012", "region": "eu-west-1", "github_org": "acme"}')

    assert config == FormulationConfig(account_id="123456789012", region="eu-west-1")


def test_config_values_are_optional():
    assert parse_formulation_config("{}") == FormulationConfig()
    assert parse_formulation_config('{"region": "*"}').region == "*"


@pytest.mark.parametrize("text", [
    "nope",
    "[]",
    '{"account_id": "12345"}',
    '{"account_id": 123456789012}',
    '{"region": "moon-base-1a"}',
])
def test_invalid_config_is_rejected(text):
    with pytest.raises(FormulationConfigError):
        parse_formulation_config(text)
