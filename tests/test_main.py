import json

import pytest
from builders import make_formulation, make_role, policy

from least_privilege_validator.main import main


@pytest.fixture
def write_formulation(tmp_path):
    def write(formulation, name="formulation.json"):
        path = tmp_path / name
        path.write_text(json.dumps(formulation.to_dict()), encoding="utf-8")
        return path
    return write


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"account_id": "123456789012", "region": "us-east-1"}), encoding="utf-8")
    return path


@pytest.fixture
def fixable_formulation():
    statement = {"Effect": "Allow", "Action": ["s3:GetObject"], "Resource": "arn:aws:s3:::acme-artifacts/*"}
    return make_formulation(
        make_role("deployer", policies=[policy(statement)]),
        make_role("reader", policies=[policy(dict(statement, Sid="Read"))]),
    )


@pytest.fixture
def invalid_formulation():
    statement = {"Sid": "S3Read", "Effect": "Allow", "Action": ["s3:GetObject"], "Resource": "*"}
    return make_formulation(make_role(policies=[policy(statement)]))


def test_validate_prints_the_report(write_formulation, fixable_formulation, capsys):
    exit_code = main(["validate", str(write_formulation(fixable_formulation))])

    report = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert report["valid"] is True
    assert report["fix_iterations"] == 1
    assert [r["role_name"] for r in report["role_results"]] == ["deployer", "reader"]


def test_validate_exits_non_zero_when_invalid(write_formulation, invalid_formulation, capsys, caplog):
    exit_code = main(["validate", str(write_formulation(invalid_formulation))])

    report = json.loads(capsys.readouterr().out)
    assert exit_code == 1
    assert report["valid"] is False
    assert report["role_results"][0]["policy_results"][1]["violations"][0]["rule_id"] == (
        "wildcard-resource-on-scopable-action"
    )
    assert "Validation found 1 error(s) and 0 warning(s)" in caplog.text


def test_validate_rejects_malformed_json(tmp_path, capsys, caplog):
    path = tmp_path / "broken.json"
    path.write_text("{oops", encoding="utf-8")

    exit_code = main(["validate", str(path)])

    assert exit_code == 1
    assert capsys.readouterr().out == ""
    assert "formulation output is not valid JSON" in caplog.text


def test_validate_reports_missing_file(tmp_path, caplog):
    exit_code = main(["validate", str(tmp_path / "missing.json")])

    assert exit_code == 1
    assert "File not found" in caplog.text


def test_synthesize_to_stdout(write_formulation, fixable_formulation, config_path, capsys):
    exit_code = main(["synthesize", "--input", str(write_formulation(fixable_formulation)), "--config", str(config_path)])

    synthesis = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert [r["create_role"]["RoleName"] for r in synthesis["roles"]] == ["deployer", "reader"]
    document = json.loads(synthesis["roles"][0]["create_policies"][0]["PolicyDocument"])
    assert document["Statement"][0]["Sid"] == "S3GetObject0"
    trust = json.loads(synthesis["roles"][0]["create_role"]["AssumeRolePolicyDocument"])
    assert trust["Statement"][0]["Principal"]["Federated"].startswith("arn:aws:iam::123456789012:")


def test_synthesize_to_file(write_formulation, fixable_formulation, config_path, tmp_path):
    output = tmp_path / "payloads.json"

    exit_code = main([
        "synthesize",
        "--input", str(write_formulation(fixable_formulation)),
        "--config", str(config_path),
        "--output", str(output),
    ])

    assert exit_code == 0
    assert len(json.loads(output.read_text(encoding="utf-8"))["roles"]) == 2


def test_synthesize_to_directory_writes_one_file_per_role(write_formulation, fixable_formulation, config_path, tmp_path):
    output_dir = tmp_path / "payloads"

    exit_code = main([
        "synthesize",
        "--input", str(write_formulation(fixable_formulation)),
        "--config", str(config_path),
        "--output-dir", str(output_dir),
    ])

    assert exit_code == 0
    assert sorted(p.name for p in output_dir.iterdir()) == ["deployer.json", "reader.json"]
    reader = json.loads((output_dir / "reader.json").read_text(encoding="utf-8"))
    assert [r["create_role"]["RoleName"] for r in reader["roles"]] == ["reader"]


def test_synthesize_refuses_invalid_policies(write_formulation, invalid_formulation, config_path, capsys, caplog):
    exit_code = main(["synthesize", "--input", str(write_formulation(invalid_formulation)), "--config", str(config_path)])

    captured = capsys.readouterr()
    assert exit_code == 1
    assert captured.out == ""
    assert '"valid": false' in captured.err
    assert "Cannot synthesize" in caplog.text


def test_synthesize_reports_missing_template_values(write_formulation, fixable_formulation, tmp_path, caplog):
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"region": "us-east-1"}), encoding="utf-8")

    exit_code = main(["synthesize", "--input", str(write_formulation(fixable_formulation)), "--config", str(config)])

    assert exit_code == 1
    assert "Missing required template variables in config: account_id" in caplog.text


def test_synthesize_output_options_are_mutually_exclusive(write_formulation, fixable_formulation, config_path):
    with pytest.raises(SystemExit) as excinfo:
        main([
            "synthesize",
            "--input", str(write_formulation(fixable_formulation)),
            "--config", str(config_path),
            "--output", "a.json",
            "--output-dir", "out",
        ])

    assert excinfo.value.code == 2


def test_synthesize_refuses_role_names_that_escape_the_output_dir(write_formulation, config_path, tmp_path, caplog):
    statement = {"Sid": "Read", "Effect": "Allow", "Action": ["s3:GetObject"], "Resource": "arn:aws:s3:::acme-artifacts/*"}
    formulation = make_formulation(make_role("../escape", policies=[policy(statement)]))
    output_dir = tmp_path / "payloads"

    exit_code = main([
        "synthesize",
        "--input", str(write_formulation(formulation)),
        "--config", str(config_path),
        "--output-dir", str(output_dir),
    ])

    assert exit_code == 1
    assert not (tmp_path / "escape.json").exists()
    assert not output_dir.exists()
    assert "Invalid role name" in caplog.text


@pytest.mark.parametrize("text", [
    '{"roles": [{"role_name": "r", "role_path": "/", "description": "", "max_session_duration": 3600,'
    ' "permission_boundary_arn": null, "trust_policy": {}, "permission_policies": [{"policy_name": "p",'
    ' "policy_document": {}, "estimated_size_bytes": NaN}]}], "template_variables": {}}',
    '{"roles": ' + "[" * 200000 + "]" * 200000 + ', "template_variables": {}}',
])
def test_validate_reports_unparseable_input_without_a_traceback(tmp_path, capsys, caplog, text):
    path = tmp_path / "formulation.json"
    path.write_text(text, encoding="utf-8")

    exit_code = main(["validate", str(path)])

    assert exit_code == 1
    assert capsys.readouterr().out == ""
    assert "❌ formulation output" in caplog.text
