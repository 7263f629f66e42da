# synthesize_payloads.py
"""
IAM Payload Synthesis.

Turns a validated formulation into the request parameters for IAM CreateRole,
CreatePolicy and AttachRolePolicy. Nothing is sent to AWS; each payload is
checked offline against the IAM service model that ships with botocore.
"""

from __future__ import annotations

import json
import logging
import re
from functools import lru_cache

import boto3
import botocore.session
from botocore.exceptions import ParamValidationError, UnknownRegionError
from botocore.validate import validate_parameters

from least_privilege_validator.formulation_output import (
    ACCOUNT_ID_PATTERN,
    REGION_PATTERN,
    FormulationConfig,
    FormulationOutput,
)

logger = logging.getLogger(__name__)

# Constants
DEFAULT_PARTITION = "aws"
IAM_SERVICE = "iam"

VALUE_PATTERNS: dict[str, re.Pattern] = {
    "account_id": ACCOUNT_ID_PATTERN,
    "region": REGION_PATTERN,
}

# IAM role and policy names; also used as file names by the CLI
IAM_NAME_PATTERN = re.compile(r"^[\w+=,.@-]+$", re.ASCII)
MAX_ROLE_NAME_LENGTH = 64
MAX_POLICY_NAME_LENGTH = 128


class TemplateResolutionError(ValueError):
    """Raised when template variables used by the formulation have no value."""

    def __init__(self, missing_variables: list[str]):
        self.missing_variables = missing_variables
        super().__init__(
            f"Missing required template variables in config: {', '.join(missing_variables)}. "
            "Add these values to your config file."
        )


class SynthesisError(ValueError):
    """Raised when a synthesized payload does not match the IAM API model."""


def resolve_partition(region: str | None) -> str:
    """
    Resolve the AWS partition for a region.

    Args:
        region: Region name, "*" or None

    Returns:
        Partition name such as "aws", "aws-cn" or "aws-us-gov"

    """
    if not region or region == "*":
        return DEFAULT_PARTITION
    try:
        return boto3.session.Session().get_partition_for_region(region)
    except UnknownRegionError:
        logger.warning("Unknown region %s, assuming partition %s", region, DEFAULT_PARTITION)
        return DEFAULT_PARTITION


def normalize_path(path: str) -> str:
    """Ensure an IAM path starts and ends with "/"."""
    if not path.startswith("/"):
        path = f"/{path}"
    if not path.endswith("/"):
        path = f"{path}/"
    return path


def _is_resolved_value(key: str, value: str) -> bool:
    if key == "region" and value == "*":
        return True
    pattern = VALUE_PATTERNS.get(key)
    return bool(pattern and pattern.match(value))


def resolve_template_variables(formulation: FormulationOutput, config: FormulationConfig) -> FormulationOutput:
    """
    Replace ${name} placeholders in the formulation.

    Only template variables that actually occur in the formulation are
    resolved. The config value wins; a template value is used only when it
    already looks like a real value for that variable.

    Args:
        formulation: Validated (and fixed) formulation
        config: Formulation config supplying account_id and region

    Returns:
        A new formulation with placeholders replaced

    Raises:
        TemplateResolutionError: If a used variable has no usable value

    """
    serialized = json.dumps(formulation.to_dict())
    config_values = {"account_id": config.account_id, "region": config.region}

    resolution: dict[str, str] = {}
    missing: list[str] = []
    for key, template_value in formulation.template_variables.items():
        if f"${{{key}}}" not in serialized:
            continue
        config_value = config_values.get(key)
        if config_value:
            resolution[key] = config_value
        elif _is_resolved_value(key, template_value):
            resolution[key] = template_value
        else:
            missing.append(key)

    if missing:
        raise TemplateResolutionError(missing)

    for key, value in resolution.items():
        serialized = serialized.replace(f"${{{key}}}", value)
    logger.debug("Resolved template variables: %s", ", ".join(resolution) or "none")
    return FormulationOutput.from_dict(json.loads(serialized))


def _validate_payload(operation: str, params: dict) -> None:
    """Check params against the IAM operation's input shape."""
    input_shape = _iam_model().operation_model(operation).input_shape
    try:
        validate_parameters(params, input_shape)
    except ParamValidationError as e:
        msg = f"{operation} payload is invalid: {e}"
        raise SynthesisError(msg) from e


def _check_name(kind: str, name: str, max_length: int) -> None:
    """Reject names IAM would refuse; botocore only checks their length."""
    if len(name) > max_length or not IAM_NAME_PATTERN.match(name):
        msg = f"Invalid {kind} name {name!r}: use up to {max_length} of the characters A-Z a-z 0-9 +=,.@_-"
        raise SynthesisError(msg)


@lru_cache(maxsize=1)
def _iam_model():
    """Load the IAM service model bundled with botocore."""
    return botocore.session.get_session().get_service_model(IAM_SERVICE)


def synthesize_payloads(formulation: FormulationOutput, config: FormulationConfig) -> dict:
    """
    Build IAM request payloads for every role.

    Args:
        formulation: Validated formulation with template variables resolved
        config: Formulation config supplying account_id and region

    Returns:
        {"roles": [{"create_role": ..., "create_policies": [...], "attach_role_policies": [...]}]}

    Raises:
        SynthesisError: If a name or payload fails IAM parameter validation

    """
    partition = resolve_partition(config.region)
    account_id = config.account_id or ""

    roles = []
    for role in formulation.roles:
        _check_name("role", role.role_name, MAX_ROLE_NAME_LENGTH)
        path = normalize_path(role.role_path)

        create_role = {
            "RoleName": role.role_name,
            "AssumeRolePolicyDocument": json.dumps(role.trust_policy),
            "Path": path,
        }
        if role.description:
            create_role["Description"] = role.description
        if role.max_session_duration is not None:
            create_role["MaxSessionDuration"] = role.max_session_duration
        if role.permission_boundary_arn is not None:
            create_role["PermissionsBoundary"] = role.permission_boundary_arn
        _validate_payload("CreateRole", create_role)

        create_policies = []
        attach_role_policies = []
        for policy in role.permission_policies:
            _check_name("policy", policy.policy_name, MAX_POLICY_NAME_LENGTH)
            create_policy = {
                "PolicyName": policy.policy_name,
                "PolicyDocument": json.dumps(policy.policy_document),
                "Path": path,
                "Description": f"Permission policy for role {role.role_name}",
            }
            attach = {
                "RoleName": role.role_name,
                "PolicyArn": f"arn:{partition}:iam::{account_id}:policy{path}{policy.policy_name}",
            }
            _validate_payload("CreatePolicy", create_policy)
            _validate_payload("AttachRolePolicy", attach)
            create_policies.append(create_policy)
            attach_role_policies.append(attach)

        roles.append({
            "create_role": create_role,
            "create_policies": create_policies,
            "attach_role_policies": attach_role_policies,
        })
        logger.info("Synthesized %s: %d policy(ies)", role.role_name, len(create_policies))

    return {"roles": roles}
