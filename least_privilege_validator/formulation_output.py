# formulation_output.py
"""
Formulation Output Parsing.

Loads the formulated role set (trust policy plus permission policies per role)
and the formulation config from JSON text into typed records. Keys that can
pollute object prototypes in permissive deserializers are stripped before
anything else looks at the data.
"""

from __future__ import annotations

import copy
import json
import math
import re
from dataclasses import dataclass, field
from typing import Any

from least_privilege_validator.policy_document import estimated_size, iter_statements

# Constants
MAX_ROLES = 10
MAX_POLICIES_PER_ROLE = 10
MAX_STATEMENTS = 100
MAX_NESTING_DEPTH = 64
DEFAULT_ROLE_PATH = "/"
DEFAULT_MAX_SESSION_DURATION = 3600

DANGEROUS_KEYS = frozenset({"__proto__", "constructor", "prototype"})

ACCOUNT_ID_PATTERN = re.compile(r"^\d{12}$")
REGION_PATTERN = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d+$")


class FormulationOutputError(ValueError):
    """Raised when the formulation output cannot be parsed."""


class FormulationConfigError(ValueError):
    """Raised when the formulation config cannot be parsed."""


def strip_dangerous_keys(value: Any, depth: int = 0) -> Any:
    """
    Return a copy of a decoded JSON value without prototype-polluting keys.

    Args:
        value: Decoded JSON value
        depth: Current nesting depth

    Returns:
        The sanitized value

    Raises:
        ValueError: If the value is nested deeper than MAX_NESTING_DEPTH

    """
    if not isinstance(value, (dict, list)):
        return value
    if depth > MAX_NESTING_DEPTH:
        msg = "JSON nesting too deep"
        raise ValueError(msg)
    if isinstance(value, list):
        return [strip_dangerous_keys(item, depth + 1) for item in value]
    return {
        key: strip_dangerous_keys(item, depth + 1)
        for key, item in value.items()
        if key not in DANGEROUS_KEYS
    }


def _reject_constant(name: str) -> Any:
    msg = f"non-finite number {name} is not allowed"
    raise ValueError(msg)


def _load_sanitized(text: str, what: str, error_cls: type[ValueError]) -> Any:
    try:
        data = json.loads(text, parse_constant=_reject_constant)
    except RecursionError as e:
        msg = f"{what} could not be sanitized (JSON nesting too deep)"
        raise error_cls(msg) from e
    except ValueError as e:
        msg = f"{what} is not valid JSON ({e})"
        raise error_cls(msg) from e
    try:
        return strip_dangerous_keys(data)
    except ValueError as e:
        msg = f"{what} could not be sanitized ({e})"
        raise error_cls(msg) from e


@dataclass
class PermissionPolicy:
    """A named permission policy of a role."""

    policy_name: str
    policy_document: dict
    estimated_size_bytes: int | float | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary format for JSON serialization."""
        return {
            "policy_name": self.policy_name,
            "policy_document": self.policy_document,
            "estimated_size_bytes": (
                estimated_size(self.policy_document) if self.estimated_size_bytes is None else self.estimated_size_bytes
            ),
        }


@dataclass
class RoleDefinition:
    """A formulated role: one trust policy and its permission policies."""

    role_name: str
    trust_policy: dict
    permission_policies: list[PermissionPolicy] = field(default_factory=list)
    role_path: str = DEFAULT_ROLE_PATH
    description: str = ""
    max_session_duration: int | None = DEFAULT_MAX_SESSION_DURATION
    permission_boundary_arn: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary format for JSON serialization."""
        return {
            "role_name": self.role_name,
            "role_path": self.role_path,
            "description": self.description,
            "max_session_duration": self.max_session_duration,
            "permission_boundary_arn": self.permission_boundary_arn,
            "trust_policy": self.trust_policy,
            "permission_policies": [p.to_dict() for p in self.permission_policies],
        }


@dataclass
class FormulationOutput:
    """The complete formulated role set."""

    roles: list[RoleDefinition] = field(default_factory=list)
    template_variables: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary format for JSON serialization."""
        return {
            "roles": [role.to_dict() for role in self.roles],
            "template_variables": dict(self.template_variables),
        }

    @classmethod
    def from_dict(cls, data: Any) -> FormulationOutput:
        """
        Build a FormulationOutput from decoded, sanitized JSON.

        Args:
            data: Decoded JSON value

        Returns:
            The typed formulation output (documents are deep-copied)

        Raises:
            FormulationOutputError: If a required field is missing or malformed

        """
        if not isinstance(data, dict):
            msg = "formulation output must be a JSON object"
            raise FormulationOutputError(msg)

        roles = data.get("roles")
        if not isinstance(roles, list):
            msg = 'formulation output is missing the "roles" list'
            raise FormulationOutputError(msg)
        if len(roles) > MAX_ROLES:
            msg = f"formulation output has {len(roles)} roles (max {MAX_ROLES})"
            raise FormulationOutputError(msg)

        if "template_variables" not in data:
            msg = 'formulation output is missing "template_variables"'
            raise FormulationOutputError(msg)
        template_variables = data["template_variables"]
        if not isinstance(template_variables, dict) or not all(
            isinstance(v, str) for v in template_variables.values()
        ):
            msg = '"template_variables" must map names to strings'
            raise FormulationOutputError(msg)

        return cls(
            roles=[_parse_role(role, i) for i, role in enumerate(roles)],
            template_variables=dict(template_variables),
        )


def _require(record: dict, key: str, kind: type | tuple[type, ...], where: str, *, nullable: bool = False) -> Any:
    if key not in record:
        msg = f'{where}: "{key}" is missing'
        raise FormulationOutputError(msg)
    value = record[key]
    if value is None and nullable:
        return None
    if not isinstance(value, kind) or isinstance(value, bool):
        msg = f'{where}: "{key}" has the wrong type'
        raise FormulationOutputError(msg)
    return value


def _parse_document(value: Any, where: str) -> dict:
    if not isinstance(value, dict):
        msg = f"{where}: policy document must be a JSON object"
        raise FormulationOutputError(msg)
    if len(iter_statements(value)) > MAX_STATEMENTS:
        msg = f"{where}: policy document has more than {MAX_STATEMENTS} statements"
        raise FormulationOutputError(msg)
    return copy.deepcopy(value)


def _parse_policy(policy: Any, where: str) -> PermissionPolicy:
    if not isinstance(policy, dict):
        msg = f"{where}: permission policy must be a JSON object"
        raise FormulationOutputError(msg)
    name = _require(policy, "policy_name", str, where)
    document = _parse_document(_require(policy, "policy_document", dict, where), f"{where}.{name}")
    size = _require(policy, "estimated_size_bytes", (int, float), where)
    if not math.isfinite(size) or size < 0:
        msg = f'{where}: "estimated_size_bytes" must be a finite, non-negative number'
        raise FormulationOutputError(msg)
    return PermissionPolicy(policy_name=name, policy_document=document, estimated_size_bytes=size)


def _parse_role(role: Any, index: int) -> RoleDefinition:
    where = f"roles[{index}]"
    if not isinstance(role, dict):
        msg = f"{where} must be a JSON object"
        raise FormulationOutputError(msg)

    name = _require(role, "role_name", str, where)
    where = f"{where} ({name})"

    policies = _require(role, "permission_policies", list, where)
    if len(policies) > MAX_POLICIES_PER_ROLE:
        msg = f"{where}: {len(policies)} permission policies (max {MAX_POLICIES_PER_ROLE})"
        raise FormulationOutputError(msg)

    return RoleDefinition(
        role_name=name,
        trust_policy=_parse_document(_require(role, "trust_policy", dict, where), f"{where}.trust_policy"),
        permission_policies=[
            _parse_policy(policy, f"{where}.permission_policies[{i}]") for i, policy in enumerate(policies)
        ],
        role_path=_require(role, "role_path", str, where),
        description=_require(role, "description", str, where),
        max_session_duration=_require(role, "max_session_duration", int, where),
        permission_boundary_arn=_require(role, "permission_boundary_arn", str, where, nullable=True),
    )


def parse_formulation_output(text: str) -> FormulationOutput:
    """
    Parse formulation output JSON text.

    Args:
        text: Raw file contents

    Returns:
        The typed, sanitized formulation output

    Raises:
        FormulationOutputError: If the text is not valid JSON or a required field is malformed

    """
    data = _load_sanitized(text, "formulation output", FormulationOutputError)
    return FormulationOutput.from_dict(data)


@dataclass(frozen=True)
class FormulationConfig:
    """Deployment target values used to resolve template variables."""

    account_id: str | None = None
    region: str | None = None


def parse_formulation_config(text: str) -> FormulationConfig:
    """
    Parse formulation config JSON text.

    Args:
        text: Raw file contents

    Returns:
        The account id and region (either may be None)

    Raises:
        FormulationConfigError: If the text is not valid JSON or a value is malformed

    """
    data = _load_sanitized(text, "configuration file", FormulationConfigError)
    if not isinstance(data, dict):
        msg = "configuration file must be a JSON object"
        raise FormulationConfigError(msg)

    account_id = data.get("account_id")
    if account_id is not None and (not isinstance(account_id, str) or not ACCOUNT_ID_PATTERN.match(account_id)):
        msg = f'"account_id" must be a 12-digit AWS account ID, got {account_id!r}'
        raise FormulationConfigError(msg)

    region = data.get("region")
    if region is not None and (not isinstance(region, str) or not (region == "*" or REGION_PATTERN.match(region))):
        msg = f'"region" must be an AWS region name or "*", got {region!r}'
        raise FormulationConfigError(msg)

    return FormulationConfig(account_id=account_id, region=region)
