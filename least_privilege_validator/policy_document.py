# policy_document.py
"""Helpers for reading IAM policy documents in their JSON (dict) form."""

from __future__ import annotations

import json
import re
from typing import Any

from least_privilege_validator.validation_result import SEVERITY_ERROR, ValidationViolation

# Constants
POLICY_VERSION = "2012-10-17"
MAX_POLICY_SIZE = 6144  # AWS managed policy size limit in bytes (whitespace excluded)

RULE_UNSUPPORTED_VERSION = "unsupported-policy-version"

SID_SAFE_PATTERN = re.compile(r"[^A-Za-z0-9]")


def check_policy_version(document: Any) -> list[ValidationViolation]:
    """Flag a missing or unsupported policy-language Version."""
    version = document.get("Version") if isinstance(document, dict) else None
    if version == POLICY_VERSION:
        return []
    return [ValidationViolation(
        rule_id=RULE_UNSUPPORTED_VERSION,
        severity=SEVERITY_ERROR,
        message=f'Policy document must include "Version": "{POLICY_VERSION}"',
        field="Version",
        current_value=version,
        auto_fixable=True,
        fix_hint=f'Set "Version" to "{POLICY_VERSION}"',
        fix_data={"version": POLICY_VERSION},
    )]


def ensure_list(value: Any) -> list[Any]:
    """Return value as a list so we can iterate safely."""
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def iter_statements(document: Any) -> list[dict]:
    """Return the statements of a policy document; a single statement mapping counts as one."""
    if not isinstance(document, dict):
        return []
    return [stmt if isinstance(stmt, dict) else {} for stmt in ensure_list(document.get("Statement"))]


def statement_actions(statement: dict) -> list[str]:
    """Return the action entries of a statement as a list of strings."""
    return [a for a in ensure_list(statement.get("Action")) if isinstance(a, str)]


def statement_resources(statement: dict) -> list[str]:
    """Return the resource entries of a statement as a list of strings."""
    return [r for r in ensure_list(statement.get("Resource")) if isinstance(r, str)]


def count_actions(document: Any) -> int:
    """Count every action entry across all statements."""
    return sum(len(ensure_list(stmt.get("Action"))) for stmt in iter_statements(document))


def estimated_size(document: Any) -> int:
    """Estimate the size IAM charges against the policy limit (compact JSON, UTF-8 bytes)."""
    return len(json.dumps(document, separators=(",", ":")).encode("utf-8"))


def service_prefix(action: str) -> str:
    """Return the lowercase service prefix of an action ("s3:GetObject" -> "s3")."""
    service, sep, _ = action.partition(":")
    return service.lower() if sep else ""


def sid_segment(text: str) -> str:
    """Turn a service or action name into a Sid-safe CamelCase segment."""
    parts = re.split(r"[-_:]", text)
    return "".join(SID_SAFE_PATTERN.sub("", part[:1].upper() + part[1:]) for part in parts)


def generate_sid(statement: dict, index: int, taken: set[str]) -> str:
    """
    Generate a Sid from the statement's primary action and its index.

    Args:
        statement: The statement needing a Sid
        index: Position of the statement in the document
        taken: Sids already used in the document

    Returns:
        A Sid unique with respect to taken

    """
    actions = statement_actions(statement)
    primary = actions[0] if actions else ""
    service, _, name = primary.partition(":")
    base = f"{sid_segment(service)}{sid_segment(name.replace('*', 'All'))}" or "Statement"
    if primary == "*":
        base = "AllActions"
    candidate = f"{base}{index}"
    suffix = 1
    while candidate in taken:
        candidate = f"{base}{index}x{suffix}"
        suffix += 1
    return candidate
