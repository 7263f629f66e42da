# validate_trust_policy.py
"""
Trust Policy Validator.

Checks who may assume a role: the principal must be explicit, federated
principals must be pinned to an audience and a subject, and the role's
session duration must stay within the IAM bounds.
"""

from __future__ import annotations

import logging
from typing import Any

from least_privilege_validator.policy_document import (
    RULE_UNSUPPORTED_VERSION,
    check_policy_version,
    count_actions,
    ensure_list,
    iter_statements,
    statement_actions,
)
from least_privilege_validator.validation_result import (
    SEVERITY_ERROR,
    SEVERITY_WARNING,
    ValidationStats,
    ValidationViolation,
)

logger = logging.getLogger(__name__)

# Constants
MIN_SESSION_DURATION = 3600  # seconds
MAX_SESSION_DURATION = 43200  # seconds

RULE_WILDCARD_PRINCIPAL = "wildcard-or-missing-principal"
RULE_FEDERATED_MISSING_CONDITION = "federated-trust-missing-audience-subject"
RULE_SESSION_DURATION = "session-duration-out-of-range"
RULE_UNEXPECTED_TRUST_ACTION = "unexpected-trust-action"
RULE_SUBJECT_WILDCARD = "subject-wildcard"
RULE_PREFER_STRING_EQUALS = "prefer-string-equals"

AUTO_FIXABLE_RULES = frozenset({
    RULE_UNSUPPORTED_VERSION,
    RULE_SESSION_DURATION,
    RULE_PREFER_STRING_EQUALS,
})

TRUST_ACTIONS = frozenset({
    "sts:assumerole",
    "sts:assumerolewithwebidentity",
    "sts:assumerolewithsaml",
    "sts:tagsession",
    "sts:setsourceidentity",
    "sts:setcontext",
})

# Subject patterns that narrow an org-wide wildcard to a specific event type
SCOPED_SUBJECT_MARKERS = (":pull_request", ":ref:", ":environment:")


def _location(statement: dict, index: int) -> dict:
    sid = statement.get("Sid")
    return {
        "statement_sid": sid if isinstance(sid, str) and sid.strip() else None,
        "statement_index": index,
    }


def _principal_is_wildcard_or_empty(principal: Any) -> bool:
    """Return True if the principal is absent, empty, or contains a bare "*"."""
    if principal is None or principal in ("", [], {}):
        return True
    if principal == "*":
        return True
    if isinstance(principal, dict):
        values = [v for value in principal.values() for v in ensure_list(value)]
        return not values or any(v == "*" or v in ("", None) for v in values)
    if isinstance(principal, list):
        return "*" in principal
    return False


def claim_prefix(federated: str) -> str:
    """
    Derive the condition-key prefix for a federated identity provider.

    Args:
        federated: Federated principal (provider ARN or provider name)

    Returns:
        "SAML" for SAML providers, the provider host for OIDC provider ARNs,
        otherwise the federated value itself (e.g. "cognito-identity.amazonaws.com")

    """
    if ":saml-provider/" in federated:
        return "SAML"
    marker = ":oidc-provider/"
    if marker in federated:
        return federated.split(marker, 1)[1]
    return federated


def _condition_values(condition: Any, key: str) -> list[Any] | None:
    """Return the values bound to key under any operator, or None when the key is absent."""
    if not isinstance(condition, dict):
        return None
    wanted = key.lower()
    for block in condition.values():
        if not isinstance(block, dict):
            continue
        for block_key, value in block.items():
            if str(block_key).lower() == wanted:
                return ensure_list(value)
    return None


def _check_principal(statement: dict, index: int) -> list[ValidationViolation]:
    principal = statement.get("Principal")
    if not _principal_is_wildcard_or_empty(principal):
        return []
    return [ValidationViolation(
        rule_id=RULE_WILDCARD_PRINCIPAL,
        severity=SEVERITY_ERROR,
        message="Trust policy Principal must name a specific principal (missing, empty, or \"*\")",
        field="Principal",
        current_value=principal,
        auto_fixable=False,
        fix_hint="Set Principal to the specific service, account, or identity provider allowed to assume the role",
        **_location(statement, index),
    )]


def _check_actions(statement: dict, index: int) -> list[ValidationViolation]:
    violations: list[ValidationViolation] = []
    for action in statement_actions(statement):
        if action.lower() not in TRUST_ACTIONS:
            violations.append(ValidationViolation(
                rule_id=RULE_UNEXPECTED_TRUST_ACTION,
                severity=SEVERITY_ERROR,
                message=f'Trust policy action "{action}" is not an sts:AssumeRole* action',
                field="Action",
                current_value=action,
                auto_fixable=False,
                fix_hint="Use sts:AssumeRole, sts:AssumeRoleWithWebIdentity or sts:AssumeRoleWithSAML",
                **_location(statement, index),
            ))
    return violations


def _check_federated_conditions(statement: dict, index: int) -> list[ValidationViolation]:
    violations: list[ValidationViolation] = []
    principal = statement.get("Principal")
    if not isinstance(principal, dict) or "Federated" not in principal:
        return violations

    condition = statement.get("Condition")
    for federated in ensure_list(principal["Federated"]):
        if not isinstance(federated, str):
            continue
        prefix = claim_prefix(federated)
        audience_key = f"{prefix}:aud"
        subject_key = f"{prefix}:sub"

        missing = [key for key in (audience_key, subject_key) if _condition_values(condition, key) is None]
        if missing:
            violations.append(ValidationViolation(
                rule_id=RULE_FEDERATED_MISSING_CONDITION,
                severity=SEVERITY_ERROR,
                message=f"Federated trust for {federated} must constrain {' and '.join(missing)}",
                field="Condition",
                current_value=condition,
                auto_fixable=False,
                fix_hint=f"Add Condition.StringEquals entries for {', '.join(missing)}",
                **_location(statement, index),
            ))
            continue

        for subject in _condition_values(condition, subject_key):
            if not isinstance(subject, str):
                continue
            org_wide = subject.strip() == "*" or (
                ":*" in subject and not any(marker in subject for marker in SCOPED_SUBJECT_MARKERS)
            )
            if org_wide:
                violations.append(ValidationViolation(
                    rule_id=RULE_SUBJECT_WILDCARD,
                    severity=SEVERITY_ERROR,
                    message=f'Subject condition "{subject}" allows any workload of the provider or organization',
                    field="Condition",
                    current_value=subject,
                    auto_fixable=False,
                    fix_hint="Scope the subject to a specific repository and event type, branch, or environment",
                    **_location(statement, index),
                ))
                break

    return violations


def _check_string_like(statement: dict, index: int) -> list[ValidationViolation]:
    violations: list[ValidationViolation] = []
    condition = statement.get("Condition")
    if not isinstance(condition, dict) or not isinstance(condition.get("StringLike"), dict):
        return violations

    for key, value in condition["StringLike"].items():
        values = ensure_list(value)
        if not values or not all(isinstance(v, str) for v in values):
            continue
        if any("*" in v or "?" in v for v in values):
            continue
        violations.append(ValidationViolation(
            rule_id=RULE_PREFER_STRING_EQUALS,
            severity=SEVERITY_WARNING,
            message=f'Prefer StringEquals over StringLike when no wildcards are needed for "{key}"',
            field="Condition",
            current_value={"operator": "StringLike", "key": key, "value": value},
            auto_fixable=True,
            fix_hint=f'Move "{key}" from StringLike to StringEquals',
            fix_data={"condition_key": key, "condition_value": value},
            **_location(statement, index),
        ))
    return violations


def _check_session_duration(max_session_duration: Any) -> list[ValidationViolation]:
    if max_session_duration is None or isinstance(max_session_duration, bool):
        return []
    if not isinstance(max_session_duration, (int, float)):
        return []
    if MIN_SESSION_DURATION <= max_session_duration <= MAX_SESSION_DURATION:
        return []

    clamped = MIN_SESSION_DURATION if max_session_duration < MIN_SESSION_DURATION else MAX_SESSION_DURATION
    return [ValidationViolation(
        rule_id=RULE_SESSION_DURATION,
        severity=SEVERITY_ERROR,
        message=(
            f"max_session_duration {max_session_duration} is outside "
            f"{MIN_SESSION_DURATION}-{MAX_SESSION_DURATION} seconds"
        ),
        field="max_session_duration",
        current_value=max_session_duration,
        auto_fixable=True,
        fix_hint=f"Set max_session_duration to {clamped}",
        fix_data={"max_session_duration": clamped},
    )]


def validate_trust_policy(
    document: Any,
    policy_name: str,
    *,
    max_session_duration: Any = None,
) -> tuple[list[ValidationViolation], ValidationStats]:
    """
    Validate one trust policy document.

    Args:
        document: IAM trust policy document (dict form)
        policy_name: Name of the trust policy, used for logging
        max_session_duration: The role's maximum session duration in seconds

    Returns:
        Tuple of (violations, stats)

    """
    statements = iter_statements(document)
    violations = check_policy_version(document)

    for index, statement in enumerate(statements):
        if statement.get("Effect") != "Allow":
            continue
        principal_violations = _check_principal(statement, index)
        violations.extend(principal_violations)
        violations.extend(_check_actions(statement, index))
        if not principal_violations:
            violations.extend(_check_federated_conditions(statement, index))
        violations.extend(_check_string_like(statement, index))

    violations.extend(_check_session_duration(max_session_duration))

    stats = ValidationStats.from_violations(violations, len(statements), count_actions(document))
    logger.debug("Trust policy %s: %d error(s), %d warning(s)", policy_name, stats.errors, stats.warnings)
    return violations, stats
