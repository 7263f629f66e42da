# fix_policy.py
"""
Policy Fixer.

Applies the remedies carried by auto-fixable violations to a copy of a policy
document. Each rule id maps to one small transform in FIX_TRANSFORMS; a
transform returns the repaired target, or None when the violation's fix data
does not fit the document. Such violations are reported back as skipped so
the caller can stop retrying them.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from least_privilege_validator import validate_permission_policy as permission_rules
from least_privilege_validator import validate_trust_policy as trust_rules
from least_privilege_validator.policy_document import POLICY_VERSION, iter_statements, statement_actions
from least_privilege_validator.validation_result import ValidationViolation

logger = logging.getLogger(__name__)


class FixerDispatchError(LookupError):
    """Raised when no transform is registered for a rule id."""


@dataclass(frozen=True)
class FixTarget:
    """A policy document plus the role value fixed alongside it."""

    document: Any
    max_session_duration: int | None = None


@dataclass(frozen=True)
class FixOutcome:
    """Result of one fixing pass over a single policy."""

    applied: bool
    target: FixTarget
    applied_rule_ids: list[str] = field(default_factory=list)
    skipped: list[ValidationViolation] = field(default_factory=list)
    reason: str | None = None


Transform = Callable[[FixTarget, ValidationViolation], "FixTarget | None"]


def _statement_copy(target: FixTarget, violation: ValidationViolation) -> tuple[dict, dict] | None:
    """Deep-copy the document and return (document, statement) for the violation's statement."""
    index = violation.statement_index
    if not isinstance(target.document, dict) or not isinstance(index, int) or isinstance(index, bool):
        return None
    document = copy.deepcopy(target.document)
    statements = document.get("Statement")
    if isinstance(statements, dict) and index == 0:
        return document, statements
    if not isinstance(statements, list) or not 0 <= index < len(statements):
        return None
    statement = statements[index]
    if not isinstance(statement, dict):
        return None
    return document, statement


def _assign_sid(target: FixTarget, violation: ValidationViolation) -> FixTarget | None:
    sid = (violation.fix_data or {}).get("sid")
    if not isinstance(sid, str) or not sid.strip():
        return None
    located = _statement_copy(target, violation)
    if located is None:
        return None
    document, statement = located
    taken = {s.get("Sid") for i, s in enumerate(iter_statements(document)) if i != violation.statement_index}
    if sid in taken:
        return None
    statement["Sid"] = sid
    return replace(target, document=document)


def _narrow_resource(target: FixTarget, violation: ValidationViolation) -> FixTarget | None:
    resources = (violation.fix_data or {}).get("resources")
    if not isinstance(resources, list) or not resources:
        return None
    if not all(isinstance(r, str) and r and r != "*" for r in resources):
        return None
    located = _statement_copy(target, violation)
    if located is None:
        return None
    document, statement = located
    statement["Resource"] = resources[0] if len(resources) == 1 else list(resources)
    return replace(target, document=document)


def _rewrite_version(target: FixTarget, violation: ValidationViolation) -> FixTarget | None:
    version = (violation.fix_data or {}).get("version")
    if version != POLICY_VERSION or not isinstance(target.document, dict):
        return None
    document = copy.deepcopy(target.document)
    # Version leads the document
    rewritten = {"Version": version, **{k: v for k, v in document.items() if k != "Version"}}
    return replace(target, document=rewritten)


def _clamp_session_duration(target: FixTarget, violation: ValidationViolation) -> FixTarget | None:
    duration = (violation.fix_data or {}).get("max_session_duration")
    if not isinstance(duration, int) or isinstance(duration, bool):
        return None
    if not trust_rules.MIN_SESSION_DURATION <= duration <= trust_rules.MAX_SESSION_DURATION:
        return None
    return replace(target, document=copy.deepcopy(target.document), max_session_duration=duration)


def _dedupe_actions(target: FixTarget, violation: ValidationViolation) -> FixTarget | None:
    actions = (violation.fix_data or {}).get("actions")
    if not isinstance(actions, list) or not actions or not all(isinstance(a, str) for a in actions):
        return None
    located = _statement_copy(target, violation)
    if located is None:
        return None
    document, statement = located
    # Only reorder or drop repeats; never introduce actions
    if set(actions) != set(statement_actions(statement)) or len(set(actions)) != len(actions):
        return None
    statement["Action"] = list(actions)
    return replace(target, document=document)


def _prefer_string_equals(target: FixTarget, violation: ValidationViolation) -> FixTarget | None:
    fix_data = violation.fix_data or {}
    key = fix_data.get("condition_key")
    if not isinstance(key, str) or "condition_value" not in fix_data:
        return None
    located = _statement_copy(target, violation)
    if located is None:
        return None
    document, statement = located

    condition = statement.get("Condition")
    string_like = condition.get("StringLike") if isinstance(condition, dict) else None
    if not isinstance(string_like, dict) or key not in string_like:
        return None
    if string_like[key] != fix_data["condition_value"]:
        return None

    string_equals = condition.setdefault("StringEquals", {})
    if not isinstance(string_equals, dict):
        return None
    if key in string_equals and string_equals[key] != string_like[key]:
        return None

    string_equals[key] = string_like.pop(key)
    if not string_like:
        del condition["StringLike"]
    return replace(target, document=document)


FIX_TRANSFORMS: dict[str, Transform] = {
    permission_rules.RULE_UNSUPPORTED_VERSION: _rewrite_version,
    permission_rules.RULE_MISSING_SID: _assign_sid,
    permission_rules.RULE_DUPLICATE_SID: _assign_sid,
    permission_rules.RULE_WILDCARD_RESOURCE: _narrow_resource,
    permission_rules.RULE_DUPLICATE_ACTION: _dedupe_actions,
    trust_rules.RULE_SESSION_DURATION: _clamp_session_duration,
    trust_rules.RULE_PREFER_STRING_EQUALS: _prefer_string_equals,
}


def _check_totality() -> None:
    """Fail at import if an auto-fixable rule has no transform."""
    missing = sorted((permission_rules.AUTO_FIXABLE_RULES | trust_rules.AUTO_FIXABLE_RULES) - set(FIX_TRANSFORMS))
    if missing:
        msg = f"No fix transform registered for auto-fixable rule(s): {', '.join(missing)}"
        raise RuntimeError(msg)


_check_totality()


def dispatch(rule_id: str) -> Transform:
    """
    Look up the transform for a rule id.

    Raises:
        FixerDispatchError: If no transform is registered for rule_id

    """
    try:
        return FIX_TRANSFORMS[rule_id]
    except KeyError:
        msg = f"No fix transform registered for rule {rule_id!r}"
        raise FixerDispatchError(msg) from None


def apply_fixes(target: FixTarget, violations: list[ValidationViolation]) -> FixOutcome:
    """
    Apply every auto-fixable violation's remedy to a copy of the target.

    Args:
        target: The policy document (and companion session duration) to repair
        violations: Violations reported for this policy; non-auto-fixable ones are ignored

    Returns:
        FixOutcome with the repaired target, the rule ids applied, and the
        violations that could not be applied

    """
    working = target
    applied_rule_ids: list[str] = []
    skipped: list[ValidationViolation] = []

    for violation in violations:
        if not violation.auto_fixable:
            continue

        try:
            transform = dispatch(violation.rule_id)
        except FixerDispatchError as e:
            logger.error("❌ %s", e)
            skipped.append(violation)
            continue

        if not isinstance(violation.fix_data, dict):
            logger.warning("Skipping %s at statement %s: no fix data", violation.rule_id, violation.statement_index)
            skipped.append(violation)
            continue

        fixed = transform(working, violation)
        if fixed is None or fixed == working:
            logger.warning(
                "Skipping %s at statement %s: fix data does not apply",
                violation.rule_id, violation.statement_index,
            )
            skipped.append(violation)
            continue

        working = fixed
        applied_rule_ids.append(violation.rule_id)

    if not applied_rule_ids:
        return FixOutcome(
            applied=False,
            target=target,
            skipped=skipped,
            reason="no applicable auto-fixable violations",
        )
    return FixOutcome(applied=True, target=working, applied_rule_ids=applied_rule_ids, skipped=skipped)
