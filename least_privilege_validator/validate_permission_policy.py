# validate_permission_policy.py
"""
Permission Policy Validator.

Evaluates one IAM permission policy document against the least-privilege rule
set and returns the violations found plus summary stats. Violations are
ordered document-level version check first, then statement by statement in
rule order, then the checks that span statements, then the document size
checks.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from typing import Any

from least_privilege_validator.policy_document import (
    MAX_POLICY_SIZE,
    RULE_UNSUPPORTED_VERSION,
    check_policy_version,
    count_actions,
    ensure_list,
    estimated_size,
    generate_sid,
    iter_statements,
    service_prefix,
    statement_actions,
    statement_resources,
)
from least_privilege_validator.unscoped_actions import DEFAULT_REGISTRY, UnscopedActionRegistry
from least_privilege_validator.validation_result import (
    SEVERITY_ERROR,
    SEVERITY_WARNING,
    ValidationStats,
    ValidationViolation,
)

logger = logging.getLogger(__name__)

# Constants
POLICY_SIZE_WARNING_RATIO = 0.9
MAX_ACTIONS_PER_STATEMENT = 20
MAX_STATEMENTS_PER_POLICY = 10

RULE_WILDCARD_RESOURCE = "wildcard-resource-on-scopable-action"
RULE_WILDCARD_ACTION = "wildcard-action"
RULE_MISSING_SID = "missing-sid"
RULE_DUPLICATE_SID = "duplicate-sid"
RULE_POLICY_SIZE_NEAR_LIMIT = "policy-size-near-limit"
RULE_POLICY_SIZE_EXCEEDED = "policy-size-exceeded"
RULE_DENY_LISTED_ACTION = "deny-listed-action"
RULE_UNSCOPED_ASSUME_ROLE = "unscoped-assume-role"
RULE_NOT_ACTION_USAGE = "not-action-usage"
RULE_HARDCODED_ACCOUNT_ID = "hardcoded-account-id"
RULE_PASS_ROLE_MISSING_CONDITION = "pass-role-missing-service-condition"
RULE_ROLE_SELF_MODIFICATION = "role-self-modification"
RULE_DUPLICATE_ACTION = "duplicate-action-in-statement"
RULE_TOO_MANY_ACTIONS = "too-many-actions"
RULE_OVERLY_BROAD_ACTION = "overly-broad-action"
RULE_CREATE_ROLE_MISSING_BOUNDARY = "create-role-missing-permissions-boundary"
RULE_SERVICE_LINKED_ROLE_MISSING_SERVICE = "service-linked-role-missing-service-name"
RULE_CREATE_ROLE_UNSCOPED_PASS_ROLE = "create-role-with-unscoped-pass-role"
RULE_UNSCOPED_POLICY_MODIFICATION = "unscoped-policy-modification"
RULE_TOO_MANY_STATEMENTS = "too-many-statements"
RULE_DUPLICATE_ACTION_ACROSS_STATEMENTS = "duplicate-action-across-statements"

AUTO_FIXABLE_RULES = frozenset({
    RULE_UNSUPPORTED_VERSION,
    RULE_WILDCARD_RESOURCE,
    RULE_MISSING_SID,
    RULE_DUPLICATE_SID,
    RULE_DUPLICATE_ACTION,
})

OVERLY_BROAD_ACTIONS = frozenset({"ec2:*", "s3:*", "lambda:*"})

DENY_LISTED_ACTIONS = frozenset({
    "organizations:*",
    "account:*",
    "iam:createuser",
    "iam:createaccesskey",
    "iam:createloginprofile",
})

SELF_MODIFY_ACTIONS = frozenset({
    "iam:putrolepolicy",
    "iam:attachrolepolicy",
    "iam:createpolicyversion",
})

ACCOUNT_ID_IN_ARN = re.compile(r"^arn:aws[a-z-]*:[^:]*:[^:]*:\d{12}:")
ROLE_NAME_PLACEHOLDER = "${role_name}"


def _statement_location(statement: dict, index: int) -> dict:
    """Return the statement_sid/statement_index pair for a violation."""
    sid = statement.get("Sid")
    return {
        "statement_sid": sid if isinstance(sid, str) and sid.strip() else None,
        "statement_index": index,
    }


def _has_condition_key(statement: dict, condition_key: str) -> bool:
    """Check whether any condition operator constrains the given key (keys are case-insensitive)."""
    condition = statement.get("Condition")
    if not isinstance(condition, dict):
        return False
    wanted = condition_key.lower()
    for block in condition.values():
        if isinstance(block, dict) and any(str(key).lower() == wanted for key in block):
            return True
    return False


def _narrowed_resources(
    statement: dict,
    actions: list[str],
    resource_index: Mapping[str, list[str]] | None,
) -> list[str] | None:
    """
    Look up narrower ARNs for every action of the statement.

    Args:
        statement: Statement whose Resource contains "*"
        actions: Scopable actions of the statement
        resource_index: Known ARNs per action name, threaded in by the caller

    Returns:
        The narrowed Resource list, or None when the index does not cover every action

    """
    if not resource_index:
        return None
    lowered_index = {str(k).lower(): v for k, v in resource_index.items()}
    narrowed = [r for r in statement_resources(statement) if r != "*"]
    for action in actions:
        arns = lowered_index.get(action.lower())
        if not arns:
            return None
        narrowed.extend(arn for arn in arns if isinstance(arn, str))
    unique = list(dict.fromkeys(narrowed))
    return unique or None


def _check_resource_scoping(
    statement: dict,
    index: int,
    registry: UnscopedActionRegistry,
    resource_index: Mapping[str, list[str]] | None,
) -> list[ValidationViolation]:
    if statement.get("Effect") != "Allow" or "*" not in statement_resources(statement):
        return []

    actions = statement_actions(statement)
    scopable = [a for a in actions if not registry.is_unscoped(a)]
    if not scopable:
        return []

    narrowed = None
    if len(scopable) == len(actions):
        narrowed = _narrowed_resources(statement, scopable, resource_index)

    return [ValidationViolation(
        rule_id=RULE_WILDCARD_RESOURCE,
        severity=SEVERITY_ERROR,
        message=f'Resource "*" on action(s) that support resource-level permissions: {", ".join(scopable)}',
        field="Resource",
        current_value=statement.get("Resource"),
        auto_fixable=narrowed is not None,
        fix_hint="Scope Resource to the specific ARN patterns used by these actions",
        fix_data={"resources": narrowed} if narrowed is not None else None,
        **_statement_location(statement, index),
    )]


def _check_action_scoping(
    statement: dict,
    index: int,
    allowed_service_wildcards: frozenset[str],
) -> list[ValidationViolation]:
    violations: list[ValidationViolation] = []
    if statement.get("Effect") != "Allow":
        return violations

    resources = statement_resources(statement)
    for action in statement_actions(statement):
        if action == "*" or (action.endswith(":*") and service_prefix(action) not in allowed_service_wildcards):
            violations.append(ValidationViolation(
                rule_id=RULE_WILDCARD_ACTION,
                severity=SEVERITY_ERROR,
                message=f'Wildcard action "{action}" is not permitted',
                field="Action",
                current_value=action,
                auto_fixable=False,
                fix_hint=f"Replace {action} with the specific actions this role needs",
                **_statement_location(statement, index),
            ))
            if action.lower() in OVERLY_BROAD_ACTIONS:
                violations.append(ValidationViolation(
                    rule_id=RULE_OVERLY_BROAD_ACTION,
                    severity=SEVERITY_WARNING,
                    message=f'Overly broad action "{action}" detected',
                    field="Action",
                    current_value=action,
                    auto_fixable=False,
                    fix_hint=f"Replace {action} with only the specific actions needed",
                    **_statement_location(statement, index),
                ))

        if action.lower() in DENY_LISTED_ACTIONS:
            violations.append(ValidationViolation(
                rule_id=RULE_DENY_LISTED_ACTION,
                severity=SEVERITY_ERROR,
                message=f'Deny-listed action "{action}" is not permitted',
                field="Action",
                current_value=action,
                auto_fixable=False,
                fix_hint=f'Remove deny-listed action "{action}"',
                **_statement_location(statement, index),
            ))

        if action.lower() == "sts:assumerole" and "*" in resources:
            violations.append(ValidationViolation(
                rule_id=RULE_UNSCOPED_ASSUME_ROLE,
                severity=SEVERITY_ERROR,
                message="Unscoped sts:AssumeRole is not permitted",
                field="Action",
                current_value=action,
                auto_fixable=False,
                fix_hint="Scope sts:AssumeRole to specific role ARNs",
                **_statement_location(statement, index),
            ))

    not_actions = ensure_list(statement.get("NotAction"))
    if not_actions:
        violations.append(ValidationViolation(
            rule_id=RULE_NOT_ACTION_USAGE,
            severity=SEVERITY_WARNING,
            message="NotAction usage detected, review for overly broad permissions",
            field="NotAction",
            current_value=not_actions,
            auto_fixable=False,
            fix_hint="Replace NotAction with an explicit Action list",
            **_statement_location(statement, index),
        ))

    return violations


def _check_statement_ids(
    statement: dict,
    index: int,
    seen_sids: set[str],
    taken_sids: set[str],
) -> list[ValidationViolation]:
    """Flag missing and duplicate Sids; seen_sids and taken_sids are updated in place."""
    sid = statement.get("Sid")
    if not isinstance(sid, str) or not sid.strip():
        generated = generate_sid(statement, index, taken_sids)
        taken_sids.add(generated)
        return [ValidationViolation(
            rule_id=RULE_MISSING_SID,
            severity=SEVERITY_WARNING,
            message="Statement has no Sid",
            field="Sid",
            current_value=sid,
            auto_fixable=True,
            fix_hint=f'Set Sid to "{generated}"',
            statement_index=index,
            fix_data={"sid": generated},
        )]

    if sid not in seen_sids:
        seen_sids.add(sid)
        return []

    candidate = f"{sid}{index}"
    suffix = 1
    while candidate in taken_sids:
        candidate = f"{sid}{index}x{suffix}"
        suffix += 1
    taken_sids.add(candidate)
    return [ValidationViolation(
        rule_id=RULE_DUPLICATE_SID,
        severity=SEVERITY_ERROR,
        message=f'Sid "{sid}" is already used by an earlier statement',
        field="Sid",
        current_value=sid,
        auto_fixable=True,
        fix_hint=f'Rename this statement\'s Sid to "{candidate}"',
        statement_sid=sid,
        statement_index=index,
        fix_data={"sid": candidate},
    )]


def _check_resource_arns(statement: dict, index: int) -> list[ValidationViolation]:
    violations: list[ValidationViolation] = []
    for resource in statement_resources(statement):
        if ACCOUNT_ID_IN_ARN.match(resource):
            violations.append(ValidationViolation(
                rule_id=RULE_HARDCODED_ACCOUNT_ID,
                severity=SEVERITY_ERROR,
                message=f'Resource ARN hardcodes an account ID: "{resource}"',
                field="Resource",
                current_value=resource,
                auto_fixable=False,
                fix_hint="Replace the hardcoded account ID with the ${account_id} template variable",
                **_statement_location(statement, index),
            ))
    return violations


def _check_privilege_escalation(statement: dict, index: int, role_name: str | None) -> list[ValidationViolation]:
    violations: list[ValidationViolation] = []
    if statement.get("Effect") != "Allow":
        return violations

    lowered_actions = [a.lower() for a in statement_actions(statement)]

    if "iam:passrole" in lowered_actions and not _has_condition_key(statement, "iam:PassedToService"):
        violations.append(ValidationViolation(
            rule_id=RULE_PASS_ROLE_MISSING_CONDITION,
            severity=SEVERITY_ERROR,
            message="iam:PassRole must include an iam:PassedToService condition",
            field="Condition",
            current_value=statement.get("Condition"),
            auto_fixable=False,
            fix_hint="Add Condition.StringEquals.iam:PassedToService with the consuming service principal",
            **_statement_location(statement, index),
        ))

    self_modify = [a for a in statement_actions(statement) if a.lower() in SELF_MODIFY_ACTIONS]
    if self_modify:
        targets_self = [
            r for r in statement_resources(statement)
            if r == "*" or ROLE_NAME_PLACEHOLDER in r or (role_name and role_name in r)
        ]
        if targets_self:
            violations.append(ValidationViolation(
                rule_id=RULE_ROLE_SELF_MODIFICATION,
                severity=SEVERITY_ERROR,
                message=f"{', '.join(self_modify)} must not target the role's own ARN or policies",
                field="Resource",
                current_value=targets_self[0],
                auto_fixable=False,
                fix_hint="Scope Resource to exclude the role's own ARN and policies",
                **_statement_location(statement, index),
            ))

    if "iam:createrole" in lowered_actions and not _has_condition_key(statement, "iam:PermissionsBoundary"):
        violations.append(ValidationViolation(
            rule_id=RULE_CREATE_ROLE_MISSING_BOUNDARY,
            severity=SEVERITY_ERROR,
            message="iam:CreateRole should have an iam:PermissionsBoundary condition",
            field="Condition",
            current_value=statement.get("Condition"),
            auto_fixable=False,
            fix_hint="Add Condition.StringEquals.iam:PermissionsBoundary with the boundary policy ARN",
            **_statement_location(statement, index),
        ))

    if "iam:createservicelinkedrole" in lowered_actions and not _has_condition_key(statement, "iam:AWSServiceName"):
        violations.append(ValidationViolation(
            rule_id=RULE_SERVICE_LINKED_ROLE_MISSING_SERVICE,
            severity=SEVERITY_ERROR,
            message="iam:CreateServiceLinkedRole must have an iam:AWSServiceName condition",
            field="Condition",
            current_value=statement.get("Condition"),
            auto_fixable=False,
            fix_hint="Add Condition.StringEquals.iam:AWSServiceName with the service that owns the role",
            **_statement_location(statement, index),
        ))

    wildcard_resource = "*" in statement_resources(statement)
    if wildcard_resource and {"iam:createrole", "iam:passrole"} <= set(lowered_actions):
        violations.append(ValidationViolation(
            rule_id=RULE_CREATE_ROLE_UNSCOPED_PASS_ROLE,
            severity=SEVERITY_ERROR,
            message="When iam:CreateRole is present, iam:PassRole must be scoped to only the created roles",
            field="Resource",
            current_value="*",
            auto_fixable=False,
            fix_hint="Scope iam:PassRole Resource to only the roles created by this deployment",
            **_statement_location(statement, index),
        ))

    policy_modify = [
        a for a in statement_actions(statement)
        if a.lower().startswith(("iam:put", "iam:attach")) and "policy" in a.lower()
    ]
    if wildcard_resource and policy_modify:
        violations.append(ValidationViolation(
            rule_id=RULE_UNSCOPED_POLICY_MODIFICATION,
            severity=SEVERITY_WARNING,
            message=f"{', '.join(policy_modify)} without resource scoping",
            field="Resource",
            current_value="*",
            auto_fixable=False,
            fix_hint="Scope Resource to specific role or policy ARN patterns",
            **_statement_location(statement, index),
        ))

    return violations


def _check_statement_count(statements: list[dict]) -> list[ValidationViolation]:
    if len(statements) <= MAX_STATEMENTS_PER_POLICY:
        return []
    return [ValidationViolation(
        rule_id=RULE_TOO_MANY_STATEMENTS,
        severity=SEVERITY_WARNING,
        message=f"Policy has {len(statements)} statements (recommended max: {MAX_STATEMENTS_PER_POLICY})",
        field="Statement",
        current_value=len(statements),
        auto_fixable=False,
        fix_hint="Consolidate statements or split the policy",
    )]


def _check_cross_statement_actions(statements: list[dict]) -> list[ValidationViolation]:
    """Flag Allow actions granted by more than one statement."""
    occurrences: dict[str, list[int]] = {}
    spelling: dict[str, str] = {}
    for index, statement in enumerate(statements):
        if statement.get("Effect") != "Allow":
            continue
        for action in statement_actions(statement):
            indices = occurrences.setdefault(action.lower(), [])
            spelling.setdefault(action.lower(), action)
            if index not in indices:
                indices.append(index)

    violations: list[ValidationViolation] = []
    for key, indices in occurrences.items():
        if len(indices) < 2:
            continue
        action = spelling[key]
        statement = statements[indices[1]]
        violations.append(ValidationViolation(
            rule_id=RULE_DUPLICATE_ACTION_ACROSS_STATEMENTS,
            severity=SEVERITY_WARNING,
            message=f'Action "{action}" appears in multiple statements (indices: {", ".join(map(str, indices))})',
            field="Action",
            current_value=action,
            auto_fixable=False,
            fix_hint="Keep the action only in the statement with the most specific resource scope",
            **_statement_location(statement, indices[1]),
        ))
    return violations


def _check_action_list(statement: dict, index: int) -> list[ValidationViolation]:
    violations: list[ValidationViolation] = []
    actions = statement_actions(statement)

    deduplicated = list(dict.fromkeys(actions))
    if len(deduplicated) < len(actions):
        duplicates = sorted({a for a in actions if actions.count(a) > 1})
        violations.append(ValidationViolation(
            rule_id=RULE_DUPLICATE_ACTION,
            severity=SEVERITY_ERROR,
            message=f"Duplicate actions within statement: {', '.join(duplicates)}",
            field="Action",
            current_value=duplicates,
            auto_fixable=True,
            fix_hint="Deduplicate actions within the statement",
            fix_data={"actions": deduplicated},
            **_statement_location(statement, index),
        ))

    if len(actions) > MAX_ACTIONS_PER_STATEMENT:
        violations.append(ValidationViolation(
            rule_id=RULE_TOO_MANY_ACTIONS,
            severity=SEVERITY_WARNING,
            message=f"Statement has {len(actions)} actions (recommended max: {MAX_ACTIONS_PER_STATEMENT})",
            field="Action",
            current_value=len(actions),
            auto_fixable=False,
            fix_hint="Split into multiple statements",
            **_statement_location(statement, index),
        ))

    return violations


def _check_policy_size(document: Any, estimated_size_bytes: Any) -> list[ValidationViolation]:
    if (
        isinstance(estimated_size_bytes, (int, float))
        and not isinstance(estimated_size_bytes, bool)
        and math.isfinite(estimated_size_bytes)
    ):
        size = int(estimated_size_bytes)
    else:
        size = estimated_size(document)

    if size > MAX_POLICY_SIZE:
        return [ValidationViolation(
            rule_id=RULE_POLICY_SIZE_EXCEEDED,
            severity=SEVERITY_ERROR,
            message=f"Policy size ({size} bytes) exceeds the {MAX_POLICY_SIZE:,} byte limit",
            field="Policy",
            current_value=size,
            auto_fixable=False,
            fix_hint="Split into multiple policies",
        )]

    if size >= MAX_POLICY_SIZE * POLICY_SIZE_WARNING_RATIO:
        return [ValidationViolation(
            rule_id=RULE_POLICY_SIZE_NEAR_LIMIT,
            severity=SEVERITY_WARNING,
            message=f"Policy size ({size} bytes) is {size / MAX_POLICY_SIZE * 100:.1f}% of the {MAX_POLICY_SIZE:,} byte limit",
            field="Policy",
            current_value=size,
            auto_fixable=False,
            fix_hint="Consider splitting the policy before adding more statements",
        )]

    return []


def validate_permission_policy(
    document: Any,
    policy_name: str,
    *,
    registry: UnscopedActionRegistry = DEFAULT_REGISTRY,
    estimated_size_bytes: Any = None,
    resource_index: Mapping[str, list[str]] | None = None,
    role_name: str | None = None,
    allowed_service_wildcards: frozenset[str] = frozenset(),
) -> tuple[list[ValidationViolation], ValidationStats]:
    """
    Validate one permission policy document.

    Args:
        document: IAM policy document (dict form)
        policy_name: Name of the policy, used for logging
        registry: Actions that may legitimately use Resource "*"
        estimated_size_bytes: Size estimate supplied alongside the document
        resource_index: Known ARNs per action name; makes wildcard resources auto-fixable
        role_name: Role the policy is attached to, for self-modification checks
        allowed_service_wildcards: Service prefixes for which "service:*" is accepted

    Returns:
        Tuple of (violations, stats)

    """
    statements = iter_statements(document)
    violations = check_policy_version(document)

    seen_sids: set[str] = set()
    taken_sids = {s["Sid"] for s in statements if isinstance(s.get("Sid"), str) and s["Sid"].strip()}

    for index, statement in enumerate(statements):
        violations.extend(_check_resource_scoping(statement, index, registry, resource_index))
        violations.extend(_check_action_scoping(statement, index, allowed_service_wildcards))
        violations.extend(_check_statement_ids(statement, index, seen_sids, taken_sids))
        violations.extend(_check_resource_arns(statement, index))
        violations.extend(_check_privilege_escalation(statement, index, role_name))
        violations.extend(_check_action_list(statement, index))

    violations.extend(_check_statement_count(statements))
    violations.extend(_check_cross_statement_actions(statements))
    violations.extend(_check_policy_size(document, estimated_size_bytes))

    stats = ValidationStats.from_violations(violations, len(statements), count_actions(document))
    logger.debug("Permission policy %s: %d error(s), %d warning(s)", policy_name, stats.errors, stats.warnings)
    return violations, stats
