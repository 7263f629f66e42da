# validate_and_fix.py
"""
Validate-and-Fix Orchestrator.

Validates every role's trust and permission policies, repairs the ones with
auto-fixable violations, and re-validates until nothing actionable remains or
MAX_ITERATIONS fixing passes have run.

    Validating -> Deciding -> (Fixing -> Validating)* -> Done

A violation the fixer could not apply is remembered per policy by its
(rule_id, statement_index, field) key and reported as not auto-fixable for
the rest of the run, so every pass either makes progress or shrinks the set
of actionable violations.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from least_privilege_validator.fix_policy import FixTarget, apply_fixes
from least_privilege_validator.formulation_output import FormulationOutput, PermissionPolicy, RoleDefinition
from least_privilege_validator.policy_document import estimated_size
from least_privilege_validator.unscoped_actions import DEFAULT_REGISTRY, UnscopedActionRegistry
from least_privilege_validator.validate_permission_policy import validate_permission_policy
from least_privilege_validator.validate_trust_policy import validate_trust_policy
from least_privilege_validator.validation_result import (
    POLICY_TYPE_PERMISSION,
    POLICY_TYPE_TRUST,
    PolicyValidationResult,
    RoleValidationResult,
    ValidationOutput,
    ValidationStats,
    ValidationViolation,
)

logger = logging.getLogger(__name__)

# Constants
MAX_ITERATIONS = 5
TRUST_POLICY_SUFFIX = "-trust"


@dataclass
class _PolicySlot:
    """Working state of one policy across iterations."""

    policy_name: str
    policy_type: str
    target: FixTarget
    estimated_size_bytes: Any = None
    fixed: bool = False
    skip_keys: set[tuple] = field(default_factory=set)
    result: PolicyValidationResult | None = None

    def actionable(self) -> list[ValidationViolation]:
        return [v for v in self.result.violations if v.auto_fixable] if self.result else []


@dataclass
class _RoleSlot:
    role: RoleDefinition
    trust: _PolicySlot
    permissions: list[_PolicySlot]

    @property
    def policies(self) -> list[_PolicySlot]:
        return [self.trust, *self.permissions]


def _build_slots(formulation: FormulationOutput) -> list[_RoleSlot]:
    return [
        _RoleSlot(
            role=role,
            trust=_PolicySlot(
                policy_name=f"{role.role_name}{TRUST_POLICY_SUFFIX}",
                policy_type=POLICY_TYPE_TRUST,
                target=FixTarget(copy.deepcopy(role.trust_policy), role.max_session_duration),
            ),
            permissions=[
                _PolicySlot(
                    policy_name=policy.policy_name,
                    policy_type=POLICY_TYPE_PERMISSION,
                    target=FixTarget(copy.deepcopy(policy.policy_document)),
                    estimated_size_bytes=policy.estimated_size_bytes,
                )
                for policy in role.permission_policies
            ],
        )
        for role in formulation.roles
    ]


def _validate_slot(
    slot: _PolicySlot,
    role_name: str,
    registry: UnscopedActionRegistry,
    resource_index: Mapping[str, list[str]] | None,
) -> PolicyValidationResult:
    """Validate one policy and demote violations already known to be unfixable."""
    if slot.policy_type == POLICY_TYPE_TRUST:
        violations, stats = validate_trust_policy(
            slot.target.document,
            slot.policy_name,
            max_session_duration=slot.target.max_session_duration,
        )
    else:
        violations, stats = validate_permission_policy(
            slot.target.document,
            slot.policy_name,
            registry=registry,
            # The supplied estimate describes the document as formulated
            estimated_size_bytes=None if slot.fixed else slot.estimated_size_bytes,
            resource_index=resource_index,
            role_name=role_name,
        )

    if slot.skip_keys:
        violations = [
            replace(v, auto_fixable=False) if v.auto_fixable and v.key in slot.skip_keys else v
            for v in violations
        ]
        stats = ValidationStats.from_violations(violations, stats.total_statements, stats.total_actions)

    return PolicyValidationResult(
        policy_name=slot.policy_name,
        policy_type=slot.policy_type,
        violations=violations,
        stats=stats,
    )


def _validate_all(
    slots: list[_RoleSlot],
    registry: UnscopedActionRegistry,
    resource_index: Mapping[str, list[str]] | None,
) -> list[RoleValidationResult]:
    role_results = []
    for role_slot in slots:
        for slot in role_slot.policies:
            slot.result = _validate_slot(slot, role_slot.role.role_name, registry, resource_index)
        role_results.append(RoleValidationResult(
            role_name=role_slot.role.role_name,
            policy_results=[slot.result for slot in role_slot.policies],
        ))
    return role_results


def _run(
    formulation: FormulationOutput,
    registry: UnscopedActionRegistry,
    max_iterations: int,
    resource_index: Mapping[str, list[str]] | None,
) -> tuple[ValidationOutput, list[_RoleSlot]]:
    if max_iterations < 0:
        msg = f"max_iterations must be non-negative, got {max_iterations}"
        raise ValueError(msg)

    slots = _build_slots(formulation)
    iteration_count = 0

    while True:
        # Validating
        role_results = _validate_all(slots, registry, resource_index)

        # Deciding
        pending = [slot for role_slot in slots for slot in role_slot.policies if slot.actionable()]
        if not pending:
            break
        if iteration_count >= max_iterations:
            logger.warning(
                "Stopping after %d fix iteration(s) with %d policy(ies) still auto-fixable",
                iteration_count, len(pending),
            )
            break

        # Fixing
        for slot in pending:
            outcome = apply_fixes(slot.target, slot.actionable())
            slot.target = outcome.target
            slot.fixed = slot.fixed or outcome.applied
            slot.skip_keys.update(v.key for v in outcome.skipped)
            if outcome.applied:
                logger.debug("Fixed %s: %s", slot.policy_name, ", ".join(outcome.applied_rule_ids))
        iteration_count += 1
        logger.info("Fix iteration %d: repaired %d policy(ies)", iteration_count, len(pending))

    return ValidationOutput(role_results=role_results, fix_iterations=iteration_count), slots


def validate_and_fix(
    formulation: FormulationOutput,
    *,
    registry: UnscopedActionRegistry = DEFAULT_REGISTRY,
    max_iterations: int = MAX_ITERATIONS,
    resource_index: Mapping[str, list[str]] | None = None,
) -> ValidationOutput:
    """
    Validate every role's policies and auto-fix them until they converge.

    Args:
        formulation: Formulated roles to validate (never mutated)
        registry: Actions that may legitimately use Resource "*"
        max_iterations: Upper bound on fixing passes
        resource_index: Known ARNs per action name, enabling wildcard-resource narrowing

    Returns:
        The final ValidationOutput, with fix_iterations set to the number of fixing passes

    """
    validation, _ = _run(formulation, registry, max_iterations, resource_index)
    return validation


def _fixed_formulation(formulation: FormulationOutput, slots: list[_RoleSlot]) -> FormulationOutput:
    roles = []
    for role_slot in slots:
        policies = [
            PermissionPolicy(
                policy_name=slot.policy_name,
                policy_document=slot.target.document,
                estimated_size_bytes=estimated_size(slot.target.document) if slot.fixed else slot.estimated_size_bytes,
            )
            for slot in role_slot.permissions
        ]
        roles.append(replace(
            role_slot.role,
            trust_policy=role_slot.trust.target.document,
            max_session_duration=role_slot.trust.target.max_session_duration,
            permission_policies=policies,
        ))
    return FormulationOutput(roles=roles, template_variables=dict(formulation.template_variables))


def validate_and_fix_with_fixed(
    formulation: FormulationOutput,
    *,
    registry: UnscopedActionRegistry = DEFAULT_REGISTRY,
    max_iterations: int = MAX_ITERATIONS,
    resource_index: Mapping[str, list[str]] | None = None,
) -> tuple[ValidationOutput, FormulationOutput]:
    """Like validate_and_fix, but also return the formulation with every applied fix."""
    validation, slots = _run(formulation, registry, max_iterations, resource_index)
    return validation, _fixed_formulation(formulation, slots)
