# validation_result.py
"""Result types produced by the policy validators and the validate-and-fix loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

POLICY_TYPE_PERMISSION = "permission"
POLICY_TYPE_TRUST = "trust"


@dataclass(frozen=True)
class ValidationViolation:
    """A single rule failure found in a policy document."""

    rule_id: str
    severity: str
    message: str
    field: str
    current_value: Any
    auto_fixable: bool
    fix_hint: str
    statement_sid: str | None = None
    statement_index: int | None = None
    fix_data: dict | None = None

    @property
    def key(self) -> tuple[str, int | None, str]:
        """Identity of the violation across re-validations of the same policy."""
        return (self.rule_id, self.statement_index, self.field)

    def to_dict(self) -> dict:
        """Convert to dictionary format for JSON serialization."""
        violation = {
            "rule_id": self.rule_id,
            "severity": self.severity,
            "message": self.message,
        }
        if self.statement_sid is not None:
            violation["statement_sid"] = self.statement_sid
        if self.statement_index is not None:
            violation["statement_index"] = self.statement_index
        violation["field"] = self.field
        violation["current_value"] = self.current_value
        violation["auto_fixable"] = self.auto_fixable
        violation["fix_hint"] = self.fix_hint
        if self.fix_data is not None:
            violation["fix_data"] = self.fix_data
        return violation


@dataclass(frozen=True)
class ValidationStats:
    """Counters summarizing one policy's validation."""

    total_statements: int
    total_actions: int
    errors: int = 0
    warnings: int = 0
    auto_fixable_errors: int = 0
    auto_fixable_warnings: int = 0

    @classmethod
    def from_violations(
        cls,
        violations: list[ValidationViolation],
        total_statements: int,
        total_actions: int,
    ) -> ValidationStats:
        """
        Count violations by severity and fixability.

        Args:
            violations: Violations reported for the policy
            total_statements: Number of statements in the document
            total_actions: Number of action entries across all statements

        Returns:
            Stats whose counters always agree with the violations

        """
        errors = [v for v in violations if v.severity == SEVERITY_ERROR]
        warnings = [v for v in violations if v.severity == SEVERITY_WARNING]
        return cls(
            total_statements=total_statements,
            total_actions=total_actions,
            errors=len(errors),
            warnings=len(warnings),
            auto_fixable_errors=sum(1 for v in errors if v.auto_fixable),
            auto_fixable_warnings=sum(1 for v in warnings if v.auto_fixable),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary format for JSON serialization."""
        return {
            "total_statements": self.total_statements,
            "total_actions": self.total_actions,
            "errors": self.errors,
            "warnings": self.warnings,
            "auto_fixable_errors": self.auto_fixable_errors,
            "auto_fixable_warnings": self.auto_fixable_warnings,
        }


@dataclass(frozen=True)
class PolicyValidationResult:
    """Validation outcome for one trust or permission policy."""

    policy_name: str
    policy_type: str
    violations: list[ValidationViolation]
    stats: ValidationStats

    @property
    def valid(self) -> bool:
        return all(v.severity != SEVERITY_ERROR for v in self.violations)

    def to_dict(self) -> dict:
        """Convert to dictionary format for JSON serialization."""
        return {
            "policy_name": self.policy_name,
            "policy_type": self.policy_type,
            "valid": self.valid,
            "violations": [v.to_dict() for v in self.violations],
            "stats": self.stats.to_dict(),
        }


@dataclass(frozen=True)
class RoleValidationResult:
    """Validation outcome for a role: its trust policy first, then its permission policies."""

    role_name: str
    policy_results: list[PolicyValidationResult] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return all(result.valid for result in self.policy_results)

    def to_dict(self) -> dict:
        """Convert to dictionary format for JSON serialization."""
        return {
            "role_name": self.role_name,
            "valid": self.valid,
            "policy_results": [result.to_dict() for result in self.policy_results],
        }


@dataclass(frozen=True)
class ValidationOutput:
    """Final report of a validate-and-fix run."""

    role_results: list[RoleValidationResult]
    fix_iterations: int = 0

    @property
    def valid(self) -> bool:
        return all(result.valid for result in self.role_results)

    def total_errors(self) -> int:
        """Sum of error counts over every policy of every role."""
        return sum(p.stats.errors for r in self.role_results for p in r.policy_results)

    def total_warnings(self) -> int:
        """Sum of warning counts over every policy of every role."""
        return sum(p.stats.warnings for r in self.role_results for p in r.policy_results)

    def to_dict(self) -> dict:
        """Convert to dictionary format for JSON serialization."""
        return {
            "valid": self.valid,
            "role_results": [result.to_dict() for result in self.role_results],
            "fix_iterations": self.fix_iterations,
        }
