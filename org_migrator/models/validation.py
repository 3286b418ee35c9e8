"""Validation result models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .template import Severity


@dataclass
class ValidationIssue:
    """A single problem found during pre-flight validation."""
    check_name: str
    message: str
    severity: Severity = Severity.ERROR
    record_id: Optional[str] = None
    record_name: Optional[str] = None
    field_name: Optional[str] = None
    suggested_action: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "check_name": self.check_name,
            "message": self.message,
            "severity": self.severity.value,
            "record_id": self.record_id,
            "record_name": self.record_name,
            "field_name": self.field_name,
            "suggested_action": self.suggested_action,
            "context": self.context,
        }


@dataclass
class ValidationSummary:
    """Per-check counts; a check fails if it produced any error issue."""
    total_checks: int = 0
    passed_checks: int = 0
    failed_checks: int = 0
    warning_checks: int = 0

    def record(self, issues: List[ValidationIssue]) -> None:
        """Count one executed check given the issues it produced."""
        self.total_checks += 1
        severities = {issue.severity for issue in issues}
        if Severity.ERROR in severities:
            self.failed_checks += 1
        elif Severity.WARNING in severities:
            self.warning_checks += 1
        else:
            self.passed_checks += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_checks": self.total_checks,
            "passed_checks": self.passed_checks,
            "failed_checks": self.failed_checks,
            "warning_checks": self.warning_checks,
        }


@dataclass
class ValidationResult:
    """Merged outcome of every check run for a template."""
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    info: List[ValidationIssue] = field(default_factory=list)
    summary: ValidationSummary = field(default_factory=ValidationSummary)

    @property
    def is_valid(self) -> bool:
        """Warnings and info never block."""
        return len(self.errors) == 0

    def add_issues(self, issues: List[ValidationIssue]) -> None:
        for issue in issues:
            if issue.severity == Severity.ERROR:
                self.errors.append(issue)
            elif issue.severity == Severity.WARNING:
                self.warnings.append(issue)
            else:
                self.info.append(issue)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "is_valid": self.is_valid,
            "errors": [i.to_dict() for i in self.errors],
            "warnings": [i.to_dict() for i in self.warnings],
            "info": [i.to_dict() for i in self.info],
            "summary": self.summary.to_dict(),
        }
