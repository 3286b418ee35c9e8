"""Data models for the migration core."""

from .template import (
    TransformationType,
    LoadOperation,
    Complexity,
    Severity,
    ExpectedResult,
    ParentSelection,
    ExtractConfig,
    FieldMapping,
    LookupMapping,
    RecordTypeMapping,
    ExternalIdHandling,
    TransformConfig,
    RetryConfig,
    LoadConfig,
    DependencyCheck,
    DataIntegrityCheck,
    PicklistValidationCheck,
    PreValidationQuery,
    ValidationConfig,
    ETLStep,
    TemplateMetadata,
    MigrationTemplate,
)
from .execution import (
    ExternalIdStrategy,
    PackageType,
    ExecutionStatus,
    ProgressStatus,
    OrgDescriptor,
    CrossEnvironmentMapping,
    ExternalIdConfig,
    ResolvedExternalIdFields,
    ExecutionConfig,
    DEFAULT_EXECUTION_CONFIG,
    ExecutionContext,
    RollbackRecord,
    RollbackResult,
    RecordError,
    StepExecutionResult,
    ExecutionResult,
    ExecutionProgress,
    RunState,
)
from .validation import (
    ValidationIssue,
    ValidationSummary,
    ValidationResult,
)

__all__ = [
    "TransformationType",
    "LoadOperation",
    "Complexity",
    "Severity",
    "ExpectedResult",
    "ParentSelection",
    "ExtractConfig",
    "FieldMapping",
    "LookupMapping",
    "RecordTypeMapping",
    "ExternalIdHandling",
    "TransformConfig",
    "RetryConfig",
    "LoadConfig",
    "DependencyCheck",
    "DataIntegrityCheck",
    "PicklistValidationCheck",
    "PreValidationQuery",
    "ValidationConfig",
    "ETLStep",
    "TemplateMetadata",
    "MigrationTemplate",
    "ExternalIdStrategy",
    "PackageType",
    "ExecutionStatus",
    "ProgressStatus",
    "OrgDescriptor",
    "CrossEnvironmentMapping",
    "ExternalIdConfig",
    "ResolvedExternalIdFields",
    "ExecutionConfig",
    "DEFAULT_EXECUTION_CONFIG",
    "ExecutionContext",
    "RollbackRecord",
    "RollbackResult",
    "RecordError",
    "StepExecutionResult",
    "ExecutionResult",
    "ExecutionProgress",
    "RunState",
    "ValidationIssue",
    "ValidationSummary",
    "ValidationResult",
]
