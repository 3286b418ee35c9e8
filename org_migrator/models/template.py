"""Declarative migration template models."""

import heapq
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..exceptions import TemplateError


class TransformationType(str, Enum):
    """How a source field value becomes a target field value."""
    DIRECT = "direct"
    BOOLEAN = "boolean"
    NUMBER = "number"
    PICKLIST = "picklist"
    LOOKUP = "lookup"
    FORMULA = "formula"
    CUSTOM = "custom"


class LoadOperation(str, Enum):
    """Bulk write primitive used for a step."""
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class Severity(str, Enum):
    """Severity of a validation issue."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ExpectedResult(str, Enum):
    """Expected cardinality of a data-integrity query."""
    EMPTY = "empty"
    NON_EMPTY = "non-empty"
    COUNT_MATCH = "count-match"


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass
class ParentSelection:
    """Child records addressed through their parent's selected IDs."""
    parent_object: str
    filter_field: str

    def to_dict(self) -> Dict[str, Any]:
        return {"parent_object": self.parent_object, "filter_field": self.filter_field}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParentSelection":
        return cls(
            parent_object=data["parent_object"],
            filter_field=data["filter_field"],
        )


@dataclass
class ExtractConfig:
    """Source query for a step."""
    soql_query: str
    object_api_name: str
    filter_criteria: Optional[str] = None
    order_by: Optional[str] = None
    batch_size: Optional[int] = None
    filter_field: str = "Id"
    parent_selection: Optional[ParentSelection] = None
    require_records: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "soql_query": self.soql_query,
            "object_api_name": self.object_api_name,
            "filter_field": self.filter_field,
        }
        if self.filter_criteria:
            result["filter_criteria"] = self.filter_criteria
        if self.order_by:
            result["order_by"] = self.order_by
        if self.batch_size:
            result["batch_size"] = self.batch_size
        if self.parent_selection:
            result["parent_selection"] = self.parent_selection.to_dict()
        if self.require_records:
            result["require_records"] = True
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractConfig":
        """Create from dictionary representation."""
        parent = data.get("parent_selection")
        return cls(
            soql_query=data.get("soql_query", ""),
            object_api_name=data.get("object_api_name", ""),
            filter_criteria=data.get("filter_criteria"),
            order_by=data.get("order_by"),
            batch_size=data.get("batch_size"),
            filter_field=data.get("filter_field", "Id"),
            parent_selection=ParentSelection.from_dict(parent) if parent else None,
            require_records=data.get("require_records", False),
        )


@dataclass
class FieldMapping:
    """Mapping between a source field and a target field."""
    source_field: str
    target_field: str
    is_required: bool = False
    transformation_type: TransformationType = TransformationType.DIRECT
    transformation_config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "transformation_type": _enum_value(self.transformation_type),
        }
        if self.is_required:
            result["is_required"] = True
        if self.transformation_config:
            result["transformation_config"] = self.transformation_config
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        """Create from dictionary representation."""
        transform = data.get("transformation_type", "direct")
        try:
            transform = TransformationType(transform)
        except ValueError:
            transform = TransformationType.CUSTOM

        return cls(
            source_field=data.get("source_field", ""),
            target_field=data.get("target_field", ""),
            is_required=data.get("is_required", False),
            transformation_type=transform,
            transformation_config=data.get("transformation_config", {}),
        )


@dataclass
class LookupMapping:
    """Rule for replacing a source-side reference with its target-side equivalent."""
    source_field: str
    target_field: str
    lookup_object: str
    lookup_key_field: str
    lookup_value_field: str = "Id"
    cache_results: bool = True
    fallback_value: Optional[str] = None
    allow_null: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "lookup_object": self.lookup_object,
            "lookup_key_field": self.lookup_key_field,
            "lookup_value_field": self.lookup_value_field,
            "cache_results": self.cache_results,
        }
        if self.fallback_value is not None:
            result["fallback_value"] = self.fallback_value
        if self.allow_null is not None:
            result["allow_null"] = self.allow_null
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LookupMapping":
        """Create from dictionary representation."""
        return cls(
            source_field=data.get("source_field", ""),
            target_field=data.get("target_field", ""),
            lookup_object=data.get("lookup_object", ""),
            lookup_key_field=data.get("lookup_key_field", ""),
            lookup_value_field=data.get("lookup_value_field", "Id"),
            cache_results=data.get("cache_results", True),
            fallback_value=data.get("fallback_value"),
            allow_null=data.get("allow_null"),
        )


@dataclass
class RecordTypeMapping:
    """Maps a source categorical value to a target record type."""
    source_field: str
    target_field: str = "RecordTypeId"
    mapping_dictionary: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "mapping_dictionary": self.mapping_dictionary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordTypeMapping":
        return cls(
            source_field=data.get("source_field", ""),
            target_field=data.get("target_field", "RecordTypeId"),
            mapping_dictionary=data.get("mapping_dictionary", {}),
        )


@dataclass
class ExternalIdHandling:
    """Which fields carry the durable identity for a step."""
    source_field: str = "Id"
    target_field: str = "{externalIdField}"
    external_id_field: str = "{externalIdField}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "external_id_field": self.external_id_field,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExternalIdHandling":
        return cls(
            source_field=data.get("source_field", "Id"),
            target_field=data.get("target_field", "{externalIdField}"),
            external_id_field=data.get("external_id_field", "{externalIdField}"),
        )


@dataclass
class TransformConfig:
    """Transformation rules for a step."""
    field_mappings: List[FieldMapping] = field(default_factory=list)
    lookup_mappings: List[LookupMapping] = field(default_factory=list)
    record_type_mapping: Optional[RecordTypeMapping] = None
    external_id_handling: Optional[ExternalIdHandling] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result: Dict[str, Any] = {
            "field_mappings": [m.to_dict() for m in self.field_mappings],
            "lookup_mappings": [m.to_dict() for m in self.lookup_mappings],
        }
        if self.record_type_mapping:
            result["record_type_mapping"] = self.record_type_mapping.to_dict()
        if self.external_id_handling:
            result["external_id_handling"] = self.external_id_handling.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformConfig":
        """Create from dictionary representation."""
        record_type = data.get("record_type_mapping")
        id_handling = data.get("external_id_handling")
        return cls(
            field_mappings=[FieldMapping.from_dict(m) for m in data.get("field_mappings", [])],
            lookup_mappings=[LookupMapping.from_dict(m) for m in data.get("lookup_mappings", [])],
            record_type_mapping=RecordTypeMapping.from_dict(record_type) if record_type else None,
            external_id_handling=ExternalIdHandling.from_dict(id_handling) if id_handling else None,
        )


@dataclass
class RetryConfig:
    """Bounded retry for transient per-record write errors."""
    max_retries: int = 3
    retry_wait_seconds: Optional[float] = None
    retryable_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "retry_wait_seconds": self.retry_wait_seconds,
            "retryable_errors": self.retryable_errors,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        return cls(
            max_retries=data.get("max_retries", 3),
            retry_wait_seconds=data.get("retry_wait_seconds"),
            retryable_errors=data.get("retryable_errors", []),
        )

    def is_retryable(self, error: str) -> bool:
        """True if the error text names one of the declared retryable error classes."""
        return any(code in error for code in self.retryable_errors)


@dataclass
class LoadConfig:
    """
    Target write configuration for a step.

    use_bulk_api and allow_partial_success are read from templates and kept
    on round trip but change nothing: writes always go through the composite
    collection endpoints and any failed record fails the run.
    """
    target_object: str
    operation: LoadOperation = LoadOperation.INSERT
    external_id_field: Optional[str] = None
    use_bulk_api: bool = False
    batch_size: Optional[int] = None
    allow_partial_success: bool = False
    retry_config: RetryConfig = field(default_factory=RetryConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "target_object": self.target_object,
            "operation": _enum_value(self.operation),
            "use_bulk_api": self.use_bulk_api,
            "allow_partial_success": self.allow_partial_success,
            "retry_config": self.retry_config.to_dict(),
        }
        if self.external_id_field:
            result["external_id_field"] = self.external_id_field
        if self.batch_size:
            result["batch_size"] = self.batch_size
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoadConfig":
        """Create from dictionary representation."""
        try:
            operation = LoadOperation(data.get("operation", "insert"))
        except ValueError:
            raise TemplateError(f"Unknown load operation: {data.get('operation')}")

        return cls(
            target_object=data.get("target_object", ""),
            operation=operation,
            external_id_field=data.get("external_id_field"),
            use_bulk_api=data.get("use_bulk_api", False),
            batch_size=data.get("batch_size"),
            allow_partial_success=data.get("allow_partial_success", False),
            retry_config=RetryConfig.from_dict(data.get("retry_config", {})),
        )


@dataclass
class DependencyCheck:
    """Checks that a referenced record already exists in the target org."""
    check_name: str
    source_field: str
    target_object: str
    target_field: str
    description: str = ""
    is_required: bool = True
    error_message: str = ""
    warning_message: Optional[str] = None
    cache_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check_name": self.check_name,
            "description": self.description,
            "source_field": self.source_field,
            "target_object": self.target_object,
            "target_field": self.target_field,
            "is_required": self.is_required,
            "error_message": self.error_message,
            "warning_message": self.warning_message,
            "cache_key": self.cache_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DependencyCheck":
        return cls(
            check_name=data.get("check_name", ""),
            source_field=data.get("source_field", ""),
            target_object=data.get("target_object", ""),
            target_field=data.get("target_field", ""),
            description=data.get("description", ""),
            is_required=data.get("is_required", True),
            error_message=data.get("error_message", ""),
            warning_message=data.get("warning_message"),
            cache_key=data.get("cache_key"),
        )


@dataclass
class DataIntegrityCheck:
    """A literal query whose result cardinality must match an expectation."""
    check_name: str
    validation_query: str
    expected_result: ExpectedResult = ExpectedResult.EMPTY
    description: str = ""
    error_message: str = ""
    severity: Severity = Severity.ERROR
    expected_count: Optional[int] = None
    org: str = "source"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check_name": self.check_name,
            "description": self.description,
            "validation_query": self.validation_query,
            "expected_result": _enum_value(self.expected_result),
            "expected_count": self.expected_count,
            "error_message": self.error_message,
            "severity": _enum_value(self.severity),
            "org": self.org,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataIntegrityCheck":
        return cls(
            check_name=data.get("check_name", ""),
            validation_query=data.get("validation_query", ""),
            expected_result=ExpectedResult(data.get("expected_result", "empty")),
            description=data.get("description", ""),
            error_message=data.get("error_message", ""),
            severity=Severity(data.get("severity", "error")),
            expected_count=data.get("expected_count"),
            org=data.get("org", "source"),
        )


@dataclass
class PicklistValidationCheck:
    """Observed values of a field must belong to an enumerated value set."""
    check_name: str
    field_name: str
    object_name: str
    validate_against_target: bool = True
    allowed_values: List[str] = field(default_factory=list)
    error_message: str = ""
    severity: Severity = Severity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check_name": self.check_name,
            "field_name": self.field_name,
            "object_name": self.object_name,
            "validate_against_target": self.validate_against_target,
            "allowed_values": self.allowed_values,
            "error_message": self.error_message,
            "severity": _enum_value(self.severity),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PicklistValidationCheck":
        return cls(
            check_name=data.get("check_name", ""),
            field_name=data.get("field_name", ""),
            object_name=data.get("object_name", ""),
            validate_against_target=data.get("validate_against_target", True),
            allowed_values=data.get("allowed_values", []),
            error_message=data.get("error_message", ""),
            severity=Severity(data.get("severity", "error")),
        )


@dataclass
class PreValidationQuery:
    """Reference query executed once per validation pass and cached by key."""
    query_name: str
    soql_query: str
    cache_key: str
    description: str = ""
    org: str = "target"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_name": self.query_name,
            "soql_query": self.soql_query,
            "cache_key": self.cache_key,
            "description": self.description,
            "org": self.org,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreValidationQuery":
        return cls(
            query_name=data.get("query_name", ""),
            soql_query=data.get("soql_query", ""),
            cache_key=data.get("cache_key", ""),
            description=data.get("description", ""),
            org=data.get("org", "target"),
        )


@dataclass
class ValidationConfig:
    """Pre-flight checks attached to a step."""
    dependency_checks: List[DependencyCheck] = field(default_factory=list)
    data_integrity_checks: List[DataIntegrityCheck] = field(default_factory=list)
    picklist_validation_checks: List[PicklistValidationCheck] = field(default_factory=list)
    pre_validation_queries: List[PreValidationQuery] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dependency_checks": [c.to_dict() for c in self.dependency_checks],
            "data_integrity_checks": [c.to_dict() for c in self.data_integrity_checks],
            "picklist_validation_checks": [c.to_dict() for c in self.picklist_validation_checks],
            "pre_validation_queries": [q.to_dict() for q in self.pre_validation_queries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationConfig":
        return cls(
            dependency_checks=[DependencyCheck.from_dict(c) for c in data.get("dependency_checks", [])],
            data_integrity_checks=[
                DataIntegrityCheck.from_dict(c) for c in data.get("data_integrity_checks", [])
            ],
            picklist_validation_checks=[
                PicklistValidationCheck.from_dict(c) for c in data.get("picklist_validation_checks", [])
            ],
            pre_validation_queries=[
                PreValidationQuery.from_dict(q) for q in data.get("pre_validation_queries", [])
            ],
        )


@dataclass
class ETLStep:
    """One unit of migration: extract, transform and load a single object type."""
    step_name: str
    extract_config: ExtractConfig
    transform_config: TransformConfig
    load_config: LoadConfig
    step_order: int = 0
    validation_config: Optional[ValidationConfig] = None
    dependencies: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "step_name": self.step_name,
            "step_order": self.step_order,
            "extract_config": self.extract_config.to_dict(),
            "transform_config": self.transform_config.to_dict(),
            "load_config": self.load_config.to_dict(),
            "dependencies": self.dependencies,
        }
        if self.validation_config:
            result["validation_config"] = self.validation_config.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ETLStep":
        """Create from dictionary representation."""
        validation = data.get("validation_config")
        return cls(
            step_name=data.get("step_name", ""),
            step_order=data.get("step_order", 0),
            extract_config=ExtractConfig.from_dict(data.get("extract_config", {})),
            transform_config=TransformConfig.from_dict(data.get("transform_config", {})),
            load_config=LoadConfig.from_dict(data.get("load_config", {})),
            validation_config=ValidationConfig.from_dict(validation) if validation else None,
            dependencies=data.get("dependencies", []),
        )


@dataclass
class TemplateMetadata:
    author: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    complexity: Complexity = Complexity.SIMPLE
    estimated_duration_minutes: int = 0
    required_permissions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "author": self.author,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "complexity": _enum_value(self.complexity),
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "required_permissions": self.required_permissions,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemplateMetadata":
        try:
            complexity = Complexity(data.get("complexity", "simple"))
        except ValueError:
            complexity = Complexity.SIMPLE
        return cls(
            author=data.get("author", ""),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            complexity=complexity,
            estimated_duration_minutes=data.get("estimated_duration_minutes", 0),
            required_permissions=data.get("required_permissions", []),
        )


@dataclass
class MigrationTemplate:
    """
    Complete declarative description of a migration.

    Templates are read-only at execution time. Steps run in the order
    returned by execution_plan(): dependencies first, with ties broken by
    the declared execution_order.
    """
    id: str
    name: str
    etl_steps: List[ETLStep] = field(default_factory=list)
    execution_order: List[str] = field(default_factory=list)
    description: str = ""
    category: str = ""
    version: str = "1.0.0"
    metadata: TemplateMetadata = field(default_factory=TemplateMetadata)

    def get_step(self, step_name: str) -> Optional[ETLStep]:
        """Get a step by name."""
        for step in self.etl_steps:
            if step.step_name == step_name:
                return step
        return None

    @property
    def step_names(self) -> List[str]:
        return [step.step_name for step in self.etl_steps]

    def execution_plan(self) -> List[ETLStep]:
        """
        Order steps so that every step runs after its dependencies.

        Returns:
            Steps in topological order

        Raises:
            TemplateError: If a dependency is unknown or the graph has a cycle
        """
        order_index = {name: i for i, name in enumerate(self.execution_order)}
        by_name = {step.step_name: step for step in self.etl_steps}
        position = {step.step_name: i for i, step in enumerate(self.etl_steps)}

        remaining: Dict[str, int] = {}
        dependents: Dict[str, List[str]] = {name: [] for name in by_name}
        for step in self.etl_steps:
            for dep in step.dependencies:
                if dep not in by_name:
                    raise TemplateError(
                        f"Step '{step.step_name}' depends on unknown step '{dep}'"
                    )
                dependents[dep].append(step.step_name)
            remaining[step.step_name] = len(set(step.dependencies))

        def priority(name: str):
            return (order_index.get(name, len(order_index)), position[name])

        ready = [(priority(name), name) for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        plan = []
        while ready:
            _, name = heapq.heappop(ready)
            plan.append(by_name[name])
            for dependent in set(dependents[name]):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (priority(dependent), dependent))

        if len(plan) != len(self.etl_steps):
            stuck = sorted(name for name, count in remaining.items() if count > 0)
            raise TemplateError(f"Dependency cycle between steps: {', '.join(stuck)}")

        return plan

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "version": self.version,
            "etl_steps": [step.to_dict() for step in self.etl_steps],
            "execution_order": self.execution_order,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationTemplate":
        """Create from dictionary representation."""
        steps = [ETLStep.from_dict(s) for s in data.get("etl_steps", [])]
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            category=data.get("category", ""),
            version=data.get("version", "1.0.0"),
            etl_steps=steps,
            execution_order=data.get("execution_order", [s.step_name for s in steps]),
            metadata=TemplateMetadata.from_dict(data.get("metadata", {})),
        )

    @classmethod
    def from_json_file(cls, file_path: str) -> "MigrationTemplate":
        """Load a template from a JSON file."""
        with open(file_path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def save_to_json(self, file_path: str) -> None:
        """Save the template to a JSON file."""
        with open(file_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
