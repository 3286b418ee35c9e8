"""Execution models: run configuration, per-run state and results."""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

PLACEHOLDER = "{externalIdField}"
SOURCE_PLACEHOLDER = "{sourceExternalIdField}"
TARGET_PLACEHOLDER = "{targetExternalIdField}"

MANAGED_FIELD = "tc9_edc__External_ID_Data_Creation__c"
UNMANAGED_FIELD = "External_ID_Data_Creation__c"
FALLBACK_FIELD = "External_Id__c"


class ExternalIdStrategy(str, Enum):
    """How the durable identity field is chosen for each org."""
    AUTO_DETECT = "auto-detect"
    MANUAL = "manual"
    CROSS_ENVIRONMENT = "cross-environment"


class PackageType(str, Enum):
    MANAGED = "managed"
    UNMANAGED = "unmanaged"


class ExecutionStatus(str, Enum):
    """Terminal status of a run or step. A run has no partial state."""
    SUCCESS = "success"
    FAILED = "failed"


class ProgressStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class OrgDescriptor:
    """Connection context for one organization."""
    org_id: str
    instance_url: str = ""
    access_token: str = ""
    api_version: str = "59.0"
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        # access_token is never serialized
        return {
            "org_id": self.org_id,
            "instance_url": self.instance_url,
            "api_version": self.api_version,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrgDescriptor":
        return cls(
            org_id=data.get("org_id", ""),
            instance_url=data.get("instance_url", ""),
            access_token=data.get("access_token", ""),
            api_version=str(data.get("api_version", "59.0")),
            name=data.get("name", ""),
        )

    @classmethod
    def from_env(cls, prefix: str) -> "OrgDescriptor":
        """Read <PREFIX>_ORG_ID, _INSTANCE_URL, _ACCESS_TOKEN and _API_VERSION."""
        return cls(
            org_id=os.environ.get(f"{prefix}_ORG_ID", prefix.lower()),
            instance_url=os.environ.get(f"{prefix}_INSTANCE_URL", ""),
            access_token=os.environ.get(f"{prefix}_ACCESS_TOKEN", ""),
            api_version=os.environ.get(f"{prefix}_API_VERSION", "59.0"),
            name=os.environ.get(f"{prefix}_NAME", ""),
        )


@dataclass
class CrossEnvironmentMapping:
    source_package_type: PackageType = PackageType.UNMANAGED
    target_package_type: PackageType = PackageType.MANAGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_package_type": self.source_package_type.value,
            "target_package_type": self.target_package_type.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrossEnvironmentMapping":
        return cls(
            source_package_type=PackageType(data.get("source_package_type", "unmanaged")),
            target_package_type=PackageType(data.get("target_package_type", "managed")),
        )


@dataclass
class ExternalIdConfig:
    """Durable identity field configuration for a run."""
    source_field: str = MANAGED_FIELD
    target_field: str = MANAGED_FIELD
    managed_field: str = MANAGED_FIELD
    unmanaged_field: str = UNMANAGED_FIELD
    fallback_field: str = FALLBACK_FIELD
    strategy: ExternalIdStrategy = ExternalIdStrategy.AUTO_DETECT
    cross_environment_mapping: Optional[CrossEnvironmentMapping] = None

    def candidate_fields(self) -> List[str]:
        """Managed, unmanaged, then generic fallback."""
        return [self.managed_field, self.unmanaged_field, self.fallback_field]

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "managed_field": self.managed_field,
            "unmanaged_field": self.unmanaged_field,
            "fallback_field": self.fallback_field,
            "strategy": self.strategy.value,
        }
        if self.cross_environment_mapping:
            result["cross_environment_mapping"] = self.cross_environment_mapping.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExternalIdConfig":
        mapping = data.get("cross_environment_mapping")
        return cls(
            source_field=data.get("source_field", MANAGED_FIELD),
            target_field=data.get("target_field", MANAGED_FIELD),
            managed_field=data.get("managed_field", MANAGED_FIELD),
            unmanaged_field=data.get("unmanaged_field", UNMANAGED_FIELD),
            fallback_field=data.get("fallback_field", FALLBACK_FIELD),
            strategy=ExternalIdStrategy(data.get("strategy", "auto-detect")),
            cross_environment_mapping=CrossEnvironmentMapping.from_dict(mapping) if mapping else None,
        )


@dataclass(frozen=True)
class ResolvedExternalIdFields:
    """
    Identity field names resolved for one step of one run.

    target_field is None when the target object has no durable identity
    field; upserts then degrade to inserts.
    """
    source_field: str
    target_field: Optional[str]
    cross_environment: bool = False
    candidates: tuple = ()

    @property
    def has_target(self) -> bool:
        return bool(self.target_field)

    def for_source(self, text: str) -> str:
        """Resolve identity tokens in text used against the source org."""
        text = text.replace(SOURCE_PLACEHOLDER, self.source_field)
        if self.target_field:
            text = text.replace(TARGET_PLACEHOLDER, self.target_field)
        return text.replace(PLACEHOLDER, self.source_field)

    def for_target(self, text: str) -> Optional[str]:
        """
        Resolve identity tokens in text used against the target org.

        Returns None if the text needs a target identity field that does not exist.
        """
        if not self.target_field:
            if PLACEHOLDER in text or TARGET_PLACEHOLDER in text:
                return None
            return text.replace(SOURCE_PLACEHOLDER, self.source_field)
        text = text.replace(SOURCE_PLACEHOLDER, self.source_field)
        text = text.replace(TARGET_PLACEHOLDER, self.target_field)
        return text.replace(PLACEHOLDER, self.target_field)

    def source_candidates(self) -> List[str]:
        """Source identity field first, then the remaining candidates in order."""
        fields = [self.source_field]
        for candidate in self.candidates:
            if candidate not in fields:
                fields.append(candidate)
        return fields


@dataclass
class ExecutionConfig:
    """Run-level knobs."""
    batch_size: int = 200
    max_retries: int = 3
    retry_delay_ms: int = 1000
    enable_progress_tracking: bool = True
    enable_lookup_caching: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "max_retries": self.max_retries,
            "retry_delay_ms": self.retry_delay_ms,
            "enable_progress_tracking": self.enable_progress_tracking,
            "enable_lookup_caching": self.enable_lookup_caching,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionConfig":
        """Create from a (possibly partial) dictionary, defaults filling the gaps."""
        merged = {**DEFAULT_EXECUTION_CONFIG.to_dict(), **data}
        return cls(
            batch_size=int(merged["batch_size"]),
            max_retries=int(merged["max_retries"]),
            retry_delay_ms=int(merged["retry_delay_ms"]),
            enable_progress_tracking=bool(merged["enable_progress_tracking"]),
            enable_lookup_caching=bool(merged["enable_lookup_caching"]),
        )


DEFAULT_EXECUTION_CONFIG = ExecutionConfig()


@dataclass
class ExecutionContext:
    """Per-run parameters handed to the execution engine."""
    source_org: OrgDescriptor
    target_org: OrgDescriptor
    selected_records: Dict[str, List[str]] = field(default_factory=dict)
    external_id_config: ExternalIdConfig = field(default_factory=ExternalIdConfig)
    config: ExecutionConfig = field(default_factory=ExecutionConfig)
    template_id: str = ""
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class RollbackRecord:
    """One confirmed write, sufficient to reverse it."""
    target_record_id: str
    object_type: str
    step_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_record_id": self.target_record_id,
            "object_type": self.object_type,
            "step_name": self.step_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackRecord":
        return cls(
            target_record_id=data["target_record_id"],
            object_type=data["object_type"],
            step_name=data.get("step_name", ""),
        )


@dataclass
class RollbackResult:
    success: bool = True
    deleted_records: int = 0
    failed_deletions: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "deleted_records": self.deleted_records,
            "failed_deletions": self.failed_deletions,
            "errors": self.errors,
        }


@dataclass
class RecordError:
    """A per-record failure attributed to a source record identifier."""
    record_id: str
    error: str
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"record_id": self.record_id, "error": self.error, "retryable": self.retryable}


@dataclass
class StepExecutionResult:
    """Outcome of one ETL step."""
    step_name: str
    status: ExecutionStatus = ExecutionStatus.SUCCESS
    records_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    errors: List[RecordError] = field(default_factory=list)
    lookup_mappings: Dict[str, str] = field(default_factory=dict)
    execution_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_name": self.step_name,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "errors": [e.to_dict() for e in self.errors],
            "lookup_mappings": self.lookup_mappings,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass
class ExecutionResult:
    """Aggregate outcome of a run."""
    execution_id: str
    status: ExecutionStatus = ExecutionStatus.SUCCESS
    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    step_results: List[StepExecutionResult] = field(default_factory=list)
    execution_time_ms: int = 0
    lookup_mappings: Dict[str, str] = field(default_factory=dict)
    rollback_records: List[RollbackRecord] = field(default_factory=list)
    rollback: Optional[RollbackResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "total_records": self.total_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "step_results": [s.to_dict() for s in self.step_results],
            "execution_time_ms": self.execution_time_ms,
            "lookup_mappings": self.lookup_mappings,
            "rollback_records": [r.to_dict() for r in self.rollback_records],
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "error": self.error,
        }


@dataclass
class ExecutionProgress:
    """Progress event delivered to registered callbacks."""
    execution_id: str
    current_step: int
    total_steps: int
    step_name: str
    status: ProgressStatus
    records_processed: int = 0
    total_records: int = 0
    start_time: datetime = field(default_factory=datetime.utcnow)
    estimated_completion: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "step_name": self.step_name,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "total_records": self.total_records,
            "start_time": self.start_time.isoformat(),
            "estimated_completion": (
                self.estimated_completion.isoformat() if self.estimated_completion else None
            ),
        }


@dataclass
class RunState:
    """
    Mutable state owned by exactly one run.

    Built fresh by ExecutionEngine.execute_template and passed explicitly to
    every helper; nothing here outlives the run.
    """
    # (lookup object, value field) -> source value -> resolved value
    lookup_cache: Dict[Tuple[str, str], Dict[str, str]] = field(default_factory=dict)
    # (lookup object, value field) -> source value -> unresolved LookupResolution
    lookup_misses: Dict[Tuple[str, str], Dict[str, Any]] = field(default_factory=dict)
    # step name -> source ID -> target ID
    step_mappings: Dict[str, Dict[str, str]] = field(default_factory=dict)
    # step name -> target object type
    step_objects: Dict[str, str] = field(default_factory=dict)
    # object type -> record type name or developer name -> record type ID
    record_type_cache: Dict[str, Dict[str, str]] = field(default_factory=dict)
    # object type -> resolved identity fields (auto-detect strategy)
    identity_fields: Dict[str, ResolvedExternalIdFields] = field(default_factory=dict)
    rollback_log: List[RollbackRecord] = field(default_factory=list)

    def track_write(self, target_record_id: str, object_type: str, step_name: str) -> None:
        self.rollback_log.append(RollbackRecord(target_record_id, object_type, step_name))

    def cached_lookup(self, lookup_object: str, source_value: str, value_field: str = "Id") -> Optional[str]:
        return self.lookup_cache.get((lookup_object, value_field), {}).get(source_value)

    def cache_lookup(self, lookup_object: str, source_value: str, target_id: str, value_field: str = "Id") -> None:
        self.lookup_cache.setdefault((lookup_object, value_field), {})[source_value] = target_id

    def cached_lookup_miss(self, lookup_object: str, source_value: str, value_field: str = "Id") -> Any:
        return self.lookup_misses.get((lookup_object, value_field), {}).get(source_value)

    def cache_lookup_miss(self, lookup_object: str, source_value: str, resolution: Any, value_field: str = "Id") -> None:
        self.lookup_misses.setdefault((lookup_object, value_field), {})[source_value] = resolution

    def record_step_mappings(self, step_name: str, object_type: str, mappings: Dict[str, str]) -> None:
        self.step_mappings.setdefault(step_name, {}).update(mappings)
        self.step_objects[step_name] = object_type
        # New target records of this type may now satisfy earlier misses
        for key in [k for k in self.lookup_misses if k[0] == object_type]:
            del self.lookup_misses[key]

    def migrated_target_id(self, object_type: str, source_id: str) -> Optional[str]:
        """Target ID written earlier in this run for a source record of object_type."""
        for step_name, mappings in self.step_mappings.items():
            if self.step_objects.get(step_name) == object_type and source_id in mappings:
                return mappings[source_id]
        return None

    def all_lookup_mappings(self) -> Dict[str, str]:
        """Flatten every source -> target pair produced or resolved during the run."""
        flattened: Dict[str, str] = {}
        for (_, value_field), mappings in self.lookup_cache.items():
            if value_field == "Id":
                flattened.update(mappings)
        for mappings in self.step_mappings.values():
            flattened.update(mappings)
        return flattened
