"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..models.execution import ExecutionConfig, ExternalIdConfig, OrgDescriptor, RollbackRecord
from ..models.template import MigrationTemplate


class OrgDescriptorModel(BaseModel):
    org_id: str
    instance_url: str = ""
    access_token: str = ""
    api_version: str = "59.0"
    name: str = ""

    def to_descriptor(self) -> OrgDescriptor:
        return OrgDescriptor.from_dict(self.model_dump())


def _parse(config_type, data: Dict[str, Any]):
    """Run a config dataclass's from_dict, reporting bad values as validation errors."""
    try:
        return config_type.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {config_type.__name__}: {e}")


# Request Models
class ValidateRequest(BaseModel):
    source_org: OrgDescriptorModel
    target_org: OrgDescriptorModel
    selected_records: Dict[str, List[str]] = Field(default_factory=dict)
    external_id_config: Optional[Dict[str, Any]] = None

    @field_validator("external_id_config")
    @classmethod
    def check_external_id_config(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if v is not None:
            _parse(ExternalIdConfig, v)
        return v

    def external_id(self) -> ExternalIdConfig:
        return ExternalIdConfig.from_dict(self.external_id_config or {})


class ExecuteRequest(ValidateRequest):
    config: Dict[str, Any] = Field(default_factory=dict)
    validate_first: bool = True

    @field_validator("config")
    @classmethod
    def check_config(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        _parse(ExecutionConfig, v)
        return v

    def execution_config(self) -> ExecutionConfig:
        return ExecutionConfig.from_dict(self.config)


class RollbackRecordModel(BaseModel):
    target_record_id: str
    object_type: str
    step_name: str = ""

    def to_record(self) -> RollbackRecord:
        return RollbackRecord.from_dict(self.model_dump())


class RollbackRequest(BaseModel):
    target_org: OrgDescriptorModel
    records: List[RollbackRecordModel]


# Response Models
class TemplateSummary(BaseModel):
    id: str
    name: str
    description: str = ""
    category: str = ""
    version: str = ""
    complexity: str = "simple"
    step_names: List[str] = Field(default_factory=list)

    @classmethod
    def from_template(cls, template: MigrationTemplate) -> "TemplateSummary":
        return cls(
            id=template.id,
            name=template.name,
            description=template.description,
            category=template.category,
            version=template.version,
            complexity=template.metadata.complexity.value,
            step_names=[s.step_name for s in template.execution_plan()],
        )


class TemplateListResponse(BaseModel):
    templates: List[TemplateSummary]
    total: int
