"""Builders for templates and run contexts used across tests."""

from typing import Any, Dict, List, Optional

from org_migrator.models.execution import (
    ExecutionConfig,
    ExecutionContext,
    ExternalIdConfig,
    ExternalIdStrategy,
    OrgDescriptor,
)
from org_migrator.models.template import (
    ETLStep,
    ExtractConfig,
    FieldMapping,
    LoadConfig,
    LoadOperation,
    LookupMapping,
    MigrationTemplate,
    RetryConfig,
    TransformConfig,
    ValidationConfig,
)

EXTERNAL_ID = "External_Id__c"


def manual_identity(field_name: str = EXTERNAL_ID) -> ExternalIdConfig:
    return ExternalIdConfig(
        source_field=field_name,
        target_field=field_name,
        strategy=ExternalIdStrategy.MANUAL,
    )


def make_step(
    name: str,
    object_type: str,
    fields: Optional[List[str]] = None,
    operation: LoadOperation = LoadOperation.INSERT,
    lookups: Optional[List[LookupMapping]] = None,
    dependencies: Optional[List[str]] = None,
    field_mappings: Optional[List[FieldMapping]] = None,
    extra_select: Optional[List[str]] = None,
    validation: Optional[ValidationConfig] = None,
    retry: Optional[RetryConfig] = None,
    batch_size: Optional[int] = None,
    **extract_options: Any
) -> ETLStep:
    """
    A step copying fields one-to-one from object_type to the same target object.

    The select list is Id, the copied fields, lookup source fields and the
    identity placeholder.
    """
    fields = fields if fields is not None else ["Name"]
    lookups = lookups or []
    select = ["Id", *fields]
    select += [m.source_field for m in lookups if m.source_field not in select]
    select += extra_select or []
    select.append("{externalIdField}")

    mappings = field_mappings if field_mappings is not None else [
        FieldMapping(source_field=f, target_field=f) for f in fields
    ]
    load_options: Dict[str, Any] = {"batch_size": batch_size}
    if operation == LoadOperation.UPSERT:
        load_options["external_id_field"] = "{externalIdField}"

    return ETLStep(
        step_name=name,
        extract_config=ExtractConfig(
            soql_query=f"SELECT {', '.join(select)} FROM {object_type}",
            object_api_name=object_type,
            **extract_options,
        ),
        transform_config=TransformConfig(field_mappings=mappings, lookup_mappings=lookups),
        load_config=LoadConfig(
            target_object=object_type,
            operation=operation,
            retry_config=retry or RetryConfig(),
            **load_options,
        ),
        validation_config=validation,
        dependencies=dependencies or [],
    )


def make_template(*steps: ETLStep, template_id: str = "test-template", **options: Any) -> MigrationTemplate:
    return MigrationTemplate(
        id=template_id,
        name=options.pop("name", "Test Template"),
        etl_steps=list(steps),
        execution_order=options.pop("execution_order", [s.step_name for s in steps]),
        **options,
    )


def make_context(
    source_org: OrgDescriptor,
    target_org: OrgDescriptor,
    selected: Dict[str, List[str]],
    external_id_config: Optional[ExternalIdConfig] = None,
    **config: Any
) -> ExecutionContext:
    return ExecutionContext(
        source_org=source_org,
        target_org=target_org,
        selected_records=selected,
        external_id_config=external_id_config or manual_identity(),
        config=ExecutionConfig.from_dict({"retry_delay_ms": 0, **config}),
        template_id="test-template",
    )
