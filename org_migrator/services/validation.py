"""Pre-flight validation of a template against source and target orgs."""

import logging
from typing import Any, Dict, List, Optional

from ..clients.base import ClientFactory, OrgClient
from ..clients.salesforce import default_client_factory
from ..models.execution import ExternalIdConfig, OrgDescriptor, ResolvedExternalIdFields
from ..models.template import (
    DataIntegrityCheck,
    DependencyCheck,
    ETLStep,
    ExpectedResult,
    MigrationTemplate,
    PicklistValidationCheck,
    Severity,
)
from ..models.validation import ValidationIssue, ValidationResult
from .extractor import SELECTED_IDS_PLACEHOLDER, RecordExtractor
from .external_id import resolve_object_fields
from .soql import ensure_no_placeholders, extract_object_name, format_id_list, get_field_value
from .template_registry import TemplateRegistry

logger = logging.getLogger(__name__)


def _format_message(message: str, source_value: Any, record_name: Any) -> str:
    return (
        message
        .replace("{sourceValue}", "" if source_value is None else str(source_value))
        .replace("{recordName}", "" if record_name is None else str(record_name))
    )


class ValidationEngine:
    """
    Pre-flight checker for migration templates.

    Supports:
    - Structural template checks
    - Pre-validation reference queries cached by key
    - Dependency checks against cached target data
    - Data-integrity checks on query cardinality
    - Picklist checks against allowed values or the target schema

    Nothing is written to either org. Query failures become error issues
    instead of exceptions.
    """

    def __init__(self, client_factory: Optional[ClientFactory] = None):
        self.client_factory = client_factory or default_client_factory

    async def validate_template(
        self,
        template: MigrationTemplate,
        source_org: OrgDescriptor,
        target_org: OrgDescriptor,
        selected_records: Dict[str, List[str]],
        external_id_config: Optional[ExternalIdConfig] = None
    ) -> ValidationResult:
        """
        Run every configured check for a template.

        Args:
            template: Template to validate
            source_org: Source org descriptor
            target_org: Target org descriptor
            selected_records: Object type -> selected source record IDs
            external_id_config: Identity configuration; defaults to auto-detect

        Returns:
            ValidationResult; is_valid is True exactly when there are no errors
        """
        result = ValidationResult()

        structure = [
            ValidationIssue(check_name="templateStructure", message=problem)
            for problem in TemplateRegistry.validate_template(template)
        ]
        self._record(result, structure)
        if structure:
            return result

        run = _ValidationRun(
            source=self.client_factory(source_org),
            target=self.client_factory(target_org),
            config=external_id_config or ExternalIdConfig(),
            selected_records=selected_records,
        )

        steps = [s for s in template.execution_plan() if s.validation_config]
        for step in steps:
            for pre_query in step.validation_config.pre_validation_queries:
                if pre_query.cache_key not in run.reference_data:
                    self._record(result, await run.run_pre_query(pre_query, step))

        for step in steps:
            validation = step.validation_config
            identity = await run.identity_for(step.extract_config.object_api_name)

            try:
                source_rows = await RecordExtractor(run.source).extract(step, selected_records, identity)
            except Exception as e:
                logger.warning(f"Validation extract for {step.step_name} failed: {e}")
                source_rows = []
                self._record(result, [ValidationIssue(
                    check_name=f"sourceExtract:{step.step_name}",
                    message=f"Could not read source records: {e}",
                )])

            for dependency in validation.dependency_checks:
                self._record(result, await self._guard(dependency.check_name, run.check_dependency(
                    dependency, source_rows, identity
                )))
            for integrity in validation.data_integrity_checks:
                self._record(result, await self._guard(integrity.check_name, run.check_integrity(
                    integrity, step
                )))
            for picklist in validation.picklist_validation_checks:
                self._record(result, await self._guard(picklist.check_name, run.check_picklist(
                    picklist, source_rows
                )))

        logger.info(
            f"Validation of {template.id}: {len(result.errors)} errors, "
            f"{len(result.warnings)} warnings, {len(result.info)} info"
        )
        return result

    @staticmethod
    async def _guard(check_name: str, check) -> List[ValidationIssue]:
        """Await a check; an exception becomes a single error issue."""
        try:
            return await check
        except Exception as e:
            logger.error(f"Validation check {check_name} failed: {e}")
            return [ValidationIssue(check_name=check_name, message=f"Check failed: {e}")]

    @staticmethod
    def _record(result: ValidationResult, issues: List[ValidationIssue]) -> None:
        result.add_issues(issues)
        result.summary.record(issues)


class _ValidationRun:
    """State for one validate_template call."""

    def __init__(
        self,
        source: OrgClient,
        target: OrgClient,
        config: ExternalIdConfig,
        selected_records: Dict[str, List[str]]
    ):
        self.source = source
        self.target = target
        self.config = config
        self.selected_records = selected_records
        self.reference_data: Dict[str, List[Dict[str, Any]]] = {}
        self.reference_by_object: Dict[str, List[Dict[str, Any]]] = {}
        self._identity_cache: Dict[str, ResolvedExternalIdFields] = {}

    async def identity_for(self, object_type: str) -> ResolvedExternalIdFields:
        return await resolve_object_fields(
            self.config, self.source, self.target, object_type, self._identity_cache
        )

    async def _resolve_query(self, query: str, org: str, fallback_object: str) -> Optional[str]:
        identity = await self.identity_for(extract_object_name(query) or fallback_object)
        return identity.for_target(query) if org == "target" else identity.for_source(query)

    async def run_pre_query(self, pre_query, step: ETLStep) -> List[ValidationIssue]:
        client = self.target if pre_query.org == "target" else self.source
        query = await self._resolve_query(pre_query.soql_query, pre_query.org, step.load_config.target_object)

        rows: List[Dict[str, Any]] = []
        issues: List[ValidationIssue] = []
        if query is None:
            issues.append(ValidationIssue(
                check_name=pre_query.query_name,
                message=f"{pre_query.query_name} needs an external ID field the {pre_query.org} org lacks",
                severity=Severity.WARNING,
            ))
        else:
            result = await client.query(query)
            if result.success:
                rows = result.data
            else:
                logger.warning(f"Pre-validation query {pre_query.query_name} failed: {result.error}")
                issues.append(ValidationIssue(
                    check_name=pre_query.query_name,
                    message=f"Reference query failed: {result.error}",
                    severity=Severity.WARNING,
                ))

        self.reference_data[pre_query.cache_key] = rows
        object_name = extract_object_name(query or pre_query.soql_query)
        if object_name:
            self.reference_by_object.setdefault(object_name, rows)
        logger.debug(f"Cached {len(rows)} rows for {pre_query.cache_key}")
        return issues

    async def check_dependency(
        self,
        check: DependencyCheck,
        source_rows: List[Dict[str, Any]],
        identity: ResolvedExternalIdFields
    ) -> List[ValidationIssue]:
        if check.cache_key:
            reference = self.reference_data.get(check.cache_key)
        else:
            reference = self.reference_by_object.get(check.target_object)

        if reference is None:
            return [ValidationIssue(
                check_name=check.check_name,
                message=f"No reference data cached for {check.target_object}; add a pre-validation query",
                context={"cache_key": check.cache_key},
            )]

        target_identity = await self.identity_for(check.target_object)
        target_field = target_identity.for_target(check.target_field) or check.target_field
        existing = {
            str(value) for value in (get_field_value(row, target_field) for row in reference)
            if value not in (None, "")
        }
        source_field = identity.for_source(check.source_field)

        issues = []
        for row in source_rows:
            value = get_field_value(row, source_field)
            record_name = row.get("Name") or row.get("Id")

            if value in (None, ""):
                if check.is_required:
                    issues.append(ValidationIssue(
                        check_name=check.check_name,
                        message=_format_message(
                            check.error_message or f"{source_field} is empty on {{recordName}}", value, record_name
                        ),
                        record_id=row.get("Id"),
                        record_name=record_name,
                        field_name=source_field,
                    ))
                continue

            if str(value) in existing:
                continue

            if check.is_required:
                issues.append(ValidationIssue(
                    check_name=check.check_name,
                    message=_format_message(
                        check.error_message or f"{check.target_object} {{sourceValue}} not found in target",
                        value, record_name,
                    ),
                    record_id=row.get("Id"),
                    record_name=record_name,
                    field_name=source_field,
                    suggested_action=f"Migrate the referenced {check.target_object} record first",
                    context={"source_value": value},
                ))
            elif check.warning_message:
                issues.append(ValidationIssue(
                    check_name=check.check_name,
                    message=_format_message(check.warning_message, value, record_name),
                    severity=Severity.WARNING,
                    record_id=row.get("Id"),
                    record_name=record_name,
                    field_name=source_field,
                    context={"source_value": value},
                ))

        return issues

    async def check_integrity(self, check: DataIntegrityCheck, step: ETLStep) -> List[ValidationIssue]:
        client = self.target if check.org == "target" else self.source
        query = await self._resolve_query(check.validation_query, check.org, step.extract_config.object_api_name)
        if query is None:
            return [ValidationIssue(
                check_name=check.check_name,
                message=f"Query needs an external ID field the {check.org} org lacks",
            )]

        record_ids, _ = RecordExtractor.selected_ids_for(step, self.selected_records)
        if SELECTED_IDS_PLACEHOLDER in query:
            if not record_ids:
                return []
            query = query.replace(SELECTED_IDS_PLACEHOLDER, format_id_list(record_ids))
        ensure_no_placeholders(query)

        result = await client.query(query)
        if not result.success:
            return [ValidationIssue(
                check_name=check.check_name,
                message=f"Integrity query failed: {result.error}",
                context={"query": query},
            )]

        count = len(result.data) if result.data else (result.total_size or 0)
        if check.expected_result == ExpectedResult.EMPTY:
            passed = count == 0
        elif check.expected_result == ExpectedResult.NON_EMPTY:
            passed = count > 0
        else:
            expected = check.expected_count if check.expected_count is not None else len(record_ids)
            passed = count == expected

        if passed:
            return []

        return [ValidationIssue(
            check_name=check.check_name,
            message=check.error_message or f"{check.check_name}: expected {check.expected_result.value}, got {count} rows",
            severity=check.severity,
            context={"count": count, "expected_result": check.expected_result.value},
        )]

    async def check_picklist(
        self,
        check: PicklistValidationCheck,
        source_rows: List[Dict[str, Any]]
    ) -> List[ValidationIssue]:
        observed = set()
        for row in source_rows:
            value = get_field_value(row, check.field_name)
            if value in (None, ""):
                continue
            # Multi-select picklists are ';' separated
            observed.update(v for v in str(value).split(";") if v)

        if not observed:
            return []

        if check.allowed_values:
            allowed = set(check.allowed_values)
        elif check.validate_against_target:
            describe = await self.target.describe(check.object_name)
            if not describe.success:
                return [ValidationIssue(
                    check_name=check.check_name,
                    message=f"Could not describe {check.object_name} in target org: {describe.error}",
                )]
            allowed = set(describe.picklist_values(check.field_name))
        else:
            return []

        invalid = sorted(observed - allowed)
        if not invalid:
            return []

        message = check.error_message or f"Invalid values for {check.object_name}.{check.field_name}"
        return [ValidationIssue(
            check_name=check.check_name,
            message=f"{message}. Invalid picklist values found: {', '.join(invalid)}",
            severity=check.severity,
            field_name=check.field_name,
            suggested_action=f"Add the values to {check.object_name}.{check.field_name} in the target org",
            context={"invalid_values": invalid},
        )]
