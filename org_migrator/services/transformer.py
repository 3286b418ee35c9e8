"""Transformation engine turning source rows into target write payloads."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser

from ..models.execution import PLACEHOLDER, ResolvedExternalIdFields, RunState
from ..models.template import ETLStep, FieldMapping, LookupMapping, TransformationType
from .lookup import LookupResolver
from .soql import get_field_value

logger = logging.getLogger(__name__)

LOOKUP_PREFIX = "lookup:"
RECORD_TYPE_PREFIX = "recordType:"
TARGET_RECORD_TYPE_PLACEHOLDER = "{targetRecordTypeId}"

_FORMULA_FIELD_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.]*)\}")


@dataclass
class TransformedRecord:
    """A target payload built from one source row."""
    source_id: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class TransformEngine:
    """
    Engine for transforming source records into target records.

    Supports:
    - direct, boolean, number, picklist and formula field transforms
    - custom transforms by registered function name
    - lookup: and recordType: prefixed source fields
    - step-level lookup mappings and record type mapping
    - identity carry-over from source to target
    """

    def __init__(self, lookups: LookupResolver):
        """
        Initialize the transform engine.

        Args:
            lookups: Resolver used for lookup and record type fields
        """
        self.lookups = lookups
        self._custom_functions: Dict[str, Callable] = self._register_builtin_functions()
        self._transforms: Dict[TransformationType, Callable] = {
            TransformationType.DIRECT: self._transform_direct,
            TransformationType.BOOLEAN: self._transform_boolean,
            TransformationType.NUMBER: self._transform_number,
            TransformationType.PICKLIST: self._transform_picklist,
            TransformationType.FORMULA: self._transform_formula,
            TransformationType.CUSTOM: self._transform_custom,
        }

    def _register_builtin_functions(self) -> Dict[str, Callable]:
        return {
            "date": _to_date,
            "datetime": _to_datetime,
            "trim": lambda value, config: value.strip() if isinstance(value, str) else value,
            "uppercase": lambda value, config: value.upper() if isinstance(value, str) else value,
            "lowercase": lambda value, config: value.lower() if isinstance(value, str) else value,
        }

    def register_function(self, name: str, func: Callable[[Any, Dict[str, Any]], Any]) -> None:
        """Register a function usable by custom transforms via transformation_config['function']."""
        self._custom_functions[name] = func

    async def transform_record(
        self,
        record: Dict[str, Any],
        step: ETLStep,
        identity: ResolvedExternalIdFields,
        state: RunState
    ) -> TransformedRecord:
        """
        Transform one extracted row for a step.

        Field mappings apply in declared order, then lookup mappings, then the
        record type mapping. Per-field failures are collected on the result
        instead of raised.
        """
        config = step.transform_config
        target_object = step.load_config.target_object
        result = TransformedRecord(source_id=record.get("Id"))

        for mapping in config.field_mappings:
            target_field = identity.for_target(mapping.target_field)
            if target_field is None:
                logger.debug(
                    f"{step.step_name}: skipping {mapping.target_field}, "
                    f"{target_object} has no external ID field in target"
                )
                continue

            try:
                await self._apply_field_mapping(record, mapping, target_field, step, identity, state, result)
            except Exception as e:
                result.errors.append(f"Transform error for {target_field}: {e}")
                logger.error(f"Transform error for {step.step_name}.{target_field}: {e}")
                continue

            if mapping.is_required and result.data.get(target_field) in (None, ""):
                result.errors.append(f"Required field {target_field} is empty")

        for lookup in config.lookup_mappings:
            try:
                await self._apply_lookup_mapping(record, lookup, identity, state, result)
            except Exception as e:
                result.errors.append(f"Lookup error for {lookup.target_field}: {e}")
                logger.error(f"Lookup error for {step.step_name}.{lookup.target_field}: {e}")

        if config.record_type_mapping:
            rt_mapping = config.record_type_mapping
            source_name = get_field_value(record, rt_mapping.source_field)
            mapped = rt_mapping.mapping_dictionary.get(source_name) if source_name else None
            if mapped:
                name = source_name if mapped == TARGET_RECORD_TYPE_PLACEHOLDER else mapped
                record_type_id = await self.lookups.resolve_record_type(target_object, name, state)
                if record_type_id:
                    result.data[rt_mapping.target_field] = record_type_id

        self._carry_identity(record, step, identity, result)
        return result

    async def _apply_field_mapping(
        self,
        record: Dict[str, Any],
        mapping: FieldMapping,
        target_field: str,
        step: ETLStep,
        identity: ResolvedExternalIdFields,
        state: RunState,
        result: TransformedRecord
    ) -> None:
        source_field = identity.for_source(mapping.source_field)

        if source_field.startswith(RECORD_TYPE_PREFIX):
            name = source_field[len(RECORD_TYPE_PREFIX):]
            record_type_id = await self.lookups.resolve_record_type(
                step.load_config.target_object, name, state
            )
            if record_type_id:
                result.data[target_field] = record_type_id
            return

        if source_field.startswith(LOOKUP_PREFIX) or mapping.transformation_type == TransformationType.LOOKUP:
            path = source_field[len(LOOKUP_PREFIX):] if source_field.startswith(LOOKUP_PREFIX) else source_field
            await self._apply_lookup_field(record, path, target_field, step, state, result)
            return

        value = get_field_value(record, source_field)
        transform = self._transforms.get(mapping.transformation_type, self._transform_direct)
        result.data[target_field] = transform(value, mapping.transformation_config, record)

    async def _apply_lookup_field(
        self,
        record: Dict[str, Any],
        path: str,
        target_field: str,
        step: ETLStep,
        state: RunState,
        result: TransformedRecord
    ) -> None:
        """Resolve a lookup: field through the step's lookup mappings."""
        candidates = [m for m in step.transform_config.lookup_mappings if m.target_field == target_field]
        candidates = candidates or step.transform_config.lookup_mappings
        if not candidates:
            raise ValueError(f"No lookup mapping available for {path}")

        value = get_field_value(record, path)
        if value in (None, ""):
            return

        resolution = None
        for lookup in candidates:
            resolution = await self.lookups.resolve_lookup(value, lookup, state)
            if resolution.resolved:
                result.data[target_field] = resolution.target_id
                return

        self._handle_unresolved(candidates[-1], target_field, value, resolution.message, result)

    async def _apply_lookup_mapping(
        self,
        record: Dict[str, Any],
        lookup: LookupMapping,
        identity: ResolvedExternalIdFields,
        state: RunState,
        result: TransformedRecord
    ) -> None:
        source_field = identity.for_source(lookup.source_field)
        value = get_field_value(record, source_field)

        # Parent identity may sit under any candidate field name
        if value in (None, "") and identity.cross_environment and f"__r.{PLACEHOLDER}" in lookup.source_field:
            relationship = lookup.source_field[:-len(f".{PLACEHOLDER}")]
            for candidate in identity.source_candidates():
                value = get_field_value(record, f"{relationship}.{candidate}")
                if value not in (None, ""):
                    break

        if value in (None, ""):
            return

        resolution = await self.lookups.resolve_lookup(value, lookup, state)
        if resolution.resolved:
            result.data[lookup.target_field] = resolution.target_id
        else:
            self._handle_unresolved(lookup, lookup.target_field, value, resolution.message, result)

    def _handle_unresolved(
        self,
        lookup: LookupMapping,
        target_field: str,
        value: Any,
        message: str,
        result: TransformedRecord
    ) -> None:
        """Unset by default; explicit null if allowed; a record error if resolution is mandatory."""
        if lookup.allow_null is False:
            result.errors.append(f"Unresolved lookup {target_field} ({lookup.lookup_object} {value}): {message}")
        elif lookup.allow_null:
            result.data[target_field] = None
        else:
            logger.debug(f"Lookup {target_field} left unset for {value}: {message}")

    def _carry_identity(
        self,
        record: Dict[str, Any],
        step: ETLStep,
        identity: ResolvedExternalIdFields,
        result: TransformedRecord
    ) -> None:
        """Copy the durable identity onto the target record if the source row carries it."""
        if not identity.has_target:
            return

        handling = step.transform_config.external_id_handling
        source_field = identity.for_source(handling.source_field) if handling else identity.source_field
        target_field = identity.for_target(handling.target_field) if handling else identity.target_field
        if not target_field or target_field in result.data:
            return

        if source_field in record and record[source_field] not in (None, ""):
            result.data[target_field] = record[source_field]

    # Built-in transform functions

    def _transform_direct(self, value: Any, config: Dict, record: Dict) -> Any:
        return value

    def _transform_boolean(self, value: Any, config: Dict, record: Dict) -> bool:
        return value is True or value == "true" or value == 1

    def _transform_number(self, value: Any, config: Dict, record: Dict) -> Optional[float]:
        if value in (None, ""):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"Cannot convert {value!r} to a number")

    def _transform_picklist(self, value: Any, config: Dict, record: Dict) -> Any:
        """Map through mapping_dictionary; unmapped values pass through unchanged."""
        mapping = config.get("mapping_dictionary") or {}
        if isinstance(value, str) and mapping.get(value):
            return mapping[value]
        return value

    def _transform_formula(self, value: Any, config: Dict, record: Dict) -> Any:
        """Render transformation_config['expression'], substituting {Field.Path} from the row."""
        expression = config.get("expression")
        if not expression:
            return value

        def substitute(match):
            field_value = get_field_value(record, match.group(1))
            return "" if field_value is None else str(field_value)

        return _FORMULA_FIELD_RE.sub(substitute, expression)

    def _transform_custom(self, value: Any, config: Dict, record: Dict) -> Any:
        name = config.get("function")
        func = self._custom_functions.get(name) if name else None
        if not func:
            logger.warning(f"Unknown custom transform function: {name}, using direct copy")
            return value
        return func(value, config)


def _to_date(value: Any, config: Dict) -> Optional[str]:
    if value in (None, ""):
        return None
    return date_parser.parse(str(value), dayfirst=config.get("dayfirst", False)).date().isoformat()


def _to_datetime(value: Any, config: Dict) -> Optional[str]:
    if value in (None, ""):
        return None
    return date_parser.parse(str(value), dayfirst=config.get("dayfirst", False)).isoformat()
