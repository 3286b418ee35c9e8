"""
External-identity resolution.

A record's durable cross-environment identifier can live under different
field names depending on how the org was packaged (managed package field,
unmanaged copy of it, or a generic fallback). These helpers pick the right
field per org and object type and build queries that tolerate the drift.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..clients.base import OrgClient
from ..models.execution import (
    PLACEHOLDER,
    SOURCE_PLACEHOLDER,
    TARGET_PLACEHOLDER,
    CrossEnvironmentMapping,
    ExternalIdConfig,
    ExternalIdStrategy,
    PackageType,
    ResolvedExternalIdFields,
)
from ..models.template import Severity
from .soql import (
    get_field_value,
    remove_select_fields,
    sanitize_field_name,
    sanitize_object_name,
    select_list_bounds,
)
from ..exceptions import QueryError

logger = logging.getLogger(__name__)

_RELATIONSHIP_PLACEHOLDER_RE = re.compile(
    r"\b([A-Za-z][A-Za-z0-9_]*__r)\." + re.escape(PLACEHOLDER)
)


@dataclass
class EnvironmentExternalIdInfo:
    """Identity field layout detected for one org."""
    org_id: str
    package_type: Optional[PackageType] = None
    external_id_field: Optional[str] = None
    available_fields: List[str] = field(default_factory=list)
    object_fields: Dict[str, Optional[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "package_type": self.package_type.value if self.package_type else None,
            "external_id_field": self.external_id_field,
            "available_fields": self.available_fields,
            "object_fields": self.object_fields,
        }


@dataclass
class ExternalIdIssue:
    severity: Severity
    message: str
    object_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"severity": self.severity.value, "message": self.message, "object_type": self.object_type}


@dataclass
class ExternalIdValidationResult:
    is_valid: bool = True
    issues: List[ExternalIdIssue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "issues": [i.to_dict() for i in self.issues],
            "recommendations": self.recommendations,
        }


def _dedupe(values: Sequence[Optional[str]]) -> List[str]:
    result = []
    for value in values:
        if value and value not in result:
            result.append(value)
    return result


async def resolve_external_id_field(
    client: OrgClient,
    object_type: str,
    candidates: Sequence[str]
) -> Optional[str]:
    """
    Probe an org's schema for the first candidate identity field on object_type.

    Returns None if no candidate exists; the caller must then treat the object
    as having no durable identity.
    """
    object_type = sanitize_object_name(object_type)
    for candidate in _dedupe(candidates):
        result = await client.query(f"SELECT {sanitize_field_name(candidate)} FROM {object_type} LIMIT 1")
        if result.success:
            logger.debug(f"{object_type}: external ID field is {candidate} on org {client.org.org_id}")
            return candidate
        logger.debug(f"{object_type}.{candidate} not available on org {client.org.org_id}: {result.error}")

    logger.warning(f"No external ID field found for {object_type} on org {client.org.org_id}")
    return None


def replace_placeholders(template: str, field_name: str) -> str:
    """Substitute every {externalIdField} token; other braces are left alone."""
    return template.replace(PLACEHOLDER, field_name)


def build_cross_environment_query(
    template: str,
    source_field: str,
    target_field: str,
    candidates: Optional[Sequence[str]] = None
) -> str:
    """
    Resolve identity tokens in a query template for a cross-environment run.

    {sourceExternalIdField} becomes source_field and {targetExternalIdField}
    becomes target_field. When candidates are given, a relationship traversal
    X__r.{externalIdField} in the select list expands to every candidate so a
    parent's identity is read whichever naming the parent object uses. Any
    remaining {externalIdField} resolves to source_field.
    """
    query = template
    if candidates:
        fields = _dedupe([source_field, *candidates])
        try:
            start, end = select_list_bounds(query)
        except QueryError:
            start = end = 0
        select_list = _RELATIONSHIP_PLACEHOLDER_RE.sub(
            lambda m: ", ".join(f"{m.group(1)}.{f}" for f in fields),
            query[start:end],
        )
        query = query[:start] + select_list + query[end:]

    query = query.replace(SOURCE_PLACEHOLDER, source_field)
    query = query.replace(TARGET_PLACEHOLDER, target_field)
    return query.replace(PLACEHOLDER, source_field)


def strip_external_id_references(query: str, fields: Sequence[str]) -> str:
    """Remove identity fields (resolved or as placeholders) from a query's select list."""
    tokens = (PLACEHOLDER, SOURCE_PLACEHOLDER, TARGET_PLACEHOLDER)

    def references_identity(item: str) -> bool:
        if any(token in item for token in tokens):
            return True
        return any(item == f or item.endswith(f".{f}") for f in fields)

    return remove_select_fields(query, references_identity)


def get_external_id_field(config: ExternalIdConfig, org: str) -> str:
    """
    Identity field configured for the 'source' or 'target' side of a run.

    For cross-environment runs with declared package types, the managed or
    unmanaged field is chosen by the side's package type.
    """
    if org not in ("source", "target"):
        raise ValueError(f"org must be 'source' or 'target', got {org!r}")

    mapping = config.cross_environment_mapping
    if config.strategy == ExternalIdStrategy.CROSS_ENVIRONMENT and mapping:
        package_type = mapping.source_package_type if org == "source" else mapping.target_package_type
        return config.managed_field if package_type == PackageType.MANAGED else config.unmanaged_field

    return config.source_field if org == "source" else config.target_field


def resolve_fields(config: ExternalIdConfig) -> ResolvedExternalIdFields:
    """Resolved identity fields for a run whose fields are known up front."""
    return ResolvedExternalIdFields(
        source_field=get_external_id_field(config, "source"),
        target_field=get_external_id_field(config, "target"),
        cross_environment=config.strategy == ExternalIdStrategy.CROSS_ENVIRONMENT,
        candidates=tuple(config.candidate_fields()),
    )


def create_default_config(strategy: ExternalIdStrategy = ExternalIdStrategy.AUTO_DETECT) -> ExternalIdConfig:
    config = ExternalIdConfig(strategy=strategy)
    if strategy == ExternalIdStrategy.CROSS_ENVIRONMENT:
        config.cross_environment_mapping = CrossEnvironmentMapping()
    return config


def validate_config(config: ExternalIdConfig) -> List[str]:
    """Return configuration problems; an empty list means the config is usable."""
    errors = []
    for name in ("source_field", "target_field", "managed_field", "unmanaged_field", "fallback_field"):
        value = getattr(config, name)
        if not value:
            errors.append(f"{name} is required")
            continue
        try:
            sanitize_field_name(value)
        except QueryError as e:
            errors.append(str(e))

    if config.strategy == ExternalIdStrategy.CROSS_ENVIRONMENT:
        if not config.cross_environment_mapping:
            errors.append("cross-environment strategy requires cross_environment_mapping")
        elif (
            config.cross_environment_mapping.source_package_type
            == config.cross_environment_mapping.target_package_type
            and config.source_field == config.target_field
        ):
            errors.append("cross-environment strategy used but both orgs share the same package type and field")

    return errors


def get_all_possible_external_id_fields(config: ExternalIdConfig) -> List[str]:
    """Every field name that may carry the durable identity, most specific first."""
    return _dedupe([
        config.source_field,
        config.target_field,
        config.managed_field,
        config.unmanaged_field,
        config.fallback_field,
    ])


async def detect_environment_info(
    client: OrgClient,
    org_id: str,
    object_types: Sequence[str],
    config: Optional[ExternalIdConfig] = None
) -> EnvironmentExternalIdInfo:
    """Probe an org for the identity field of each object type and infer its package type."""
    config = config or ExternalIdConfig()
    info = EnvironmentExternalIdInfo(org_id=org_id)

    for object_type in object_types:
        info.object_fields[object_type] = await resolve_external_id_field(
            client, object_type, config.candidate_fields()
        )

    found = [f for f in info.object_fields.values() if f]
    info.available_fields = _dedupe(found)
    if found:
        info.external_id_field = Counter(found).most_common(1)[0][0]
        if info.external_id_field == config.managed_field:
            info.package_type = PackageType.MANAGED
        elif info.external_id_field == config.unmanaged_field:
            info.package_type = PackageType.UNMANAGED

    logger.info(
        f"Org {org_id}: package type {info.package_type.value if info.package_type else 'unknown'}, "
        f"external ID field {info.external_id_field}"
    )
    return info


def detect_cross_environment_mapping(
    source_info: EnvironmentExternalIdInfo,
    target_info: EnvironmentExternalIdInfo,
    base: Optional[ExternalIdConfig] = None
) -> ExternalIdConfig:
    """Build a run config from detected environment info."""
    base = base or ExternalIdConfig()
    config = ExternalIdConfig(
        source_field=source_info.external_id_field or base.source_field,
        target_field=target_info.external_id_field or base.target_field,
        managed_field=base.managed_field,
        unmanaged_field=base.unmanaged_field,
        fallback_field=base.fallback_field,
        strategy=ExternalIdStrategy.MANUAL,
    )

    if (
        source_info.package_type
        and target_info.package_type
        and source_info.package_type != target_info.package_type
    ):
        config.strategy = ExternalIdStrategy.CROSS_ENVIRONMENT
        config.cross_environment_mapping = CrossEnvironmentMapping(
            source_package_type=source_info.package_type,
            target_package_type=target_info.package_type,
        )
    elif config.source_field != config.target_field:
        config.strategy = ExternalIdStrategy.CROSS_ENVIRONMENT

    return config


def validate_cross_environment_compatibility(
    source_info: EnvironmentExternalIdInfo,
    target_info: EnvironmentExternalIdInfo
) -> ExternalIdValidationResult:
    """Report identity-field gaps and packaging differences between two orgs."""
    result = ExternalIdValidationResult()

    for side, info in (("source", source_info), ("target", target_info)):
        for object_type, field_name in info.object_fields.items():
            if not field_name:
                result.issues.append(ExternalIdIssue(
                    severity=Severity.ERROR,
                    message=f"No external ID field found for {object_type} in {side} org {info.org_id}",
                    object_type=object_type,
                ))
                result.recommendations.append(
                    f"Add an external ID field to {object_type} in the {side} org"
                )

    if (
        source_info.package_type
        and target_info.package_type
        and source_info.package_type != target_info.package_type
    ):
        result.issues.append(ExternalIdIssue(
            severity=Severity.WARNING,
            message=(
                f"Source org uses a {source_info.package_type.value} package and target org uses "
                f"a {target_info.package_type.value} package"
            ),
        ))
        result.recommendations.append("Use the cross-environment external ID strategy")
    elif (
        source_info.external_id_field
        and target_info.external_id_field
        and source_info.external_id_field != target_info.external_id_field
    ):
        result.issues.append(ExternalIdIssue(
            severity=Severity.INFO,
            message=(
                f"External ID fields differ: {source_info.external_id_field} (source) vs "
                f"{target_info.external_id_field} (target)"
            ),
        ))

    result.is_valid = not any(i.severity == Severity.ERROR for i in result.issues)
    return result


def extract_external_id_value(record: Dict[str, Any], candidates: Sequence[str]) -> Optional[str]:
    """First non-empty value among the candidate identity fields of a record."""
    for candidate in candidates:
        value = get_field_value(record, candidate)
        if value not in (None, ""):
            return str(value)
    return None


async def resolve_object_fields(
    config: ExternalIdConfig,
    source_client: OrgClient,
    target_client: OrgClient,
    object_type: str,
    cache: Dict[str, ResolvedExternalIdFields]
) -> ResolvedExternalIdFields:
    """
    Identity fields for one object type, probing both orgs under auto-detect.

    Manual and cross-environment runs use the configured fields for every
    object. Results are memoized in cache, which the caller owns.
    """
    if object_type in cache:
        return cache[object_type]

    if config.strategy != ExternalIdStrategy.AUTO_DETECT:
        resolved = resolve_fields(config)
    else:
        candidates = get_all_possible_external_id_fields(config)
        source_field = await resolve_external_id_field(source_client, object_type, candidates)
        target_field = await resolve_external_id_field(target_client, object_type, candidates)
        resolved = ResolvedExternalIdFields(
            source_field=source_field or config.source_field,
            target_field=target_field,
            cross_environment=False,
            candidates=tuple(config.candidate_fields()),
        )

    cache[object_type] = resolved
    return resolved
