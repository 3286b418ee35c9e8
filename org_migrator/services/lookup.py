"""Cross-org reference and record type resolution."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from ..clients.base import OrgClient
from ..models.execution import (
    PLACEHOLDER,
    SOURCE_PLACEHOLDER,
    ResolvedExternalIdFields,
    RunState,
)
from ..models.template import LookupMapping
from .soql import escape_soql_string, get_field_value, sanitize_field_name, sanitize_object_name

logger = logging.getLogger(__name__)

IdentityProvider = Callable[[str], Awaitable[ResolvedExternalIdFields]]


class LookupStatus(str, Enum):
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    UNRESOLVED = "unresolved"


@dataclass
class LookupResolution:
    """Outcome of resolving one source reference to a target record ID."""
    status: LookupStatus
    target_id: Optional[str] = None
    message: str = ""

    @property
    def resolved(self) -> bool:
        return self.status == LookupStatus.RESOLVED


class LookupResolver:
    """
    Resolves source-side references to target-side record IDs.

    Two kinds of source values are handled: opaque source record IDs, which
    are first translated to their durable identity by querying the source
    org, and identity values already dereferenced through a relationship in
    the extract query. Either way the target org is then searched by
    identity. Results are cached in the run's RunState.
    """

    def __init__(
        self,
        source_client: OrgClient,
        target_client: OrgClient,
        identity_for: IdentityProvider,
        use_cache: bool = True
    ):
        self.source_client = source_client
        self.target_client = target_client
        self.identity_for = identity_for
        self.use_cache = use_cache

    @staticmethod
    def is_dereferenced_identity(source_field: str, identity: ResolvedExternalIdFields) -> bool:
        """True if source_field is a relationship traversal ending in an identity field."""
        if "." not in source_field:
            return False
        last = source_field.rsplit(".", 1)[1]
        if last in (PLACEHOLDER, SOURCE_PLACEHOLDER):
            return True
        return last in identity.source_candidates()

    async def resolve_lookup(
        self,
        source_value,
        mapping: LookupMapping,
        state: RunState
    ) -> LookupResolution:
        """
        Resolve a source value to a target record ID.

        Args:
            source_value: Opaque source record ID or dereferenced identity value
            mapping: Lookup rule being applied
            state: Run state holding the lookup cache

        Returns:
            LookupResolution; NOT_FOUND and UNRESOLVED are outcomes, not errors
        """
        if source_value in (None, ""):
            return LookupResolution(LookupStatus.NOT_FOUND, message="empty source value")

        lookup_object = mapping.lookup_object
        value_field = mapping.lookup_value_field or "Id"
        key = str(source_value)
        caching = self.use_cache and mapping.cache_results

        if caching:
            cached = state.cached_lookup(lookup_object, key, value_field)
            if cached:
                return LookupResolution(LookupStatus.RESOLVED, cached)
            miss = state.cached_lookup_miss(lookup_object, key, value_field)
            if miss is not None:
                return self._apply_fallback(miss, mapping)

        resolution = await self._resolve_uncached(key, mapping, state)
        if caching:
            if resolution.resolved:
                state.cache_lookup(lookup_object, key, resolution.target_id, value_field)
            else:
                state.cache_lookup_miss(lookup_object, key, resolution, value_field)
        return self._apply_fallback(resolution, mapping)

    @staticmethod
    def _apply_fallback(resolution: LookupResolution, mapping: LookupMapping) -> LookupResolution:
        if resolution.status == LookupStatus.NOT_FOUND and mapping.fallback_value:
            return LookupResolution(LookupStatus.RESOLVED, mapping.fallback_value)
        return resolution

    async def _resolve_uncached(self, key: str, mapping: LookupMapping, state: RunState) -> LookupResolution:
        lookup_object = mapping.lookup_object
        identity = await self.identity_for(lookup_object)

        if self.is_dereferenced_identity(mapping.source_field, identity):
            identity_value = key
        else:
            migrated = None
            if (mapping.lookup_value_field or "Id") == "Id":
                migrated = state.migrated_target_id(lookup_object, key)
            if migrated:
                return LookupResolution(LookupStatus.RESOLVED, migrated)

            identity_value = await self._source_identity(lookup_object, key, identity)
            if identity_value is None:
                if identity.cross_environment:
                    logger.warning(
                        f"No external ID value on source {lookup_object} {key}; lookup left unresolved"
                    )
                    return LookupResolution(
                        LookupStatus.UNRESOLVED,
                        message=f"No external ID value found for {lookup_object} {key} in source org",
                    )
                identity_value = key

        return await self._find_target(mapping, identity, identity_value)

    async def _source_identity(
        self,
        object_type: str,
        source_id: str,
        identity: ResolvedExternalIdFields
    ) -> Optional[str]:
        """Read a source record's identity value, trying each candidate field in order."""
        object_type = sanitize_object_name(object_type)
        for field_name in identity.source_candidates():
            result = await self.source_client.query(
                f"SELECT {sanitize_field_name(field_name)} FROM {object_type} "
                f"WHERE Id = '{escape_soql_string(source_id)}' LIMIT 1"
            )
            if not result.success:
                logger.debug(f"{object_type}.{field_name} not queryable on source: {result.error}")
                continue
            if result.data:
                value = get_field_value(result.data[0], field_name)
                if value not in (None, ""):
                    return str(value)
        return None

    async def _find_target(
        self,
        mapping: LookupMapping,
        identity: ResolvedExternalIdFields,
        identity_value: str
    ) -> LookupResolution:
        key_field = identity.for_target(mapping.lookup_key_field)
        if not key_field:
            return LookupResolution(
                LookupStatus.UNRESOLVED,
                message=f"{mapping.lookup_object} has no external ID field in the target org",
            )

        value_field = identity.for_target(mapping.lookup_value_field or "Id") or "Id"
        result = await self.target_client.query(
            f"SELECT {sanitize_field_name(value_field)} FROM {sanitize_object_name(mapping.lookup_object)} "
            f"WHERE {sanitize_field_name(key_field)} = '{escape_soql_string(identity_value)}' LIMIT 1"
        )
        if not result.success:
            logger.warning(f"Lookup query on {mapping.lookup_object} failed: {result.error}")
            return LookupResolution(LookupStatus.NOT_FOUND, message=result.error or "lookup query failed")

        if not result.data:
            return LookupResolution(
                LookupStatus.NOT_FOUND,
                message=f"No {mapping.lookup_object} with {key_field} = {identity_value} in target org",
            )

        return LookupResolution(LookupStatus.RESOLVED, get_field_value(result.data[0], value_field))

    # Record types

    async def preload_record_types(self, object_types: Iterable[str], state: RunState) -> None:
        """Cache every record type of the given objects by Name and DeveloperName."""
        for object_type in sorted(set(object_types)):
            result = await self.target_client.query(
                "SELECT Id, Name, DeveloperName FROM RecordType "
                f"WHERE SobjectType = '{escape_soql_string(object_type)}'"
            )
            if not result.success:
                logger.warning(f"Could not preload record types for {object_type}: {result.error}")
                continue

            cache = state.record_type_cache.setdefault(object_type, {})
            for row in result.data:
                if row.get("Name"):
                    cache[row["Name"]] = row["Id"]
                if row.get("DeveloperName"):
                    cache[row["DeveloperName"]] = row["Id"]
            logger.debug(f"Preloaded {len(result.data)} record types for {object_type}")

    async def resolve_record_type(self, object_type: str, name: str, state: RunState) -> Optional[str]:
        """Target record type ID by display name, falling back to developer name."""
        if not name:
            return None

        cache = state.record_type_cache.setdefault(object_type, {})
        if name in cache:
            return cache[name]

        for name_field in ("Name", "DeveloperName"):
            result = await self.target_client.query(
                "SELECT Id, Name, DeveloperName FROM RecordType "
                f"WHERE SobjectType = '{escape_soql_string(object_type)}' "
                f"AND {name_field} = '{escape_soql_string(name)}' LIMIT 1"
            )
            if result.success and result.data:
                row = result.data[0]
                cache[name] = row["Id"]
                for key in ("Name", "DeveloperName"):
                    if row.get(key):
                        cache[row[key]] = row["Id"]
                return row["Id"]

        logger.warning(f"Record type '{name}' not found for {object_type} in target org")
        return None
