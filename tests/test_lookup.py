"""Tests for cross-org lookup and record type resolution."""

import asyncio

import pytest

from org_migrator.models.execution import (
    CrossEnvironmentMapping,
    ExternalIdConfig,
    ExternalIdStrategy,
    PackageType,
    ResolvedExternalIdFields,
    RunState,
)
from org_migrator.models.template import LookupMapping
from org_migrator.services.external_id import resolve_fields
from org_migrator.services.lookup import LookupResolver, LookupStatus
from tests.factories.template_factories import manual_identity


def _resolver(orgs, config=None, use_cache=True, identity=None):
    resolved = identity or resolve_fields(config or manual_identity())

    async def identity_for(object_type):
        return resolved

    return LookupResolver(orgs.source, orgs.target, identity_for, use_cache=use_cache)


def _pay_code_lookup(source_field="Pay_Code__c", **options):
    return LookupMapping(
        source_field=source_field,
        target_field="Pay_Code__c",
        lookup_object="Pay_Code__c",
        lookup_key_field="{externalIdField}",
        **options,
    )


def _resolve(resolver, value, mapping, state=None):
    return asyncio.run(resolver.resolve_lookup(value, mapping, state or RunState()))


def _target_lookups(target):
    return target.queries_matching("FROM Pay_Code__c WHERE External_Id__c")


# ============================================================================
# Reference resolution
# ============================================================================

def test_opaque_source_id_resolves_through_identity(orgs):
    source_code = orgs.source.add("Pay_Code__c", External_Id__c="EXT-PC-1")
    target_code = orgs.target.add("Pay_Code__c", External_Id__c="EXT-PC-1")

    resolution = _resolve(_resolver(orgs), source_code["Id"], _pay_code_lookup())

    assert resolution.status == LookupStatus.RESOLVED
    assert resolution.target_id == target_code["Id"]
    assert orgs.source.queries == [
        f"SELECT External_Id__c FROM Pay_Code__c WHERE Id = '{source_code['Id']}' LIMIT 1"
    ]
    assert orgs.target.queries == [
        "SELECT Id FROM Pay_Code__c WHERE External_Id__c = 'EXT-PC-1' LIMIT 1"
    ]


def test_dereferenced_identity_skips_source_query(orgs):
    target_code = orgs.target.add("Pay_Code__c", External_Id__c="EXT-PC-1")
    mapping = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}")

    resolution = _resolve(_resolver(orgs), "EXT-PC-1", mapping)

    assert resolution.target_id == target_code["Id"]
    assert orgs.source.queries == []


def test_cache_avoids_repeat_target_queries(orgs):
    orgs.target.add("Pay_Code__c", External_Id__c="EXT-PC-1")
    mapping = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}")
    resolver = _resolver(orgs)
    state = RunState()

    first = _resolve(resolver, "EXT-PC-1", mapping, state)
    second = _resolve(resolver, "EXT-PC-1", mapping, state)

    assert first.target_id == second.target_id
    assert len(_target_lookups(orgs.target)) == 1
    assert state.cached_lookup("Pay_Code__c", "EXT-PC-1") == first.target_id


def test_cache_remembers_missing_references(orgs):
    mapping = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}")
    resolver = _resolver(orgs)
    state = RunState()

    first = _resolve(resolver, "EXT-MISSING", mapping, state)
    second = _resolve(resolver, "EXT-MISSING", mapping, state)

    assert first.status == second.status == LookupStatus.NOT_FOUND
    assert len(_target_lookups(orgs.target)) == 1


def test_cached_miss_still_uses_fallback_value(orgs):
    mapping = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}", fallback_value="a0Xdefault")
    resolver = _resolver(orgs)
    state = RunState()

    _resolve(resolver, "EXT-MISSING", mapping, state)
    second = _resolve(resolver, "EXT-MISSING", mapping, state)

    assert second.target_id == "a0Xdefault"
    assert len(_target_lookups(orgs.target)) == 1


def test_cache_remembers_unresolved_references(orgs):
    config = ExternalIdConfig(
        strategy=ExternalIdStrategy.CROSS_ENVIRONMENT,
        cross_environment_mapping=CrossEnvironmentMapping(
            source_package_type=PackageType.UNMANAGED,
            target_package_type=PackageType.MANAGED,
        ),
    )
    source_code = orgs.source.add("Pay_Code__c", Name="No identity")
    resolver = _resolver(orgs, config)
    state = RunState()

    _resolve(resolver, source_code["Id"], _pay_code_lookup(), state)
    source_queries = len(orgs.source.queries)
    second = _resolve(resolver, source_code["Id"], _pay_code_lookup(), state)

    assert second.status == LookupStatus.UNRESOLVED
    assert len(orgs.source.queries) == source_queries


def test_records_written_later_replace_cached_misses(orgs):
    resolver = _resolver(orgs)
    state = RunState()

    first = _resolve(resolver, "srcPC1", _pay_code_lookup(), state)
    state.record_step_mappings("payCodes", "Pay_Code__c", {"srcPC1": "tgtPC1"})
    second = _resolve(resolver, "srcPC1", _pay_code_lookup(), state)

    assert first.status == LookupStatus.NOT_FOUND
    assert second.target_id == "tgtPC1"


def test_cache_is_keyed_by_value_field(orgs):
    target_code = orgs.target.add("Pay_Code__c", Name="Ordinary", External_Id__c="EXT-PC-1")
    by_id = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}")
    by_name = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}", lookup_value_field="Name")
    resolver = _resolver(orgs)
    state = RunState()

    assert _resolve(resolver, "EXT-PC-1", by_id, state).target_id == target_code["Id"]
    assert _resolve(resolver, "EXT-PC-1", by_name, state).target_id == "Ordinary"
    assert _resolve(resolver, "EXT-PC-1", by_id, state).target_id == target_code["Id"]
    assert len(_target_lookups(orgs.target)) == 2
    # Only ID lookups feed the run's source -> target mappings
    assert state.all_lookup_mappings() == {"EXT-PC-1": target_code["Id"]}


def test_cache_is_scoped_to_run_state(orgs):
    orgs.target.add("Pay_Code__c", External_Id__c="EXT-PC-1")
    mapping = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}")
    resolver = _resolver(orgs)

    _resolve(resolver, "EXT-PC-1", mapping, RunState())
    _resolve(resolver, "EXT-PC-1", mapping, RunState())

    assert len(_target_lookups(orgs.target)) == 2


@pytest.mark.parametrize("use_cache,cache_results", [(False, True), (True, False)])
def test_caching_can_be_disabled(orgs, use_cache, cache_results):
    orgs.target.add("Pay_Code__c", External_Id__c="EXT-PC-1")
    mapping = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}", cache_results=cache_results)
    resolver = _resolver(orgs, use_cache=use_cache)
    state = RunState()

    _resolve(resolver, "EXT-PC-1", mapping, state)
    _resolve(resolver, "EXT-PC-1", mapping, state)

    assert len(_target_lookups(orgs.target)) == 2


def test_record_migrated_earlier_in_run_is_used_directly(orgs):
    state = RunState()
    state.record_step_mappings("payCodes", "Pay_Code__c", {"srcPC1": "tgtPC1"})

    resolution = _resolve(_resolver(orgs), "srcPC1", _pay_code_lookup(), state)

    assert resolution.target_id == "tgtPC1"
    assert orgs.source.queries == []
    assert orgs.target.queries == []


def test_missing_target_record_is_not_found(orgs):
    resolution = _resolve(
        _resolver(orgs), "EXT-PC-9", _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}")
    )

    assert resolution.status == LookupStatus.NOT_FOUND
    assert resolution.target_id is None
    assert "EXT-PC-9" in resolution.message


def test_fallback_value_applies_when_not_found(orgs):
    mapping = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}", fallback_value="a0Xdefault")

    resolution = _resolve(_resolver(orgs), "EXT-PC-9", mapping)

    assert resolution.resolved
    assert resolution.target_id == "a0Xdefault"


def test_empty_source_value_is_not_found(orgs):
    resolution = _resolve(_resolver(orgs), "", _pay_code_lookup())

    assert resolution.status == LookupStatus.NOT_FOUND
    assert orgs.target.queries == []


def test_same_environment_falls_back_to_source_id(orgs):
    source_code = orgs.source.add("Pay_Code__c", Name="No identity")
    target_code = orgs.target.add("Pay_Code__c", External_Id__c=source_code["Id"])

    resolution = _resolve(_resolver(orgs), source_code["Id"], _pay_code_lookup())

    assert resolution.target_id == target_code["Id"]


def test_cross_environment_without_identity_is_unresolved(orgs):
    config = ExternalIdConfig(
        strategy=ExternalIdStrategy.CROSS_ENVIRONMENT,
        cross_environment_mapping=CrossEnvironmentMapping(
            source_package_type=PackageType.UNMANAGED,
            target_package_type=PackageType.MANAGED,
        ),
    )
    # The raw source ID must never be matched against target identity values
    source_code = orgs.source.add("Pay_Code__c", Name="No identity")
    orgs.target.add("Pay_Code__c", tc9_edc__External_ID_Data_Creation__c=source_code["Id"])

    resolution = _resolve(_resolver(orgs, config), source_code["Id"], _pay_code_lookup())

    assert resolution.status == LookupStatus.UNRESOLVED
    assert orgs.target.queries == []


def test_cross_environment_reads_source_then_searches_target_field(orgs):
    config = ExternalIdConfig(
        strategy=ExternalIdStrategy.CROSS_ENVIRONMENT,
        cross_environment_mapping=CrossEnvironmentMapping(
            source_package_type=PackageType.UNMANAGED,
            target_package_type=PackageType.MANAGED,
        ),
    )
    source_code = orgs.source.add("Pay_Code__c", External_ID_Data_Creation__c="EXT-PC-1")
    target_code = orgs.target.add("Pay_Code__c", tc9_edc__External_ID_Data_Creation__c="EXT-PC-1")

    resolution = _resolve(_resolver(orgs, config), source_code["Id"], _pay_code_lookup())

    assert resolution.target_id == target_code["Id"]
    assert orgs.target.queries == [
        "SELECT Id FROM Pay_Code__c WHERE tc9_edc__External_ID_Data_Creation__c = 'EXT-PC-1' LIMIT 1"
    ]


def test_target_without_identity_field_is_unresolved(orgs):
    identity = ResolvedExternalIdFields(source_field="External_Id__c", target_field=None)
    mapping = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}")

    resolution = _resolve(_resolver(orgs, identity=identity), "EXT-PC-1", mapping)

    assert resolution.status == LookupStatus.UNRESOLVED
    assert orgs.target.queries == []


def test_lookup_values_are_escaped(orgs):
    mapping = _pay_code_lookup(source_field="Pay_Code__r.{externalIdField}")

    _resolve(_resolver(orgs), "O'Brien", mapping)

    assert orgs.target.queries == [
        "SELECT Id FROM Pay_Code__c WHERE External_Id__c = 'O\\'Brien' LIMIT 1"
    ]


# ============================================================================
# Record types
# ============================================================================

def _seed_record_type(target):
    return target.add("RecordType", SobjectType="Calendar__c", Name="Weekly", DeveloperName="Weekly_Calendar")


def test_preloaded_record_types_resolve_without_queries(orgs):
    record_type = _seed_record_type(orgs.target)
    resolver = _resolver(orgs)
    state = RunState()

    asyncio.run(resolver.preload_record_types(["Calendar__c"], state))
    queries_after_preload = len(orgs.target.queries)

    assert asyncio.run(resolver.resolve_record_type("Calendar__c", "Weekly", state)) == record_type["Id"]
    assert asyncio.run(resolver.resolve_record_type("Calendar__c", "Weekly_Calendar", state)) == record_type["Id"]
    assert len(orgs.target.queries) == queries_after_preload


def test_record_type_falls_back_to_developer_name(orgs):
    record_type = _seed_record_type(orgs.target)

    resolved = asyncio.run(_resolver(orgs).resolve_record_type("Calendar__c", "Weekly_Calendar", RunState()))

    assert resolved == record_type["Id"]
    assert len(orgs.target.queries) == 2


def test_unknown_record_type_is_none(orgs):
    _seed_record_type(orgs.target)

    resolved = asyncio.run(_resolver(orgs).resolve_record_type("Calendar__c", "Monthly", RunState()))

    assert resolved is None
