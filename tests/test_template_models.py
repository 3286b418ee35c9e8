"""Tests for template and execution models."""

import json

import pytest

from org_migrator.exceptions import TemplateError
from org_migrator.models.execution import ExecutionConfig, OrgDescriptor, RunState
from org_migrator.models.template import (
    ETLStep,
    ExpectedResult,
    LoadConfig,
    LoadOperation,
    MigrationTemplate,
    RetryConfig,
    Severity,
    TransformationType,
)
from tests.factories.template_factories import make_step, make_template


def _plan_names(template):
    return [step.step_name for step in template.execution_plan()]


# ============================================================================
# Execution plan
# ============================================================================

def test_plan_follows_execution_order_without_dependencies():
    template = make_template(
        make_step("a", "A__c"), make_step("b", "B__c"), make_step("c", "C__c"),
        execution_order=["c", "a", "b"],
    )

    assert _plan_names(template) == ["c", "a", "b"]


def test_plan_puts_dependencies_first():
    template = make_template(
        make_step("periods", "Pay_Period__c", dependencies=["calendars"]),
        make_step("calendars", "Calendar__c"),
        make_step("rules", "Leave_Rule__c", dependencies=["periods", "calendars"]),
    )

    assert _plan_names(template) == ["calendars", "periods", "rules"]


def test_plan_rejects_unknown_dependency():
    template = make_template(make_step("rules", "Leave_Rule__c", dependencies=["payCodes"]))

    with pytest.raises(TemplateError, match="unknown step 'payCodes'"):
        template.execution_plan()


def test_plan_rejects_cycles():
    template = make_template(
        make_step("a", "A__c", dependencies=["b"]),
        make_step("b", "B__c", dependencies=["a"]),
        make_step("c", "C__c"),
    )

    with pytest.raises(TemplateError, match="cycle between steps: a, b"):
        template.execution_plan()


# ============================================================================
# Serialization
# ============================================================================

def test_template_loads_from_json_file(example_templates_dir):
    template = MigrationTemplate.from_json_file(f"{example_templates_dir}/payroll/leave-rules.json")

    step = template.etl_steps[0]
    assert template.id == "payroll-leave-rules"
    assert step.load_config.operation == LoadOperation.UPSERT
    assert step.load_config.retry_config.is_retryable("UNABLE_TO_LOCK_ROW: try again")
    assert step.transform_config.lookup_mappings[0].lookup_object == "tc9_pr__Pay_Code__c"
    assert step.validation_config.pre_validation_queries[0].cache_key == "target_pay_codes"


def test_template_survives_save_and_reload(tmp_path, example_templates_dir):
    original = MigrationTemplate.from_json_file(f"{example_templates_dir}/payroll/calendar.json")
    path = tmp_path / "calendar.json"

    original.save_to_json(str(path))
    reloaded = MigrationTemplate.from_json_file(str(path))

    assert reloaded == original
    assert json.loads(path.read_text())["execution_order"] == ["calendarMaster", "calendarPeriods"]


def test_step_defaults_from_minimal_dict():
    step = ETLStep.from_dict({
        "step_name": "payCodes",
        "extract_config": {"soql_query": "SELECT Id FROM Pay_Code__c", "object_api_name": "Pay_Code__c"},
        "transform_config": {"field_mappings": [{"source_field": "Name", "target_field": "Name"}]},
        "load_config": {"target_object": "Pay_Code__c"},
    })

    assert step.load_config.operation == LoadOperation.INSERT
    assert step.extract_config.filter_field == "Id"
    assert step.transform_config.field_mappings[0].transformation_type == TransformationType.DIRECT
    assert step.validation_config is None
    assert step.dependencies == []


def test_validation_check_defaults():
    step = ETLStep.from_dict({
        "step_name": "payCodes",
        "extract_config": {"soql_query": "SELECT Id FROM Pay_Code__c", "object_api_name": "Pay_Code__c"},
        "transform_config": {},
        "load_config": {"target_object": "Pay_Code__c"},
        "validation_config": {
            "data_integrity_checks": [{"check_name": "c", "validation_query": "SELECT Id FROM Pay_Code__c"}],
        },
    })

    check = step.validation_config.data_integrity_checks[0]
    assert check.expected_result == ExpectedResult.EMPTY
    assert check.severity == Severity.ERROR
    assert check.org == "source"


def test_unknown_load_operation_is_a_template_error():
    with pytest.raises(TemplateError, match="merge"):
        LoadConfig.from_dict({"target_object": "Pay_Code__c", "operation": "merge"})


@pytest.mark.parametrize("error,expected", [
    ("UNABLE_TO_LOCK_ROW: unable to obtain exclusive access", True),
    ("REQUIRED_FIELD_MISSING: Name", False),
    ("", False),
])
def test_retry_config_matches_declared_errors(error, expected):
    retry = RetryConfig(retryable_errors=["UNABLE_TO_LOCK_ROW"])

    assert retry.is_retryable(error) is expected


def test_nothing_is_retryable_by_default():
    assert not RetryConfig().is_retryable("UNABLE_TO_LOCK_ROW")


# ============================================================================
# Execution models
# ============================================================================

def test_execution_config_merges_partial_dict():
    config = ExecutionConfig.from_dict({"batch_size": "50"})

    assert config.batch_size == 50
    assert config.max_retries == ExecutionConfig().max_retries
    assert config.enable_lookup_caching


def test_org_descriptor_from_env(monkeypatch):
    monkeypatch.setenv("ORG_MIGRATOR_SOURCE_ORG_ID", "00D000000000001")
    monkeypatch.setenv("ORG_MIGRATOR_SOURCE_INSTANCE_URL", "https://source.my.salesforce.com")
    monkeypatch.setenv("ORG_MIGRATOR_SOURCE_ACCESS_TOKEN", "token")

    org = OrgDescriptor.from_env("ORG_MIGRATOR_SOURCE")

    assert org.org_id == "00D000000000001"
    assert org.instance_url == "https://source.my.salesforce.com"
    assert org.access_token == "token"


def test_org_descriptor_dict_hides_token():
    org = OrgDescriptor(org_id="00D1", instance_url="https://x", access_token="secret")

    assert "secret" not in json.dumps(org.to_dict())


def test_run_state_tracks_writes_and_mappings():
    state = RunState()
    state.track_write("tgt1", "Pay_Code__c", "payCodes")
    state.record_step_mappings("payCodes", "Pay_Code__c", {"src1": "tgt1"})
    state.cache_lookup("Leave_Rule__c", "EXT-LR-1", "tgt9")

    assert state.rollback_log[0].target_record_id == "tgt1"
    assert state.migrated_target_id("Pay_Code__c", "src1") == "tgt1"
    assert state.migrated_target_id("Leave_Rule__c", "src1") is None
    assert state.all_lookup_mappings() == {"src1": "tgt1", "EXT-LR-1": "tgt9"}
