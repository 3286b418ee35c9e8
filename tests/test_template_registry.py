"""Tests for the template registry and structural template validation."""

import json

import pytest

from org_migrator.exceptions import TemplateError
from org_migrator.models.template import Complexity, LoadOperation
from org_migrator.services.template_registry import TemplateRegistry
from tests.factories.template_factories import make_step, make_template


def test_loads_example_templates(example_templates_dir):
    registry = TemplateRegistry(templates_dir=example_templates_dir)

    assert [t.id for t in registry.list_templates()] == [
        "payroll-calendar",
        "payroll-leave-rules",
        "payroll-pay-codes",
    ]


def test_example_templates_are_structurally_valid(example_templates_dir):
    registry = TemplateRegistry(templates_dir=example_templates_dir)

    for template in registry.list_templates():
        assert TemplateRegistry.validate_template(template) == []


def test_missing_directory_loads_nothing(tmp_path):
    registry = TemplateRegistry()

    assert registry.load_templates_from_directory(str(tmp_path / "missing")) == 0
    assert registry.list_templates() == []


def test_invalid_files_are_skipped(tmp_path, example_templates_dir):
    (tmp_path / "broken.json").write_text("{not json")
    (tmp_path / "cyclic.json").write_text(json.dumps(make_template(
        make_step("a", "A__c", dependencies=["b"]),
        make_step("b", "B__c", dependencies=["a"]),
        template_id="cyclic",
    ).to_dict()))
    (tmp_path / "ok.json").write_text(json.dumps(make_template(make_step("a", "A__c"), template_id="ok").to_dict()))

    registry = TemplateRegistry()
    loaded = registry.load_templates_from_directory(str(tmp_path))

    assert loaded == 1
    assert registry.get_template("ok") is not None
    assert registry.get_template("cyclic") is None


def test_lookup_by_category_complexity_and_text(example_templates_dir):
    registry = TemplateRegistry(templates_dir=example_templates_dir)

    assert len(registry.get_templates_by_category("PAYROLL")) == 3
    assert registry.get_templates_by_category("finance") == []
    assert [t.id for t in registry.get_templates_by_complexity(Complexity.SIMPLE)] == ["payroll-pay-codes"]
    assert [t.id for t in registry.search_templates("pay code")] == ["payroll-leave-rules", "payroll-pay-codes"]


def test_register_and_remove():
    registry = TemplateRegistry()
    template = make_template(make_step("a", "A__c"))

    registry.register_template(template)

    assert registry.get_template("test-template") is template
    assert registry.remove_template("test-template")
    assert not registry.remove_template("test-template")


def test_strict_registration_rejects_invalid_templates():
    registry = TemplateRegistry()
    template = make_template(make_step("a", "A__c"), make_step("a", "A__c"))

    with pytest.raises(TemplateError, match="Duplicate step names: a"):
        registry.register_template(template)
    assert registry.get_template("test-template") is None


def test_lenient_registration_keeps_invalid_templates():
    registry = TemplateRegistry()
    template = make_template(make_step("a", "A__c"), make_step("a", "A__c"))

    registry.register_template(template, strict=False)

    assert registry.get_template("test-template") is template


# ============================================================================
# Structural validation
# ============================================================================

def _problems(template):
    return TemplateRegistry.validate_template(template)


def test_template_without_steps():
    assert _problems(make_template()) == ["Template must have at least one ETL step"]


def test_execution_order_must_cover_steps_exactly():
    template = make_template(make_step("a", "A__c"), make_step("b", "B__c"), execution_order=["a", "c"])

    problems = _problems(template)

    assert "Steps missing from execution order: b" in problems
    assert "Execution order references unknown steps: c" in problems


def test_execution_order_must_respect_dependencies():
    template = make_template(
        make_step("periods", "Pay_Period__c", dependencies=["calendars"]),
        make_step("calendars", "Calendar__c"),
        execution_order=["periods", "calendars"],
    )

    assert _problems(template) == [
        "Step 'periods': execution order places it before its dependency 'calendars'"
    ]


def test_unknown_dependency_is_reported():
    template = make_template(make_step("rules", "Leave_Rule__c", dependencies=["payCodes"]))

    assert _problems(template) == ["Step 'rules': depends on unknown step 'payCodes'"]


def test_cycle_is_reported_through_ordering():
    # No execution order can satisfy a cycle, so one edge is always out of order
    template = make_template(
        make_step("a", "A__c", dependencies=["b"]),
        make_step("b", "B__c", dependencies=["a"]),
        execution_order=["a", "b"],
    )

    assert _problems(template) == ["Step 'a': execution order places it before its dependency 'b'"]


def test_upsert_requires_external_id_field():
    step = make_step("a", "A__c", operation=LoadOperation.UPSERT)
    step.load_config.external_id_field = None

    assert _problems(make_template(step)) == ["Step 'a': upsert requires an external_id_field"]
