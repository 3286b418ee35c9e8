"""Tests for the command-line interface."""

import json

import pytest

from org_migrator import cli
from org_migrator.models.execution import MANAGED_FIELD, UNMANAGED_FIELD
from tests.factories.template_factories import make_step, make_template, manual_identity


@pytest.fixture
def workspace(tmp_path, orgs, monkeypatch):
    """Org, identity and template files for a pay code copy, with the CLI wired to in-memory orgs."""
    monkeypatch.setattr(cli, "default_client_factory", orgs.factory)

    files = {
        "source": orgs.source_org.to_dict(),
        "target": orgs.target_org.to_dict(),
        "external_id": manual_identity().to_dict(),
        "config": {"retry_delay_ms": 0},
        "template": make_template(
            make_step("payCodes", "Pay_Code__c", fields=["Name", "Code__c"]),
            template_id="pay-codes-copy",
        ).to_dict(),
    }
    paths = {}
    for name, content in files.items():
        path = tmp_path / f"{name}.json"
        path.write_text(json.dumps(content))
        paths[name] = str(path)
    paths["dir"] = tmp_path
    return paths


def _write_selection(workspace, selected):
    path = workspace["dir"] / "selection.json"
    path.write_text(json.dumps(selected))
    return str(path)


def _run_args(workspace, selection, *extra):
    return [
        "run",
        "--template", workspace["template"],
        "--selection", selection,
        "--source", workspace["source"],
        "--target", workspace["target"],
        "--external-id", workspace["external_id"],
        "--config", workspace["config"],
        *extra,
    ]


def test_templates_command_lists_examples(example_templates_dir, capsys):
    assert cli.main(["templates", "--templates-dir", example_templates_dir]) == 0

    output = capsys.readouterr().out
    assert "=== 3 Templates ===" in output
    assert "payroll-calendar" in output
    assert "calendarMaster -> calendarPeriods" in output


def test_templates_command_with_empty_directory(tmp_path, capsys):
    assert cli.main(["templates", "--templates-dir", str(tmp_path)]) == 0

    assert "No templates found" in capsys.readouterr().out


def test_run_writes_result_and_rollback_log(workspace, orgs, capsys):
    pay_code = orgs.source.add("Pay_Code__c", Name="PC-1", Code__c="ORD", External_Id__c="EXT-PC-1")
    selection = _write_selection(workspace, {"Pay_Code__c": [pay_code["Id"]]})
    output_path = workspace["dir"] / "result.json"
    log_path = workspace["dir"] / "rollback.json"

    code = cli.main(_run_args(
        workspace, selection, "--output", str(output_path), "--rollback-log", str(log_path)
    ))

    assert code == 0
    assert "Status: success" in capsys.readouterr().out
    assert json.loads(output_path.read_text())["successful_records"] == 1
    written = orgs.target.all("Pay_Code__c")
    assert json.loads(log_path.read_text()) == [
        {"target_record_id": written[0]["Id"], "object_type": "Pay_Code__c", "step_name": "payCodes"}
    ]


def test_run_with_skip_validation(workspace, orgs):
    pay_code = orgs.source.add("Pay_Code__c", Name="PC-1", Code__c="ORD", External_Id__c="EXT-PC-1")
    selection = _write_selection(workspace, {"Pay_Code__c": [pay_code["Id"]]})

    assert cli.main(_run_args(workspace, selection, "--skip-validation")) == 0
    assert len(orgs.target.all("Pay_Code__c")) == 1


def test_failed_run_returns_non_zero(workspace, orgs, capsys):
    pay_code = orgs.source.add("Pay_Code__c", Name="PC-1", Code__c="ORD", External_Id__c="EXT-PC-1")
    selection = _write_selection(workspace, {"Pay_Code__c": [pay_code["Id"]]})
    orgs.target.fail_writes("Pay_Code__c", lambda r: True, "REQUIRED_FIELD_MISSING: Category__c")

    assert cli.main(_run_args(workspace, selection, "--skip-validation")) == 1
    assert "Status: failed" in capsys.readouterr().out


def test_validate_command(workspace, orgs, capsys):
    pay_code = orgs.source.add("Pay_Code__c", Name="PC-1", Code__c="ORD")
    selection = _write_selection(workspace, {"Pay_Code__c": [pay_code["Id"]]})

    code = cli.main([
        "validate",
        "--template", workspace["template"],
        "--selection", selection,
        "--source", workspace["source"],
        "--target", workspace["target"],
        "--external-id", workspace["external_id"],
    ])

    assert code == 0
    assert "Template is valid!" in capsys.readouterr().out


def test_rollback_command(workspace, orgs, capsys):
    record = orgs.target.add("Pay_Code__c", Name="PC-1")
    log_path = workspace["dir"] / "rollback.json"
    log_path.write_text(json.dumps([{"target_record_id": record["Id"], "object_type": "Pay_Code__c"}]))

    code = cli.main(["rollback", "--log", str(log_path), "--target", workspace["target"]])

    assert code == 0
    assert "Deleted: 1" in capsys.readouterr().out
    assert orgs.target.all("Pay_Code__c") == []


def test_detect_identity_suggests_cross_environment(workspace, orgs, capsys):
    orgs.source.schema["Pay_Code__c"] = {UNMANAGED_FIELD}
    orgs.target.schema["Pay_Code__c"] = {MANAGED_FIELD}

    code = cli.main([
        "detect-identity",
        "--objects", "Pay_Code__c",
        "--source", workspace["source"],
        "--target", workspace["target"],
    ])

    report = json.loads(capsys.readouterr().out)
    assert code == 0
    assert report["source"]["object_fields"] == {"Pay_Code__c": UNMANAGED_FIELD}
    assert report["target"]["package_type"] == "managed"
    assert report["suggested_config"]["strategy"] == "cross-environment"


def test_missing_command_prints_help(capsys):
    assert cli.main([]) == 1
    assert "usage" in capsys.readouterr().out
