"""Command-line interface for the org migrator."""

import argparse
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from .clients.salesforce import default_client_factory
from .engine import ExecutionEngine
from .models.execution import (
    ExecutionConfig,
    ExecutionContext,
    ExecutionProgress,
    ExecutionStatus,
    ExternalIdConfig,
    OrgDescriptor,
    RollbackRecord,
)
from .models.template import MigrationTemplate
from .services.external_id import (
    detect_cross_environment_mapping,
    detect_environment_info,
    validate_cross_environment_compatibility,
)
from .services.rollback import RollbackService
from .services.template_registry import TemplateRegistry
from .services.validation import ValidationEngine

logger = logging.getLogger(__name__)

SOURCE_ENV_PREFIX = "ORG_MIGRATOR_SOURCE"
TARGET_ENV_PREFIX = "ORG_MIGRATOR_TARGET"


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Org Migrator - Move configuration records between orgs using templates"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # List templates
    templates_parser = subparsers.add_parser("templates", help="List available templates")
    templates_parser.add_argument("--templates-dir", required=True, help="Directory containing template files")
    templates_parser.add_argument("--category", help="Only list templates in this category")

    # Pre-flight validation
    validate_parser = subparsers.add_parser("validate", help="Validate a template against two orgs")
    _add_run_arguments(validate_parser)

    # Execute
    run_parser = subparsers.add_parser("run", help="Execute a template")
    _add_run_arguments(run_parser)
    run_parser.add_argument("--config", help="Path to execution config JSON")
    run_parser.add_argument("--output", help="Write the execution result JSON here")
    run_parser.add_argument("--rollback-log", help="Write tracked writes here for manual recovery")
    run_parser.add_argument("--skip-validation", action="store_true", help="Run without the pre-flight check")

    # Manual rollback
    rollback_parser = subparsers.add_parser("rollback", help="Delete records listed in a rollback log")
    rollback_parser.add_argument("--log", required=True, help="Path to rollback log JSON")
    rollback_parser.add_argument("--target", help="Path to target org JSON (default: environment)")

    # Identity detection
    detect_parser = subparsers.add_parser("detect-identity", help="Detect external ID fields in both orgs")
    detect_parser.add_argument("--objects", required=True, nargs="+", help="Object API names to probe")
    detect_parser.add_argument("--source", help="Path to source org JSON (default: environment)")
    detect_parser.add_argument("--target", help="Path to target org JSON (default: environment)")
    detect_parser.add_argument("--external-id", help="Path to external ID config JSON")

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.command == "templates":
        return list_templates(args)
    elif args.command == "validate":
        return run_validation(args)
    elif args.command == "run":
        return run_execution(args)
    elif args.command == "rollback":
        return run_rollback(args)
    elif args.command == "detect-identity":
        return run_detect_identity(args)

    parser.print_help()
    return 1


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--template", required=True, help="Template id or path to a template JSON file")
    parser.add_argument("--templates-dir", help="Directory containing template files")
    parser.add_argument("--selection", required=True, help="Path to JSON mapping object type -> record IDs")
    parser.add_argument("--source", help="Path to source org JSON (default: environment)")
    parser.add_argument("--target", help="Path to target org JSON (default: environment)")
    parser.add_argument("--external-id", help="Path to external ID config JSON")


def _load_json(path: str) -> Any:
    with open(path) as f:
        return json.load(f)


def _load_org(path: Optional[str], env_prefix: str) -> OrgDescriptor:
    if path:
        return OrgDescriptor.from_dict(_load_json(path))
    return OrgDescriptor.from_env(env_prefix)


def _load_template(args) -> MigrationTemplate:
    if args.template.endswith(".json"):
        return MigrationTemplate.from_json_file(args.template)

    registry = TemplateRegistry(templates_dir=args.templates_dir)
    template = registry.get_template(args.template)
    if not template:
        raise SystemExit(f"Template not found: {args.template}")
    return template


def _load_external_id_config(path: Optional[str]) -> ExternalIdConfig:
    return ExternalIdConfig.from_dict(_load_json(path)) if path else ExternalIdConfig()


def list_templates(args) -> int:
    """List templates in a directory."""
    registry = TemplateRegistry(templates_dir=args.templates_dir)
    templates = (
        registry.get_templates_by_category(args.category) if args.category
        else registry.list_templates()
    )

    if not templates:
        print("No templates found")
        return 0

    print(f"\n=== {len(templates)} Templates ===")
    for template in templates:
        print(f"\n{template.id} (v{template.version})")
        print(f"   {template.name} [{template.category or 'uncategorized'}]")
        print(f"   Steps: {' -> '.join(s.step_name for s in template.execution_plan())}")
    return 0


def _print_validation(result) -> None:
    summary = result.summary
    print("\n=== Validation ===")
    print(
        f"Checks: {summary.total_checks} (passed {summary.passed_checks}, "
        f"failed {summary.failed_checks}, warnings {summary.warning_checks})"
    )
    for label, issues in (("ERROR", result.errors), ("WARNING", result.warnings), ("INFO", result.info)):
        for issue in issues:
            where = f" [{issue.record_name or issue.record_id}]" if (issue.record_name or issue.record_id) else ""
            print(f"  {label} {issue.check_name}{where}: {issue.message}")
    print("\nTemplate is valid!" if result.is_valid else f"\nFound {len(result.errors)} errors")


def run_validation(args) -> int:
    """Run pre-flight validation."""
    template = _load_template(args)
    result = asyncio.run(ValidationEngine(default_client_factory).validate_template(
        template,
        _load_org(args.source, SOURCE_ENV_PREFIX),
        _load_org(args.target, TARGET_ENV_PREFIX),
        _load_json(args.selection),
        _load_external_id_config(args.external_id),
    ))
    _print_validation(result)
    return 0 if result.is_valid else 1


def _print_progress(progress: ExecutionProgress) -> None:
    print(
        f"[{progress.current_step}/{progress.total_steps}] {progress.step_name}: "
        f"{progress.status.value} ({progress.records_processed} records)"
    )


def run_execution(args) -> int:
    """Execute a template."""
    template = _load_template(args)
    source_org = _load_org(args.source, SOURCE_ENV_PREFIX)
    target_org = _load_org(args.target, TARGET_ENV_PREFIX)
    selection: Dict[str, List[str]] = _load_json(args.selection)
    external_id_config = _load_external_id_config(args.external_id)

    if not args.skip_validation:
        validation = asyncio.run(ValidationEngine(default_client_factory).validate_template(
            template, source_org, target_org, selection, external_id_config
        ))
        if not validation.is_valid:
            _print_validation(validation)
            return 1

    context = ExecutionContext(
        source_org=source_org,
        target_org=target_org,
        selected_records=selection,
        external_id_config=external_id_config,
        config=ExecutionConfig.from_dict(_load_json(args.config)) if args.config else ExecutionConfig(),
        template_id=template.id,
    )

    engine = ExecutionEngine(default_client_factory)
    engine.on_progress(_print_progress)
    result = asyncio.run(engine.execute_template(template, context))

    if args.output:
        with open(args.output, "w") as f:
            json.dump(result.to_dict(), f, indent=2, default=str)
        print(f"Result saved to {args.output}")

    if args.rollback_log:
        with open(args.rollback_log, "w") as f:
            json.dump([r.to_dict() for r in result.rollback_records], f, indent=2)
        print(f"Rollback log saved to {args.rollback_log}")

    print("\n" + "=" * 60)
    print("EXECUTION COMPLETE")
    print("=" * 60)
    print(f"Status: {result.status.value}")
    print(f"Records Processed: {result.total_records}")
    print(f"Succeeded: {result.successful_records}")
    print(f"Failed: {result.failed_records}")
    print(f"Duration: {result.execution_time_ms / 1000:.2f} seconds")
    if result.error:
        print(f"Error: {result.error}")
    if result.rollback:
        print(
            f"Rolled back: {result.rollback.deleted_records} deleted, "
            f"{result.rollback.failed_deletions} failed"
        )

    return 0 if result.status == ExecutionStatus.SUCCESS else 1


def run_rollback(args) -> int:
    """Replay a rollback log against the target org."""
    records = [RollbackRecord.from_dict(r) for r in _load_json(args.log)]
    client = default_client_factory(_load_org(args.target, TARGET_ENV_PREFIX))
    result = asyncio.run(RollbackService(client).rollback_records(records))

    print(f"Deleted: {result.deleted_records}")
    print(f"Failed: {result.failed_deletions}")
    for error in result.errors:
        print(f"  - {error['object_type']} {error['record_id']}: {error['error']}")
    return 0 if result.success else 1


def run_detect_identity(args) -> int:
    """Detect identity fields in both orgs and report compatibility."""
    base = _load_external_id_config(args.external_id)
    source_org = _load_org(args.source, SOURCE_ENV_PREFIX)
    target_org = _load_org(args.target, TARGET_ENV_PREFIX)

    async def detect():
        source_info = await detect_environment_info(
            default_client_factory(source_org), source_org.org_id, args.objects, base
        )
        target_info = await detect_environment_info(
            default_client_factory(target_org), target_org.org_id, args.objects, base
        )
        return source_info, target_info

    source_info, target_info = asyncio.run(detect())
    compatibility = validate_cross_environment_compatibility(source_info, target_info)
    output = {
        "source": source_info.to_dict(),
        "target": target_info.to_dict(),
        "compatibility": compatibility.to_dict(),
        "suggested_config": detect_cross_environment_mapping(source_info, target_info, base).to_dict(),
    }
    print(json.dumps(output, indent=2))
    return 0 if compatibility.is_valid else 1


if __name__ == "__main__":
    raise SystemExit(main())
