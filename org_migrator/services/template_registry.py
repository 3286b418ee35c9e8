"""Registry of migration templates."""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from ..exceptions import TemplateError
from ..models.template import Complexity, LoadOperation, MigrationTemplate

logger = logging.getLogger(__name__)


class TemplateRegistry:
    """
    Registry for migration templates.

    Supports:
    - Loading templates from JSON files
    - Registering templates programmatically, with structural validation
    - Lookup by id, category and complexity, and free-text search
    """

    def __init__(self, templates_dir: Optional[str] = None):
        """
        Initialize the template registry.

        Args:
            templates_dir: Directory containing template JSON files
        """
        self.templates: Dict[str, MigrationTemplate] = {}

        if templates_dir:
            self.load_templates_from_directory(templates_dir)

    def load_templates_from_directory(self, directory: str) -> int:
        """
        Load all template files from a directory.

        Args:
            directory: Path to directory containing template JSON files

        Returns:
            Number of templates loaded
        """
        loaded = 0
        path = Path(directory)

        if not path.exists():
            logger.warning(f"Template directory does not exist: {directory}")
            return 0

        for file_path in sorted(path.glob("**/*.json")):
            try:
                template = MigrationTemplate.from_json_file(str(file_path))
                self.register_template(template)
                loaded += 1
                logger.info(f"Loaded template: {template.id} from {file_path}")
            except Exception as e:
                logger.error(f"Failed to load template from {file_path}: {e}")

        return loaded

    def register_template(self, template: MigrationTemplate, strict: bool = True) -> None:
        """
        Register a template.

        Raises:
            TemplateError: If strict and the template is structurally invalid
        """
        problems = self.validate_template(template)
        if problems:
            if strict:
                raise TemplateError(f"Template '{template.id}' is invalid: {'; '.join(problems)}")
            for problem in problems:
                logger.warning(f"Template '{template.id}': {problem}")
        self.templates[template.id] = template

    def remove_template(self, template_id: str) -> bool:
        return self.templates.pop(template_id, None) is not None

    def get_template(self, template_id: str) -> Optional[MigrationTemplate]:
        return self.templates.get(template_id)

    def list_templates(self) -> List[MigrationTemplate]:
        return sorted(self.templates.values(), key=lambda t: t.id)

    def get_templates_by_category(self, category: str) -> List[MigrationTemplate]:
        return [t for t in self.list_templates() if t.category.lower() == category.lower()]

    def get_templates_by_complexity(self, complexity: Complexity) -> List[MigrationTemplate]:
        return [t for t in self.list_templates() if t.metadata.complexity == complexity]

    def search_templates(self, text: str) -> List[MigrationTemplate]:
        """Case-insensitive match on name, description and category."""
        needle = text.lower()
        return [
            t for t in self.list_templates()
            if needle in t.name.lower()
            or needle in t.description.lower()
            or needle in t.category.lower()
        ]

    @staticmethod
    def validate_template(template: MigrationTemplate) -> List[str]:
        """
        Check a template's structure.

        Returns:
            List of problems; empty if the template is usable
        """
        problems = []

        if not template.id:
            problems.append("Template id is required")
        if not template.name:
            problems.append("Template name is required")
        if not template.etl_steps:
            problems.append("Template must have at least one ETL step")
            return problems

        names = template.step_names
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            problems.append(f"Duplicate step names: {', '.join(duplicates)}")

        order = template.execution_order
        missing = [n for n in names if n not in order]
        unknown = [n for n in order if n not in names]
        if missing:
            problems.append(f"Steps missing from execution order: {', '.join(missing)}")
        if unknown:
            problems.append(f"Execution order references unknown steps: {', '.join(unknown)}")
        if len(order) != len(set(order)):
            problems.append("Execution order lists a step more than once")

        for step in template.etl_steps:
            prefix = f"Step '{step.step_name}'"
            if not step.step_name:
                problems.append("Every step needs a step_name")
            if not step.extract_config.soql_query:
                problems.append(f"{prefix}: extract query is required")
            if not step.extract_config.object_api_name:
                problems.append(f"{prefix}: extract object is required")
            if not step.load_config.target_object:
                problems.append(f"{prefix}: load target object is required")
            if step.load_config.operation == LoadOperation.UPSERT and not step.load_config.external_id_field:
                problems.append(f"{prefix}: upsert requires an external_id_field")
            for lookup in step.transform_config.lookup_mappings:
                if not lookup.lookup_object or not lookup.lookup_key_field:
                    problems.append(f"{prefix}: lookup on {lookup.target_field} needs lookup_object and lookup_key_field")
            for dep in step.dependencies:
                if dep not in names:
                    problems.append(f"{prefix}: depends on unknown step '{dep}'")
                elif dep in order and step.step_name in order and order.index(dep) > order.index(step.step_name):
                    problems.append(f"{prefix}: execution order places it before its dependency '{dep}'")

        if not problems:
            try:
                template.execution_plan()
            except TemplateError as e:
                problems.append(str(e))

        return problems
