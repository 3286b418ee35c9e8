"""Template listing and validation endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ...clients.base import ClientFactory
from ...models.template import MigrationTemplate
from ...services.template_registry import TemplateRegistry
from ...services.validation import ValidationEngine
from ..dependencies import get_client_factory, get_registry
from ..models import TemplateListResponse, TemplateSummary, ValidateRequest

router = APIRouter()


def find_template(template_id: str, registry: TemplateRegistry) -> MigrationTemplate:
    template = registry.get_template(template_id)
    if not template:
        raise HTTPException(status_code=404, detail=f"Template not found: {template_id}")
    return template


@router.get("", response_model=TemplateListResponse)
async def list_templates(
    category: Optional[str] = None,
    search: Optional[str] = None,
    registry: TemplateRegistry = Depends(get_registry)
):
    """List templates, optionally filtered by category or free text."""
    if category:
        templates = registry.get_templates_by_category(category)
    elif search:
        templates = registry.search_templates(search)
    else:
        templates = registry.list_templates()
    summaries = [TemplateSummary.from_template(t) for t in templates]
    return TemplateListResponse(templates=summaries, total=len(summaries))


@router.get("/{template_id}")
async def get_template(template_id: str, registry: TemplateRegistry = Depends(get_registry)):
    """Get a template's full definition."""
    return find_template(template_id, registry).to_dict()


@router.post("/{template_id}/validate")
async def validate_template(
    template_id: str,
    request: ValidateRequest,
    registry: TemplateRegistry = Depends(get_registry),
    client_factory: ClientFactory = Depends(get_client_factory)
):
    """Run pre-flight validation of a template against two orgs."""
    template = find_template(template_id, registry)
    result = await ValidationEngine(client_factory).validate_template(
        template,
        request.source_org.to_descriptor(),
        request.target_org.to_descriptor(),
        request.selected_records,
        request.external_id(),
    )
    return result.to_dict()
