"""Template execution and rollback endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ...clients.base import ClientFactory
from ...engine import ExecutionEngine
from ...exceptions import TemplateError
from ...models.execution import ExecutionContext
from ...services.rollback import RollbackService
from ...services.template_registry import TemplateRegistry
from ...services.validation import ValidationEngine
from ..dependencies import get_client_factory, get_registry
from ..models import ExecuteRequest, RollbackRequest
from .templates import find_template

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/templates/{template_id}/execute")
async def execute_template(
    template_id: str,
    request: ExecuteRequest,
    registry: TemplateRegistry = Depends(get_registry),
    client_factory: ClientFactory = Depends(get_client_factory)
):
    """
    Execute a template.

    Runs pre-flight validation first unless validate_first is false; a
    template with validation errors is rejected with 400 and the report.
    """
    template = find_template(template_id, registry)
    try:
        template.execution_plan()
    except TemplateError as e:
        raise HTTPException(status_code=400, detail=str(e))

    source_org = request.source_org.to_descriptor()
    target_org = request.target_org.to_descriptor()
    external_id_config = request.external_id()

    if request.validate_first:
        validation = await ValidationEngine(client_factory).validate_template(
            template, source_org, target_org, request.selected_records, external_id_config
        )
        if not validation.is_valid:
            raise HTTPException(status_code=400, detail=validation.to_dict())

    context = ExecutionContext(
        source_org=source_org,
        target_org=target_org,
        selected_records=request.selected_records,
        external_id_config=external_id_config,
        config=request.execution_config(),
        template_id=template.id,
    )

    result = await ExecutionEngine(client_factory).execute_template(template, context)

    logger.info(f"Execution {result.execution_id} of {template.id} finished: {result.status.value}")
    return result.to_dict()


@router.post("/rollback")
async def rollback_records(
    request: RollbackRequest,
    client_factory: ClientFactory = Depends(get_client_factory)
):
    """Delete tracked records from the target org for manual recovery."""
    client = client_factory(request.target_org.to_descriptor())
    result = await RollbackService(client).rollback_records([r.to_record() for r in request.records])
    return result.to_dict()
