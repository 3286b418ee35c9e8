"""Shared FastAPI dependencies."""

import logging
import os
from typing import Optional

from ..clients.base import ClientFactory
from ..clients.salesforce import default_client_factory
from ..services.template_registry import TemplateRegistry

logger = logging.getLogger(__name__)

TEMPLATES_DIR_ENV = "ORG_MIGRATOR_TEMPLATES_DIR"

_registry: Optional[TemplateRegistry] = None


def get_registry() -> TemplateRegistry:
    """Process-wide registry loaded from ORG_MIGRATOR_TEMPLATES_DIR on first use."""
    global _registry
    if _registry is None:
        templates_dir = os.environ.get(TEMPLATES_DIR_ENV)
        if not templates_dir:
            logger.warning(f"{TEMPLATES_DIR_ENV} is not set; no templates loaded")
        _registry = TemplateRegistry(templates_dir=templates_dir)
    return _registry


def get_client_factory() -> ClientFactory:
    """Client factory used by every route; override in tests."""
    return default_client_factory
