"""Service layer for the migration engine."""

from .extractor import RecordExtractor
from .lookup import LookupResolver, LookupResolution, LookupStatus
from .rollback import RollbackService
from .template_registry import TemplateRegistry
from .transformer import TransformEngine, TransformedRecord
from .validation import ValidationEngine

__all__ = [
    "RecordExtractor",
    "LookupResolver",
    "LookupResolution",
    "LookupStatus",
    "RollbackService",
    "TemplateRegistry",
    "TransformEngine",
    "TransformedRecord",
    "ValidationEngine",
]
