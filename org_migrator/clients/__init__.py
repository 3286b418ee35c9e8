"""Remote-store clients for source and target organizations."""

from .base import (
    OrgClient,
    ClientFactory,
    QueryResult,
    BulkResult,
    RecordResult,
    ObjectDescribe,
    PicklistValue,
)
from .salesforce import SalesforceClient, default_client_factory

__all__ = [
    "OrgClient",
    "ClientFactory",
    "QueryResult",
    "BulkResult",
    "RecordResult",
    "ObjectDescribe",
    "PicklistValue",
    "SalesforceClient",
    "default_client_factory",
]
