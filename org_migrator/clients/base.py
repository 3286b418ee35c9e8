"""Remote-store client interface consumed by the migration core."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..models.execution import OrgDescriptor


@dataclass
class QueryResult:
    """Result of a query. Failures are reported, not raised."""
    success: bool
    data: List[Dict[str, Any]] = field(default_factory=list)
    total_size: Optional[int] = None
    error: Optional[str] = None


@dataclass
class RecordResult:
    """Per-record outcome of a bulk write or delete."""
    id: Optional[str]
    success: bool
    errors: List[str] = field(default_factory=list)
    created: Optional[bool] = None

    @property
    def error_message(self) -> str:
        return "; ".join(self.errors) if self.errors else "Unknown error"


@dataclass
class BulkResult:
    """Result of a bulk call; data holds one RecordResult per input record, in order."""
    success: bool
    data: List[RecordResult] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class PicklistValue:
    value: str
    label: str = ""
    active: bool = True


@dataclass
class ObjectDescribe:
    """Subset of object metadata used by validation."""
    name: str
    fields: Dict[str, List[PicklistValue]] = field(default_factory=dict)
    success: bool = True
    error: Optional[str] = None

    def picklist_values(self, field_name: str, active_only: bool = True) -> List[str]:
        values = self.fields.get(field_name, [])
        return [v.value for v in values if v.active or not active_only]


class OrgClient(ABC):
    """
    Client for one organization.

    Implementations report remote failures through success=False results
    rather than exceptions.
    """

    def __init__(self, org: OrgDescriptor):
        self.org = org

    @abstractmethod
    async def query(self, soql: str) -> QueryResult:
        """Run a query and return every matching row."""
        pass

    @abstractmethod
    async def bulk_insert(self, object_type: str, records: List[Dict[str, Any]]) -> BulkResult:
        pass

    @abstractmethod
    async def bulk_update(self, object_type: str, records: List[Dict[str, Any]]) -> BulkResult:
        pass

    @abstractmethod
    async def bulk_upsert(
        self,
        object_type: str,
        records: List[Dict[str, Any]],
        external_id_field: str
    ) -> BulkResult:
        pass

    @abstractmethod
    async def bulk_delete(self, object_type: str, record_ids: List[str]) -> BulkResult:
        pass

    @abstractmethod
    async def describe(self, object_type: str) -> ObjectDescribe:
        pass


ClientFactory = Callable[[OrgDescriptor], OrgClient]
