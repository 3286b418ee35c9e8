"""Salesforce REST client built on requests."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import BulkResult, ObjectDescribe, OrgClient, PicklistValue, QueryResult, RecordResult
from ..models.execution import OrgDescriptor

logger = logging.getLogger(__name__)

# Composite sObject collections accept at most 200 records per call
COLLECTION_LIMIT = 200

# Writes are never resent by the transport; the engine owns write retries
TRANSPORT_RETRY_METHODS = frozenset({"GET", "DELETE"})


def _strip_attributes(value: Any) -> Any:
    """Remove the 'attributes' envelope Salesforce adds to every record and subrecord."""
    if isinstance(value, dict):
        return {k: _strip_attributes(v) for k, v in value.items() if k != "attributes"}
    if isinstance(value, list):
        return [_strip_attributes(v) for v in value]
    return value


def _error_text(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:500]}"
    if isinstance(body, list) and body and isinstance(body[0], dict):
        return "; ".join(
            f"{item.get('errorCode', 'ERROR')}: {item.get('message', '')}" for item in body
        )
    return f"HTTP {response.status_code}: {body}"


def _record_result(item: Dict[str, Any]) -> RecordResult:
    errors = [
        f"{err.get('statusCode', 'ERROR')}: {err.get('message', '')}"
        for err in item.get("errors", [])
    ]
    return RecordResult(
        id=item.get("id"),
        success=bool(item.get("success")),
        errors=errors,
        created=item.get("created"),
    )


class SalesforceClient(OrgClient):
    """
    Salesforce REST API client.

    Supports:
    - SOQL queries with nextRecordsUrl pagination
    - Composite sObject collection insert, update, upsert and delete
    - Object describe for picklist metadata
    - Retry with backoff on 429 and 5xx responses for reads and deletes
    """

    def __init__(
        self,
        org: OrgDescriptor,
        session: Optional[requests.Session] = None,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        timeout: float = 120.0
    ):
        """
        Initialize the client.

        Args:
            org: Org descriptor with instance URL and access token
            session: Custom requests session
            max_retries: Transport-level retries for 429/5xx
            backoff_factor: Backoff factor between transport retries
            timeout: Per-request timeout in seconds
        """
        super().__init__(org)
        self.timeout = timeout
        self._session = session or self._create_session(max_retries, backoff_factor)

    def _create_session(self, max_retries: int, backoff_factor: float) -> requests.Session:
        """Create a requests session with authentication and retry logic."""
        session = requests.Session()

        retries = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=TRANSPORT_RETRY_METHODS,
        )
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        if self.org.access_token:
            session.headers["Authorization"] = f"Bearer {self.org.access_token}"
        session.headers["Content-Type"] = "application/json"

        return session

    @property
    def base_url(self) -> str:
        return f"{self.org.instance_url.rstrip('/')}/services/data/v{self.org.api_version}"

    # Synchronous transport

    def _query_sync(self, soql: str) -> QueryResult:
        records: List[Dict[str, Any]] = []
        total_size = None
        url = f"{self.base_url}/query"
        params: Optional[Dict[str, str]] = {"q": soql}

        try:
            while url:
                response = self._session.get(url, params=params, timeout=self.timeout)
                if not response.ok:
                    return QueryResult(success=False, error=_error_text(response))

                body = response.json()
                total_size = body.get("totalSize", total_size)
                records.extend(_strip_attributes(body.get("records", [])))

                next_url = body.get("nextRecordsUrl")
                url = f"{self.org.instance_url.rstrip('/')}{next_url}" if next_url else None
                params = None
        except requests.RequestException as e:
            logger.error(f"Query failed on org {self.org.org_id}: {e}")
            return QueryResult(success=False, error=str(e))

        return QueryResult(success=True, data=records, total_size=total_size)

    def _collection_sync(
        self,
        method: str,
        path: str,
        object_type: str,
        records: List[Dict[str, Any]]
    ) -> BulkResult:
        results: List[RecordResult] = []

        for i in range(0, len(records), COLLECTION_LIMIT):
            chunk = records[i:i + COLLECTION_LIMIT]
            payload = {
                "allOrNone": False,
                "records": [{"attributes": {"type": object_type}, **r} for r in chunk],
            }
            try:
                response = self._session.request(
                    method, f"{self.base_url}{path}", json=payload, timeout=self.timeout
                )
            except requests.RequestException as e:
                logger.error(f"{method} {object_type} failed on org {self.org.org_id}: {e}")
                return BulkResult(success=False, data=results, error=str(e))

            if not response.ok:
                return BulkResult(success=False, data=results, error=_error_text(response))

            results.extend(_record_result(item) for item in response.json())

        return BulkResult(success=True, data=results)

    def _delete_sync(self, record_ids: List[str]) -> BulkResult:
        results: List[RecordResult] = []

        for i in range(0, len(record_ids), COLLECTION_LIMIT):
            chunk = record_ids[i:i + COLLECTION_LIMIT]
            try:
                response = self._session.delete(
                    f"{self.base_url}/composite/sobjects",
                    params={"ids": ",".join(chunk), "allOrNone": "false"},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                logger.error(f"Delete failed on org {self.org.org_id}: {e}")
                return BulkResult(success=False, data=results, error=str(e))

            if not response.ok:
                return BulkResult(success=False, data=results, error=_error_text(response))

            results.extend(_record_result(item) for item in response.json())

        return BulkResult(success=True, data=results)

    def _describe_sync(self, object_type: str) -> ObjectDescribe:
        try:
            response = self._session.get(
                f"{self.base_url}/sobjects/{object_type}/describe", timeout=self.timeout
            )
        except requests.RequestException as e:
            return ObjectDescribe(name=object_type, success=False, error=str(e))

        if not response.ok:
            return ObjectDescribe(name=object_type, success=False, error=_error_text(response))

        fields = {}
        for field_data in response.json().get("fields", []):
            fields[field_data["name"]] = [
                PicklistValue(
                    value=v.get("value", ""),
                    label=v.get("label", ""),
                    active=v.get("active", True),
                )
                for v in field_data.get("picklistValues", []) or []
            ]
        return ObjectDescribe(name=object_type, fields=fields)

    # OrgClient interface

    async def query(self, soql: str) -> QueryResult:
        logger.debug(f"[{self.org.org_id}] {soql}")
        return await asyncio.to_thread(self._query_sync, soql)

    async def bulk_insert(self, object_type: str, records: List[Dict[str, Any]]) -> BulkResult:
        return await asyncio.to_thread(
            self._collection_sync, "POST", "/composite/sobjects", object_type, records
        )

    async def bulk_update(self, object_type: str, records: List[Dict[str, Any]]) -> BulkResult:
        return await asyncio.to_thread(
            self._collection_sync, "PATCH", "/composite/sobjects", object_type, records
        )

    async def bulk_upsert(
        self,
        object_type: str,
        records: List[Dict[str, Any]],
        external_id_field: str
    ) -> BulkResult:
        path = f"/composite/sobjects/{object_type}/{external_id_field}"
        return await asyncio.to_thread(self._collection_sync, "PATCH", path, object_type, records)

    async def bulk_delete(self, object_type: str, record_ids: List[str]) -> BulkResult:
        return await asyncio.to_thread(self._delete_sync, record_ids)

    async def describe(self, object_type: str) -> ObjectDescribe:
        return await asyncio.to_thread(self._describe_sync, object_type)


def default_client_factory(org: OrgDescriptor) -> OrgClient:
    """Build a SalesforceClient for an org descriptor."""
    return SalesforceClient(org)
