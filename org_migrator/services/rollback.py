"""Rollback of writes performed during a migration run."""

import logging
from itertools import groupby
from typing import List

from ..clients.base import OrgClient
from ..models.execution import RollbackRecord, RollbackResult
from .soql import chunk

logger = logging.getLogger(__name__)

DELETE_CHUNK_SIZE = 200


class RollbackService:
    """
    Deletes tracked writes from the target org.

    Records are deleted in reverse insertion order so children written by
    later steps go before the parents they reference. Every deletion is
    attempted; failures are reported per record.
    """

    def __init__(self, target_client: OrgClient):
        self.target_client = target_client

    async def rollback_records(self, records: List[RollbackRecord]) -> RollbackResult:
        """
        Delete every tracked record from the target org.

        Args:
            records: The run's rollback log, in insertion order

        Returns:
            RollbackResult; success only if every record was deleted
        """
        result = RollbackResult()
        if not records:
            return result

        logger.info(f"Rolling back {len(records)} records on org {self.target_client.org.org_id}")

        ordered = list(reversed(records))
        for object_type, group in groupby(ordered, key=lambda r: r.object_type):
            for batch in chunk(list(group), DELETE_CHUNK_SIZE):
                await self._delete_batch(object_type, batch, result)

        result.success = result.failed_deletions == 0
        logger.info(
            f"Rollback finished: {result.deleted_records} deleted, {result.failed_deletions} failed"
        )
        return result

    async def _delete_batch(
        self,
        object_type: str,
        batch: List[RollbackRecord],
        result: RollbackResult
    ) -> None:
        try:
            response = await self.target_client.bulk_delete(
                object_type, [r.target_record_id for r in batch]
            )
        except Exception as e:
            logger.error(f"Failed to delete {object_type} batch: {e}")
            self._fail_all(batch, str(e), result)
            return

        if not response.success and not response.data:
            logger.error(f"Failed to delete {object_type} batch: {response.error}")
            self._fail_all(batch, response.error or "Bulk delete failed", result)
            return

        for i, record in enumerate(batch):
            outcome = response.data[i] if i < len(response.data) else None
            if outcome is not None and outcome.success:
                result.deleted_records += 1
            else:
                error = outcome.error_message if outcome else (response.error or "No result returned")
                self._fail(record, error, result)

    def _fail_all(self, batch: List[RollbackRecord], error: str, result: RollbackResult) -> None:
        for record in batch:
            self._fail(record, error, result)

    def _fail(self, record: RollbackRecord, error: str, result: RollbackResult) -> None:
        result.failed_deletions += 1
        result.errors.append({
            "record_id": record.target_record_id,
            "object_type": record.object_type,
            "step_name": record.step_name,
            "error": error,
        })
        logger.warning(f"Could not delete {record.object_type} {record.target_record_id}: {error}")
