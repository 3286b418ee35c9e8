"""Extraction of selected source records for a step."""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..clients.base import OrgClient, QueryResult
from ..exceptions import ExtractionError, QueryError
from ..models.execution import ResolvedExternalIdFields
from ..models.template import ETLStep
from .external_id import build_cross_environment_query, strip_external_id_references
from .soql import (
    add_where_clause,
    apply_extract_options,
    build_in_clause,
    chunk,
    ensure_no_placeholders,
    format_id_list,
)

logger = logging.getLogger(__name__)

SELECTED_IDS_PLACEHOLDER = "{selectedRecordIds}"

# Keeps generated IN clauses well under the SOQL statement length limit
ID_CHUNK_SIZE = 300


class RecordExtractor:
    """Builds and runs a step's extract query against the source org."""

    def __init__(self, source_client: OrgClient):
        self.source_client = source_client

    @staticmethod
    def selected_ids_for(step: ETLStep, selected_records: Dict[str, List[str]]) -> Tuple[List[str], str]:
        """
        Source IDs and the field they filter on for a step.

        Child objects declared with a parent_selection are addressed by the
        parent's selected IDs through the declared filter field.
        """
        extract = step.extract_config
        if extract.parent_selection:
            parent = extract.parent_selection
            return list(selected_records.get(parent.parent_object, [])), parent.filter_field
        return list(selected_records.get(extract.object_api_name, [])), extract.filter_field

    @staticmethod
    def chunk_size(step: ETLStep) -> int:
        """IDs per extract query: the step's batch_size when smaller than ID_CHUNK_SIZE."""
        batch_size = step.extract_config.batch_size
        if batch_size and batch_size > 0:
            return min(batch_size, ID_CHUNK_SIZE)
        return ID_CHUNK_SIZE

    @staticmethod
    def build_query(
        template: str,
        record_ids: List[str],
        filter_field: str,
        identity: ResolvedExternalIdFields,
        filter_criteria: Optional[str] = None,
        order_by: Optional[str] = None
    ) -> str:
        """Resolve identity tokens, apply the ID filter and extra options, and verify no token remains."""
        if identity.cross_environment:
            query = build_cross_environment_query(
                template,
                identity.source_field,
                identity.target_field or identity.source_field,
                identity.candidates,
            )
        else:
            query = identity.for_source(template)

        if SELECTED_IDS_PLACEHOLDER in query:
            query = query.replace(SELECTED_IDS_PLACEHOLDER, format_id_list(record_ids))
        else:
            query = add_where_clause(query, build_in_clause(filter_field, record_ids))

        query = apply_extract_options(query, filter_criteria, order_by)
        return ensure_no_placeholders(query)

    async def extract(
        self,
        step: ETLStep,
        selected_records: Dict[str, List[str]],
        identity: ResolvedExternalIdFields
    ) -> List[Dict[str, Any]]:
        """
        Extract the selected records for a step.

        Returns:
            Source rows; empty when nothing was selected

        Raises:
            QueryError: If the source query fails
            ExtractionError: If the step requires records and none came back
        """
        record_ids, filter_field = self.selected_ids_for(step, selected_records)
        if not record_ids:
            logger.info(f"{step.step_name}: no records selected, skipping extract")
            return []

        records: List[Dict[str, Any]] = []
        for id_chunk in chunk(record_ids, self.chunk_size(step)):
            records.extend(await self._extract_chunk(step, id_chunk, filter_field, identity))

        if not records and step.extract_config.require_records:
            raise ExtractionError(
                f"{step.step_name}: expected {step.extract_config.object_api_name} records for "
                f"{len(record_ids)} selected ID(s) but the source returned none"
            )

        logger.info(f"{step.step_name}: extracted {len(records)} {step.extract_config.object_api_name} records")
        return records

    async def _extract_chunk(
        self,
        step: ETLStep,
        record_ids: List[str],
        filter_field: str,
        identity: ResolvedExternalIdFields
    ) -> List[Dict[str, Any]]:
        extract = step.extract_config
        template = extract.soql_query
        query = self.build_query(
            template, record_ids, filter_field, identity, extract.filter_criteria, extract.order_by
        )
        result = await self.source_client.query(query)

        if not result.success and self._missing_identity_column(result, identity):
            logger.warning(
                f"{step.step_name}: external ID field missing on source {extract.object_api_name}, "
                f"retrying without it"
            )
            stripped = strip_external_id_references(template, identity.source_candidates())
            query = self.build_query(
                stripped, record_ids, filter_field, identity, extract.filter_criteria, extract.order_by
            )
            result = await self.source_client.query(query)

        if not result.success:
            raise QueryError(f"Extract query for {step.step_name} failed: {result.error}")

        return result.data

    @staticmethod
    def _missing_identity_column(result: QueryResult, identity: ResolvedExternalIdFields) -> bool:
        error = result.error or ""
        return "No such column" in error and any(f in error for f in identity.source_candidates())
