"""Execution engine - runs a migration template step by step."""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .clients.base import BulkResult, ClientFactory, OrgClient, RecordResult
from .clients.salesforce import default_client_factory
from .exceptions import EngineBusyError
from .models.execution import (
    ExecutionConfig,
    ExecutionContext,
    ExecutionProgress,
    ExecutionResult,
    ExecutionStatus,
    ProgressStatus,
    RecordError,
    ResolvedExternalIdFields,
    RunState,
    StepExecutionResult,
)
from .models.template import ETLStep, LoadOperation, MigrationTemplate
from .services.external_id import resolve_object_fields
from .services.extractor import RecordExtractor
from .services.lookup import LookupResolver
from .services.rollback import RollbackService
from .services.soql import create_batches
from .services.transformer import RECORD_TYPE_PREFIX, TransformEngine

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ExecutionProgress], None]


class _RunContext:
    """Clients and services bound to one run."""

    def __init__(
        self,
        context: ExecutionContext,
        source: OrgClient,
        target: OrgClient,
        state: RunState
    ):
        self.context = context
        self.source = source
        self.target = target
        self.state = state
        self.lookups = LookupResolver(
            source,
            target,
            self.identity_for,
            use_cache=context.config.enable_lookup_caching,
        )
        self.transformer = TransformEngine(self.lookups)
        self.extractor = RecordExtractor(source)

    async def identity_for(self, object_type: str) -> ResolvedExternalIdFields:
        return await resolve_object_fields(
            self.context.external_id_config,
            self.source,
            self.target,
            object_type,
            self.state.identity_fields,
        )


class ExecutionEngine:
    """
    Runs migration templates against a source and target org.

    Handles:
    - Dependency-ordered step sequencing
    - Extraction of the caller's selected records
    - Transformation, including cross-org lookups and record types
    - Batched loading with bounded retry of transient errors
    - Rollback of every tracked write when a run fails
    - Progress reporting

    One engine runs one template at a time. All mutable run state lives in
    a RunState built fresh for each call.
    """

    def __init__(self, client_factory: Optional[ClientFactory] = None):
        """
        Initialize the engine.

        Args:
            client_factory: Builds an OrgClient for an OrgDescriptor
        """
        self.client_factory = client_factory or default_client_factory
        self._progress_callbacks: List[ProgressCallback] = []
        self._running = False

    def on_progress(self, callback: ProgressCallback) -> None:
        self._progress_callbacks.append(callback)

    def remove_progress_callback(self, callback: ProgressCallback) -> None:
        if callback in self._progress_callbacks:
            self._progress_callbacks.remove(callback)

    @property
    def is_running(self) -> bool:
        return self._running

    async def execute_template(
        self,
        template: MigrationTemplate,
        context: ExecutionContext
    ) -> ExecutionResult:
        """
        Run every step of a template.

        Args:
            template: Template to execute
            context: Orgs, selected records and run configuration

        Returns:
            ExecutionResult; failures are reported here rather than raised

        Raises:
            EngineBusyError: If this engine is already running a template
        """
        if self._running:
            raise EngineBusyError("Engine is already executing a template; use one engine per run")

        self._running = True
        try:
            return await self._execute(template, context)
        finally:
            self._running = False

    async def _execute(self, template: MigrationTemplate, context: ExecutionContext) -> ExecutionResult:
        started = time.monotonic()
        start_time = datetime.utcnow()
        state = RunState()
        result = ExecutionResult(execution_id=context.execution_id)
        run: Optional[_RunContext] = None
        step_failed = False

        logger.info(f"Starting execution {context.execution_id} of template {template.id}")

        try:
            run = _RunContext(
                context,
                self.client_factory(context.source_org),
                self.client_factory(context.target_org),
                state,
            )

            plan = template.execution_plan()
            await run.lookups.preload_record_types(self._record_type_objects(plan), state)

            step_durations: List[float] = []
            for index, step in enumerate(plan, start=1):
                self._emit_progress(context, ExecutionProgress(
                    execution_id=context.execution_id,
                    current_step=index,
                    total_steps=len(plan),
                    step_name=step.step_name,
                    status=ProgressStatus.RUNNING,
                    records_processed=result.successful_records + result.failed_records,
                    total_records=result.total_records,
                    start_time=start_time,
                    estimated_completion=self._estimate_completion(step_durations, len(plan) - index + 1),
                ))

                step_started = time.monotonic()
                step_result = await self._execute_step(step, run)
                step_durations.append(time.monotonic() - step_started)

                result.step_results.append(step_result)
                result.total_records += step_result.records_processed
                result.successful_records += step_result.success_count
                result.failed_records += step_result.failure_count
                state.record_step_mappings(step.step_name, step.load_config.target_object, step_result.lookup_mappings)

                if step_result.status == ExecutionStatus.FAILED:
                    logger.error(f"Step {step.step_name} failed; rolling back execution {context.execution_id}")
                    step_failed = True
                    result.rollback = await self._rollback(run, state)
                    break

            if step_failed or result.failed_records:
                result.status = ExecutionStatus.FAILED
            else:
                result.status = ExecutionStatus.SUCCESS

        except Exception as e:
            logger.error(f"Execution {context.execution_id} failed: {e}")
            result.status = ExecutionStatus.FAILED
            result.error = str(e)
            if run is not None and result.rollback is None:
                result.rollback = await self._rollback(run, state)

        result.lookup_mappings = state.all_lookup_mappings()
        result.rollback_records = list(state.rollback_log)
        result.execution_time_ms = int((time.monotonic() - started) * 1000)

        self._emit_progress(context, ExecutionProgress(
            execution_id=context.execution_id,
            current_step=len(result.step_results),
            total_steps=len(template.etl_steps),
            step_name=result.step_results[-1].step_name if result.step_results else "",
            status=ProgressStatus.COMPLETED if result.status == ExecutionStatus.SUCCESS else ProgressStatus.FAILED,
            records_processed=result.successful_records + result.failed_records,
            total_records=result.total_records,
            start_time=start_time,
            estimated_completion=datetime.utcnow(),
        ))

        logger.info(
            f"Execution {context.execution_id} {result.status.value}: "
            f"{result.successful_records}/{result.total_records} records succeeded"
        )
        return result

    async def _execute_step(self, step: ETLStep, run: _RunContext) -> StepExecutionResult:
        """Extract, transform and load one step. Exceptions fail the step instead of escaping."""
        started = time.monotonic()
        step_result = StepExecutionResult(step_name=step.step_name)
        if step.load_config.allow_partial_success:
            logger.warning(
                f"{step.step_name}: allow_partial_success is ignored; any failed record fails the run"
            )

        try:
            identity = await run.identity_for(step.extract_config.object_api_name)
            records = await run.extractor.extract(step, run.context.selected_records, identity)

            if not records:
                logger.info(f"{step.step_name}: nothing to migrate")
                return step_result

            payloads: List[Tuple[Optional[str], Dict[str, Any]]] = []
            for record in records:
                step_result.records_processed += 1
                transformed = await run.transformer.transform_record(record, step, identity, run.state)
                if transformed.is_valid:
                    payloads.append((transformed.source_id, transformed.data))
                else:
                    step_result.failure_count += 1
                    step_result.errors.append(RecordError(
                        record_id=transformed.source_id or "N/A",
                        error="; ".join(transformed.errors),
                    ))

            target_identity = await run.identity_for(step.load_config.target_object)
            batch_size = self._effective_batch_size(step, run.context.config)
            for batch_number, batch in enumerate(create_batches(payloads, batch_size), start=1):
                await self._load_batch(step, batch, batch_number, target_identity, run, step_result)

        except Exception as e:
            logger.error(f"Step {step.step_name} failed: {e}")
            step_result.failure_count += 1
            step_result.errors.append(RecordError(record_id="N/A", error=str(e)))

        step_result.status = ExecutionStatus.SUCCESS if step_result.failure_count == 0 else ExecutionStatus.FAILED
        step_result.execution_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"{step.step_name}: {step_result.success_count} succeeded, "
            f"{step_result.failure_count} failed"
        )
        return step_result

    async def _load_batch(
        self,
        step: ETLStep,
        batch: List[Tuple[Optional[str], Dict[str, Any]]],
        batch_number: int,
        identity: ResolvedExternalIdFields,
        run: _RunContext,
        step_result: StepExecutionResult
    ) -> None:
        """Write one batch, retrying records that fail with a declared transient error."""
        load = step.load_config
        retry = load.retry_config
        max_retries = min(retry.max_retries, run.context.config.max_retries)
        if retry.retry_wait_seconds is not None:
            base_wait = retry.retry_wait_seconds
        else:
            base_wait = run.context.config.retry_delay_ms / 1000

        pending = [(i, source_id, data) for i, (source_id, data) in enumerate(batch)]
        attempt = 0
        while pending:
            response = await self._write(load.target_object, load.operation, load.external_id_field,
                                         [data for _, _, data in pending], identity, run.target)

            retry_next = []
            for position, (i, source_id, data) in enumerate(pending):
                record_id = source_id or f"batch-{batch_number}-{i}"
                outcome = self._outcome_at(response, position)

                if outcome.success:
                    step_result.success_count += 1
                    if outcome.id:
                        data["Id"] = outcome.id
                        if outcome.created is not False:
                            run.state.track_write(outcome.id, load.target_object, step.step_name)
                        if source_id:
                            step_result.lookup_mappings[source_id] = outcome.id
                    continue

                error = outcome.error_message
                if retry.is_retryable(error):
                    if attempt < max_retries:
                        retry_next.append((i, source_id, data))
                        continue
                    step_result.errors.append(RecordError(record_id, error, retryable=True))
                else:
                    step_result.errors.append(RecordError(record_id, error))
                step_result.failure_count += 1

            if retry_next:
                wait = base_wait * (2 ** attempt)
                logger.warning(
                    f"{step.step_name}: retrying {len(retry_next)} record(s) in batch {batch_number} "
                    f"after {wait:.2f}s (attempt {attempt + 1}/{max_retries})"
                )
                await asyncio.sleep(wait)
                attempt += 1
            pending = retry_next

    async def _write(
        self,
        object_type: str,
        operation: LoadOperation,
        external_id_field: Optional[str],
        records: List[Dict[str, Any]],
        identity: ResolvedExternalIdFields,
        client: OrgClient
    ) -> BulkResult:
        if operation == LoadOperation.UPSERT:
            field_name = identity.for_target(external_id_field or "")
            if field_name:
                return await client.bulk_upsert(object_type, records, field_name)
            logger.warning(f"{object_type} has no external ID field in target; upsert degraded to insert")
            return await client.bulk_insert(object_type, records)
        if operation == LoadOperation.UPDATE:
            return await client.bulk_update(object_type, records)
        return await client.bulk_insert(object_type, records)

    @staticmethod
    def _outcome_at(response: BulkResult, position: int) -> RecordResult:
        if position < len(response.data):
            return response.data[position]
        return RecordResult(id=None, success=False, errors=[response.error or "No result returned"])

    async def _rollback(self, run: _RunContext, state: RunState):
        return await RollbackService(run.target).rollback_records(list(state.rollback_log))

    @staticmethod
    def _effective_batch_size(step: ETLStep, config: ExecutionConfig) -> int:
        sizes = [s for s in (step.load_config.batch_size, config.batch_size) if s and s > 0]
        return min(sizes) if sizes else 200

    @staticmethod
    def _record_type_objects(plan: List[ETLStep]) -> List[str]:
        """Target object types whose record types are needed during transform."""
        objects: List[str] = []
        for step in plan:
            config = step.transform_config
            uses_record_types = config.record_type_mapping is not None or any(
                m.source_field.startswith(RECORD_TYPE_PREFIX) for m in config.field_mappings
            )
            if uses_record_types and step.load_config.target_object not in objects:
                objects.append(step.load_config.target_object)
        return objects

    @staticmethod
    def _estimate_completion(durations: List[float], remaining_steps: int) -> Optional[datetime]:
        if not durations:
            return None
        average = sum(durations) / len(durations)
        return datetime.utcnow() + timedelta(seconds=average * remaining_steps)

    def _emit_progress(self, context: ExecutionContext, progress: ExecutionProgress) -> None:
        if not context.config.enable_progress_tracking:
            return
        for callback in list(self._progress_callbacks):
            try:
                callback(progress)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")
