"""Migration orchestrator - drives projects from mapping through verification."""

import asyncio
import dataclasses
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .exceptions import (
    InvalidTransitionError,
    RecordValidationError,
    UnknownObjectTypeError,
)
from .extractors.base import BaseExtractor
from .loaders.base import BaseLoader, LoadResult
from .models.error import ErrorType
from .models.mapping import FieldMapping, MappingSuggestion
from .models.migration import MigrationRequest, ScheduleConfig
from .models.project import (
    MigrationProject,
    MigrationStrategy,
    ObjectType,
    ObjectTypeStatus,
    PROJECT_TRANSITIONS,
    ProjectStatus,
    utcnow,
)
from .models.record import SourceRecord
from .services.checkpoint import CheckpointTracker
from .services.concurrency import BatchPool, CancellationToken, TaskOutcome
from .services.connections import ConnectionRegistry
from .services.error_handler import ErrorContext, ErrorHandler, RetryOutcome
from .services.field_mapper import FieldMapper
from .services.progress import ProgressSnapshot, ProgressTracker
from .services.scheduler import MigrationScheduler, validate_cron
from .services.schema_resolver import SchemaResolver
from .services.transformer import TransformEngine
from .storage import MigrationStore

logger = logging.getLogger(__name__)

PROJECT_FATAL_ERRORS = (ErrorType.AUTH_FAILURE, ErrorType.UNRECOVERABLE_PROJECT_ERROR)


@dataclass
class _ProjectRun:
    """Live state of one running project."""
    token: CancellationToken
    task: Optional[asyncio.Task] = None


@dataclass
class _ObjectRun:
    """Everything one object type's batches share during a run."""
    project: MigrationProject
    object_type: ObjectType
    mappings: List[FieldMapping]
    extractor: BaseExtractor
    loader: BaseLoader
    handler: ErrorHandler
    token: CancellationToken
    checkpoint: CheckpointTracker
    since: Optional[datetime] = None
    in_flight_records: int = 0
    batches_loaded: int = 0
    failed_batches: List[int] = field(default_factory=list)
    count_lock: threading.Lock = field(default_factory=threading.Lock)
    cursor_lock: threading.Lock = field(default_factory=threading.Lock)

    def context(self, operation: str, **kwargs) -> ErrorContext:
        return ErrorContext(
            project_id=self.project.id,
            object_type_id=self.object_type.id,
            operation=operation,
            **kwargs,
        )


class MigrationOrchestrator:
    """
    Orchestrates migration projects.

    Handles:
    - Project creation, immediate or cron-scheduled start
    - Field mapping (stored, supplied, or suggested) per object type
    - Batched extraction with bounded concurrent loading
    - Gap-free checkpoints so paused or crashed runs resume where they stopped
    - Retry and classification of failures, with manual retry afterwards
    - Pause, resume and cancel at batch boundaries
    - Progress snapshots and push updates

    Several projects can run at once; each has its own cancellation token,
    batch pool and error handler.
    """

    def __init__(
        self,
        connections: ConnectionRegistry,
        store: Optional[MigrationStore] = None,
        field_mapper: Optional[FieldMapper] = None,
        schema_resolver: Optional[SchemaResolver] = None,
        progress: Optional[ProgressTracker] = None,
        scheduler: Optional[MigrationScheduler] = None,
        sleep=asyncio.sleep
    ):
        """
        Initialize the orchestrator.

        Args:
            connections: Registry of source and destination connectors
            store: Persistence for projects, mappings, errors and cursors
            field_mapper: Mapper used to suggest and validate mappings
            schema_resolver: Resolver for object type field lists
            progress: Progress tracker (one is created if omitted)
            scheduler: Scheduler for recurring projects (created on demand)
            sleep: Coroutine used for retry backoff
        """
        self.connections = connections
        self.store = store or MigrationStore()
        self.transform_engine = TransformEngine()
        self.field_mapper = field_mapper or FieldMapper(self.store, transform_engine=self.transform_engine)
        if self.field_mapper.store is None:
            self.field_mapper.store = self.store
        self.schema_resolver = schema_resolver or SchemaResolver(connections)
        self.progress = progress or ProgressTracker(self.store)
        self.scheduler = scheduler
        self._sleep = sleep

        self._lock = threading.RLock()
        self._runs: Dict[str, _ProjectRun] = {}
        self._error_handlers: Dict[str, ErrorHandler] = {}

    # Project lifecycle

    def create_project(self, request: MigrationRequest) -> MigrationProject:
        """
        Create a project and its object types in ``scheduled`` state.

        Mappings supplied with the request are validated and stored.

        Raises:
            ValueError: If a connection is unknown, no object type is given,
                or the cron expression is malformed
            MappingValidationError: If supplied mappings are invalid
        """
        if request.source_connection_id not in self.connections:
            raise ValueError(f"Unknown source connection: {request.source_connection_id}")
        if request.destination_connection_id not in self.connections:
            raise ValueError(f"Unknown destination connection: {request.destination_connection_id}")
        if not request.object_types:
            raise ValueError("A migration needs at least one object type")
        if not request.schedule.is_immediate:
            validate_cron(request.schedule.cron)

        project = MigrationProject(
            company_name=request.company_name,
            source_system=request.source_connection_id,
            destination_system=request.destination_connection_id,
            strategy=request.strategy,
            owner_id=request.owner_id,
            workspace_id=request.workspace_id,
            metadata={"request": request.to_dict()},
        )
        object_types = []
        mapping_sets = []
        for object_request in request.object_types:
            object_type = ObjectType(
                project_id=project.id,
                name=object_request.name,
                description=object_request.description,
            )
            mappings = []
            if object_request.field_mappings:
                mappings = self.field_mapper.build_mappings(
                    object_type.id, object_request.field_mappings, min_confidence=0.0
                )
            object_types.append(object_type)
            mapping_sets.append(mappings)

        self.store.save_project(project)
        for object_type, mappings in zip(object_types, mapping_sets):
            self.store.save_object_type(object_type)
            if mappings:
                self.store.replace_field_mappings(object_type.id, mappings)
            self.progress.register(project.id, object_type)

        logger.info(
            f"Created migration project {project.id} for {project.company_name}: "
            f"{', '.join(o.name for o in object_types)} ({project.strategy.value})"
        )
        return project

    async def start(self, request: MigrationRequest) -> MigrationProject:
        """Create a project, then run it now or register its cron schedule."""
        project = self.create_project(request)
        if request.schedule.is_immediate:
            return await self.start_project(project.id)

        scheduler = self._ensure_scheduler()
        next_run = scheduler.schedule(project.id, request.schedule.cron)
        project.metadata["next_run"] = next_run.isoformat() if next_run else None
        self.store.save_project(project)
        return project

    async def start_project(self, project_id: str) -> MigrationProject:
        """
        Start a scheduled project.

        Raises:
            ProjectNotFoundError: If the project does not exist
            InvalidTransitionError: If the project is not in ``scheduled`` state
        """
        project = self.store.get_project(project_id)
        if project.status != ProjectStatus.SCHEDULED:
            raise InvalidTransitionError(
                f"Project {project_id} is {project.status.value}; only scheduled projects can be started"
            )
        self._transition(project, ProjectStatus.IN_PROGRESS)
        self._launch(project)
        return project

    async def resume(self, project_id: str) -> MigrationProject:
        """
        Resume a paused project from its committed cursors.

        Raises:
            InvalidTransitionError: If the project is not paused
        """
        project = self.store.get_project(project_id)
        if project.status != ProjectStatus.PAUSED:
            raise InvalidTransitionError(
                f"Project {project_id} is {project.status.value}; only paused projects can be resumed"
            )
        self._transition(project, ProjectStatus.IN_PROGRESS)
        self._launch(project)
        return project

    def pause(self, project_id: str) -> MigrationProject:
        """
        Ask a running project to pause.

        In-flight batches finish and are committed; the status becomes
        ``paused`` once they have drained. Safe to call from any thread.

        Raises:
            InvalidTransitionError: If the project is not in progress
        """
        project = self.store.get_project(project_id)
        if project.status != ProjectStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Project {project_id} is {project.status.value}; only running projects can be paused"
            )
        run = self._active_run(project_id)
        if run is None:
            # Nothing is executing (e.g. the process restarted mid-run)
            self._transition(project, ProjectStatus.PAUSED, "paused by user")
        else:
            run.token.request(CancellationToken.PAUSE, "paused by user")
            logger.info(f"Pause requested for project {project_id}")
        return project

    def cancel(self, project_id: str) -> MigrationProject:
        """
        Cancel a project.

        Scheduled and paused projects are cancelled at once; a running one
        stops after its in-flight batches drain. Safe to call from any thread.

        Raises:
            InvalidTransitionError: If the project already finished
        """
        project = self.store.get_project(project_id)
        if project.status.is_terminal:
            raise InvalidTransitionError(
                f"Project {project_id} is {project.status.value} and cannot be cancelled"
            )
        if self.scheduler is not None:
            self.scheduler.remove(project_id)

        run = self._active_run(project_id)
        if run is None:
            self._transition(project, ProjectStatus.CANCELLED, "cancelled by user")
        else:
            run.token.request(CancellationToken.CANCEL, "cancelled by user")
            logger.info(f"Cancellation requested for project {project_id}")
        return project

    async def wait(self, project_id: str) -> MigrationProject:
        """Wait for the current run of a project to stop; returns the project."""
        with self._lock:
            run = self._runs.get(project_id)
        if run is not None and run.task is not None:
            await asyncio.shield(run.task)
        return self.store.get_project(project_id)

    def snapshot(self, project_id: str) -> ProgressSnapshot:
        """Current progress of a project, recomputed from raw counts."""
        return self.progress.snapshot(project_id)

    def is_running(self, project_id: str) -> bool:
        return self._active_run(project_id) is not None

    def recover_interrupted(self) -> List[str]:
        """
        Pause projects a previous process left ``in_progress``.

        Returns:
            Ids of the recovered projects; resume them to continue
        """
        recovered = []
        for project in self.store.list_projects():
            if project.status == ProjectStatus.IN_PROGRESS and self._active_run(project.id) is None:
                for object_type in self.store.list_object_types(project.id):
                    self.progress.register(project.id, object_type)
                self._transition(project, ProjectStatus.PAUSED, "interrupted; resume to continue")
                recovered.append(project.id)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} interrupted projects: {', '.join(recovered)}")
        return recovered

    async def run_scheduled(self, project_id: str) -> Optional[MigrationProject]:
        """
        Scheduler entry point for a recurring project.

        The first fire starts the scheduled project itself. Later fires start
        a fresh incremental project that reads only records changed since
        the last successful run. A fire is skipped while the previous run is
        still going or paused.
        """
        project = self.store.get_project(project_id)
        if project.status == ProjectStatus.SCHEDULED:
            return await self.start_project(project_id)

        latest = self.store.get_project(project.metadata.get("latest_run", project.id))
        if not latest.status.is_terminal:
            logger.warning(
                f"Skipping scheduled run of {project_id}: run {latest.id} is {latest.status.value}"
            )
            return None

        request = dataclasses.replace(
            self._request(project),
            strategy=MigrationStrategy.INCREMENTAL,
            schedule=ScheduleConfig(),
        )
        clone = self.create_project(request)
        clone.last_successful_run_at = latest.last_successful_run_at or project.last_successful_run_at
        clone.metadata["scheduled_from"] = project.id
        self.store.save_project(clone)
        self._copy_mappings(latest, clone)

        project.metadata["latest_run"] = clone.id
        self.store.save_project(project)
        logger.info(f"Scheduled run of {project_id} started as project {clone.id}")
        return await self.start_project(clone.id)

    # Mappings and errors

    def apply_mappings(
        self,
        object_type_id: str,
        suggestions: List[MappingSuggestion],
        min_confidence: float = 0.0
    ) -> List[FieldMapping]:
        """
        Replace the mappings of an object type.

        An object type waiting for mappings goes back to ``pending`` so the
        next resume migrates it.

        Raises:
            MappingLockedError: If the project is running
            MappingValidationError: If the new set is invalid
        """
        self.field_mapper.apply_mappings(object_type_id, suggestions, min_confidence)
        object_type = self.store.get_object_type(object_type_id)
        if object_type.status == ObjectTypeStatus.NEEDS_MAPPING:
            self._set_status(object_type, ObjectTypeStatus.PENDING, "mappings updated")
        return self.store.get_field_mappings(object_type_id)

    def error_handler(self, project_id: str) -> ErrorHandler:
        """The error handler of a project, created with its retry config."""
        with self._lock:
            handler = self._error_handlers.get(project_id)
            if handler is None:
                request = self._request(self.store.get_project(project_id))
                handler = ErrorHandler(self.store, request.retry_config, sleep=self._sleep)
                handler.add_listener(self.progress.on_error_event)
                self._error_handlers[project_id] = handler
            return handler

    def errors(self, project_id: str) -> Dict[str, Any]:
        """Unresolved errors of a project, grouped for the monitor."""
        self.store.get_project(project_id)
        return self.error_handler(project_id).errors_for_monitor(project_id)

    async def retry_error(self, error_id: str) -> RetryOutcome:
        """Manually retry the work behind a recorded error."""
        error = self.store.get_error(error_id)
        if error is None:
            return RetryOutcome.NOT_FOUND
        return await self.error_handler(error.project_id).retry(error_id)

    # Internals: state

    def _request(self, project: MigrationProject) -> MigrationRequest:
        data = project.metadata.get("request")
        if data is None:
            return MigrationRequest(
                company_name=project.company_name,
                source_connection_id=project.source_system,
                destination_connection_id=project.destination_system,
                strategy=project.strategy,
            )
        return MigrationRequest.from_dict(data)

    def _ensure_scheduler(self) -> MigrationScheduler:
        if self.scheduler is None:
            self.scheduler = MigrationScheduler(self.run_scheduled)
        self.scheduler.start()
        return self.scheduler

    def _active_run(self, project_id: str) -> Optional[_ProjectRun]:
        with self._lock:
            run = self._runs.get(project_id)
        if run is None or run.task is None or run.task.done():
            return None
        return run

    def _launch(self, project: MigrationProject) -> None:
        token = CancellationToken()
        run = _ProjectRun(token=token)
        with self._lock:
            self._runs[project.id] = run
        run.task = asyncio.create_task(self._run_project(project.id, token))

    def _transition(self, project: MigrationProject, status: ProjectStatus, reason: str = "") -> None:
        """
        Move a project to a new status.

        Raises:
            InvalidTransitionError: If the state machine does not allow it
        """
        with self._lock:
            previous = project.status
            if status not in PROJECT_TRANSITIONS[previous]:
                raise InvalidTransitionError(
                    f"Project {project.id} cannot go from {previous.value} to {status.value}"
                )
            now = utcnow()
            project.status = status
            project.status_reason = reason
            project.updated_at = now
            if status == ProjectStatus.IN_PROGRESS and project.started_at is None:
                project.started_at = now
            if status.is_terminal:
                project.completed_at = now
            self.store.save_project(project)
            self.store.flush()

        suffix = f" ({reason})" if reason else ""
        logger.info(f"Project {project.id}: {previous.value} -> {status.value}{suffix}")
        self.progress.publish(project.id)

    def _set_status(self, object_type: ObjectType, status: ObjectTypeStatus, reason: str = "") -> None:
        object_type.status = status
        object_type.status_reason = reason
        object_type.updated_at = utcnow()
        self.store.save_object_type(object_type)
        suffix = f" ({reason})" if reason else ""
        logger.info(f"Object type {object_type.name} of {object_type.project_id}: {status.value}{suffix}")
        self.progress.publish(object_type.project_id)

    def _copy_mappings(self, source: MigrationProject, target: MigrationProject) -> None:
        """Carry stored mappings over to a new run's object types, matched by name."""
        previous = {o.name: o for o in self.store.list_object_types(source.id)}
        for object_type in self.store.list_object_types(target.id):
            if self.store.get_field_mappings(object_type.id) or object_type.name not in previous:
                continue
            mappings = [
                dataclasses.replace(m, id=str(uuid.uuid4()), object_type_id=object_type.id)
                for m in self.store.get_field_mappings(previous[object_type.name].id)
            ]
            if mappings:
                self.store.replace_field_mappings(object_type.id, mappings)

    # Internals: the run

    async def _run_project(self, project_id: str, token: CancellationToken) -> None:
        project = self.store.get_project(project_id)
        request = self._request(project)
        handler = self.error_handler(project_id)
        object_types = self.store.list_object_types(project_id)
        for object_type in object_types:
            self.progress.register(project_id, object_type)
        self.progress.start_run(project_id)

        since = project.last_successful_run_at if project.strategy == MigrationStrategy.INCREMENTAL else None
        run_started = utcnow()
        pending = [o for o in object_types if not o.is_finished]
        logger.info(
            f"Running project {project_id}: {len(pending)} of {len(object_types)} object types, "
            f"batch size {request.batch_config.batch_size}, "
            f"{request.batch_config.effective_concurrency} concurrent batches"
        )

        try:
            if project.strategy == MigrationStrategy.PARALLEL:
                await asyncio.gather(*(
                    self._migrate_object_type(project, o, request, handler, token, since)
                    for o in pending
                ))
            else:
                for object_type in pending:
                    if token.is_set:
                        break
                    await self._migrate_object_type(project, object_type, request, handler, token, since)
        except Exception as exc:
            logger.exception(f"Project {project_id} run crashed: {exc}")
            handler.record_failure(exc, ErrorContext(project_id, operation="run"), terminal=True)
            token.request(CancellationToken.FAIL, f"run crashed: {exc}")

        self._finish(project, object_types, request, token, run_started)

    def _finish(
        self,
        project: MigrationProject,
        object_types: List[ObjectType],
        request: MigrationRequest,
        token: CancellationToken,
        run_started: datetime
    ) -> None:
        """Settle the project status once every batch has drained."""
        if token.reason == CancellationToken.PAUSE:
            for object_type in object_types:
                if not object_type.is_finished and object_type.status != ObjectTypeStatus.NEEDS_MAPPING:
                    self._set_status(object_type, ObjectTypeStatus.PENDING, "paused")
            self._transition(project, ProjectStatus.PAUSED, token.detail)
            return
        if token.reason == CancellationToken.CANCEL:
            self._transition(project, ProjectStatus.CANCELLED, token.detail)
            return
        if token.reason == CancellationToken.FAIL:
            self._transition(project, ProjectStatus.FAILED, token.detail)
            return

        needs_mapping = [o for o in object_types if o.status == ObjectTypeStatus.NEEDS_MAPPING]
        failed = [o for o in object_types if o.status == ObjectTypeStatus.FAILED]
        failed_records = sum(o.failed_records for o in object_types)

        if needs_mapping:
            self._transition(project, ProjectStatus.PAUSED, "awaiting field mappings")
            return
        if object_types and len(failed) / len(object_types) >= request.object_failure_threshold:
            self._transition(
                project, ProjectStatus.FAILED,
                f"{len(failed)} of {len(object_types)} object types failed",
            )
            return

        project.last_successful_run_at = run_started
        if failed or failed_records:
            parts = []
            if failed:
                parts.append(f"{len(failed)} object types failed")
            if failed_records:
                parts.append(f"{failed_records} records failed")
            self._transition(project, ProjectStatus.COMPLETED_WITH_ERRORS, ", ".join(parts))
        else:
            self._transition(project, ProjectStatus.COMPLETED)

    def _record_crashed_batches(self, run: _ObjectRun, outcomes: List[TaskOutcome]) -> int:
        """
        Record batches whose bookkeeping raised after loading.

        Their records may already be in the destination but were never
        counted and their cursor never committed. A failing state store
        fails the whole project.
        """
        crashed = [o for o in outcomes if not o.ok and not o.skipped]
        for outcome in crashed:
            exc = outcome.error
            logger.error(f"{run.object_type.name} batch crashed after loading: {exc}", exc_info=exc)
            run.handler.record_failure(exc, run.context("commit", batch_sequence=outcome.index), terminal=True)
            if isinstance(exc, OSError) or self._is_project_fatal(run.handler, exc):
                run.token.request(CancellationToken.FAIL, f"could not record batch results: {exc}")
        return len(crashed)

    def _is_project_fatal(self, handler: ErrorHandler, exc: BaseException) -> bool:
        return handler.classify(exc).type in PROJECT_FATAL_ERRORS

    def _fail_object_type(self, run: _ObjectRun, exc: BaseException) -> None:
        """React to a terminal failure outside a single batch."""
        if self._is_project_fatal(run.handler, exc):
            run.token.request(CancellationToken.FAIL, str(exc))
            logger.error(f"Project {run.project.id} failing: {exc}")
            return
        self._set_status(run.object_type, ObjectTypeStatus.FAILED, str(exc))

    async def _prepare_mappings(
        self,
        project: MigrationProject,
        object_type: ObjectType,
        request: MigrationRequest
    ) -> Optional[List[FieldMapping]]:
        """
        Make sure every required destination field is mapped.

        Returns:
            The mapping set, or None when required fields are unmapped (the
            object type is left in ``needs_mapping``)
        """
        self._set_status(object_type, ObjectTypeStatus.MAPPING)
        destination = await asyncio.to_thread(
            self.schema_resolver.get_schema, project.destination_system, object_type.name
        )

        object_request = next((o for o in request.object_types if o.name == object_type.name), None)
        auto_map = object_request.auto_map if object_request else True
        if not self.store.get_field_mappings(object_type.id) and auto_map:
            source = await asyncio.to_thread(
                self.schema_resolver.get_schema, project.source_system, object_type.name
            )
            result = await asyncio.to_thread(
                self.field_mapper.suggest_mappings,
                source.fields, destination.fields, destination.required, object_type.name,
            )
            mappings = self.field_mapper.build_mappings(object_type.id, result.suggestions)
            self.store.replace_field_mappings(object_type.id, mappings)
            logger.info(
                f"Auto-mapped {len(mappings)} fields for {object_type.name} ({result.provider})"
            )

        missing = self.field_mapper.missing_required(object_type.id, destination.required)
        if missing:
            self._set_status(
                object_type, ObjectTypeStatus.NEEDS_MAPPING,
                f"unmapped required fields: {', '.join(missing)}",
            )
            return None
        return self.store.get_field_mappings(object_type.id)

    async def _migrate_object_type(
        self,
        project: MigrationProject,
        object_type: ObjectType,
        request: MigrationRequest,
        handler: ErrorHandler,
        token: CancellationToken,
        since: Optional[datetime]
    ) -> None:
        """Run one object type through mapping, extraction/loading and verification."""
        context = ErrorContext(project.id, object_type.id, operation="mapping")
        try:
            mappings = await self._prepare_mappings(project, object_type, request)
        except UnknownObjectTypeError as exc:
            handler.record_failure(exc, context, terminal=True)
            self._set_status(object_type, ObjectTypeStatus.FAILED, str(exc))
            return
        except Exception as exc:
            handler.record_failure(exc, context, terminal=True)
            if self._is_project_fatal(handler, exc):
                token.request(CancellationToken.FAIL, str(exc))
            else:
                self._set_status(object_type, ObjectTypeStatus.FAILED, f"mapping failed: {exc}")
            return
        if mappings is None:
            return

        run = _ObjectRun(
            project=project,
            object_type=object_type,
            mappings=mappings,
            extractor=self.connections.get_extractor(project.source_system),
            loader=self.connections.get_loader(project.destination_system),
            handler=handler,
            token=token,
            checkpoint=CheckpointTracker(self.store.get_cursor(project.id, object_type.id)),
            since=since,
        )
        config = request.batch_config
        pool = BatchPool(config.concurrent_batches, config.max_concurrent_batches)

        self._set_status(object_type, ObjectTypeStatus.EXTRACTING)
        try:
            await self._extract_and_load(run, pool, config.batch_size)
        except Exception as exc:
            # Extraction gave up; let the batches already handed off finish
            self._record_crashed_batches(run, await pool.drain())
            self._fail_object_type(run, exc)
            return
        crashed = self._record_crashed_batches(run, await pool.drain())

        if token.is_set:
            logger.info(
                f"{object_type.name} stopped ({token.reason}) at cursor {run.checkpoint.committed_cursor}"
            )
            return

        self._set_status(object_type, ObjectTypeStatus.VERIFYING)
        if crashed or run.checkpoint.outstanding:
            self._set_status(
                object_type, ObjectTypeStatus.FAILED,
                f"{max(crashed, run.checkpoint.outstanding)} batches were not committed; "
                f"last committed cursor {run.checkpoint.committed_cursor}",
            )
            return
        if object_type.processed_records < object_type.total_records:
            logger.warning(
                f"Source reported {object_type.total_records} {object_type.name} records "
                f"but {object_type.processed_records} were extracted"
            )
            self.progress.set_total(object_type.id, object_type.processed_records)
        self._set_status(object_type, ObjectTypeStatus.DONE)
        logger.info(
            f"{object_type.name}: {object_type.migrated_records} migrated, "
            f"{object_type.failed_records} failed, {run.batches_loaded} batches"
        )

    async def _extract_and_load(self, run: _ObjectRun, pool: BatchPool, batch_size: int) -> None:
        object_type = run.object_type
        count = await run.handler.execute_with_retry(
            lambda: asyncio.to_thread(run.extractor.count_records, object_type.name, run.since),
            run.context("count"),
        )
        if count is not None:
            self.progress.set_total(object_type.id, count)

        migrated_ids = self.store.migrated_ids(object_type.id)
        cursor = run.checkpoint.committed_cursor
        has_more = True

        while has_more and not run.token.is_set:
            batch = await run.handler.execute_with_retry(
                lambda c=cursor: asyncio.to_thread(
                    run.extractor.extract_batch, object_type.name, c, batch_size, run.since
                ),
                run.context("extract"),
                dedupe_key=f"{run.project.id}:{object_type.id}:extract:{cursor}",
            )
            if run.token.is_set:
                logger.info(f"Discarding extracted {object_type.name} batch at cursor {cursor}: run is stopping")
                break

            has_more = batch.has_more
            records = [r for r in batch.records if r.id not in migrated_ids]
            skipped = len(batch.records) - len(records)
            if skipped:
                logger.debug(f"Skipping {skipped} already migrated {object_type.name} records")

            sequence = run.checkpoint.assign()
            task = await pool.submit(
                lambda s=sequence, rs=records, nc=batch.next_cursor: self._load_batch(run, s, rs, nc),
                run.token,
            )
            if task is None:
                logger.info(f"Discarding {object_type.name} batch {sequence}: run is stopping")
                break
            # The task cannot start before the next await, so the total is
            # grown before any of its progress lands.
            self._reserve(run, len(records))
            if object_type.status == ObjectTypeStatus.EXTRACTING:
                self._set_status(object_type, ObjectTypeStatus.LOADING)
            cursor = batch.next_cursor

    def _reserve(self, run: _ObjectRun, count: int) -> None:
        """Grow the total so in-flight records always fit under it."""
        object_type = run.object_type
        with run.count_lock:
            needed = object_type.processed_records + run.in_flight_records + count
            if needed > object_type.total_records:
                self.progress.add_total(object_type.id, needed - object_type.total_records)
            run.in_flight_records += count

    def _count(self, run: _ObjectRun, in_flight: int, migrated: int = 0, failed: int = 0) -> None:
        """Move records from in flight to processed in one step."""
        with run.count_lock:
            self.progress.update(run.object_type.id, migrated=migrated, failed=failed)
            run.in_flight_records -= in_flight

    async def _load_batch(
        self,
        run: _ObjectRun,
        sequence: int,
        records: List[SourceRecord],
        next_cursor: Optional[str]
    ) -> None:
        """Load one batch, count it, then commit its cursor."""
        object_type = run.object_type
        dedupe_key = f"{run.project.id}:{object_type.id}:load:{next_cursor}"
        uncounted = len(records)
        try:
            if records:
                try:
                    result = await run.handler.execute_with_retry(
                        lambda: asyncio.to_thread(
                            run.loader.load_batch, object_type.name, records, run.mappings
                        ),
                        run.context("load", batch_sequence=sequence),
                        dedupe_key=dedupe_key,
                    )
                except Exception as exc:
                    if self._is_project_fatal(run.handler, exc):
                        run.token.request(CancellationToken.FAIL, str(exc))
                        logger.error(f"Project {run.project.id} failing on {object_type.name} batch {sequence}: {exc}")
                        return
                    self._fail_batch(run, sequence, records, dedupe_key)
                else:
                    # Store writes can block, keep them off the event loop
                    await asyncio.to_thread(self._apply_result, run, sequence, records, result)
                uncounted = 0

            run.batches_loaded += 1
            if run.checkpoint.complete(sequence, next_cursor):
                await asyncio.to_thread(self._save_cursor, run)
                logger.debug(
                    f"{object_type.name} cursor committed at {run.checkpoint.committed_cursor} (batch {sequence})"
                )
        finally:
            if uncounted:
                with run.count_lock:
                    run.in_flight_records -= uncounted

    def _save_cursor(self, run: _ObjectRun) -> None:
        # Read under the lock so a slower thread never writes an older cursor
        with run.cursor_lock:
            self.store.save_cursor(run.project.id, run.object_type.id, run.checkpoint.committed_cursor)

    def _apply_result(
        self,
        run: _ObjectRun,
        sequence: int,
        records: List[SourceRecord],
        result: LoadResult
    ) -> None:
        object_type = run.object_type
        if result.succeeded:
            self.store.mark_migrated(object_type.id, result.succeeded)
        for failure in result.failed:
            exc = failure.get("exception") or RecordValidationError(failure["error"], record_id=failure["id"])
            run.handler.record_failure(
                exc, run.context("load", record_id=failure["id"], batch_sequence=sequence)
            )
        self._count(run, len(records), migrated=len(result.succeeded), failed=len(result.failed))

    def _fail_batch(self, run: _ObjectRun, sequence: int, records: List[SourceRecord], dedupe_key: str) -> None:
        """Count a batch that exhausted its retries and make it retryable from the monitor."""
        object_type = run.object_type
        run.failed_batches.append(sequence)
        logger.error(f"{object_type.name} batch {sequence} failed: {len(records)} records counted as failed")

        error = run.handler.error_for_key(dedupe_key)
        if error is not None and error.retryable:
            run.handler.register_retry_action(error.id, lambda: self._retry_failed_batch(run, records))
        self._count(run, len(records), failed=len(records))

    async def _retry_failed_batch(self, run: _ObjectRun, records: List[SourceRecord]) -> bool:
        """Reload a failed batch with the current mappings."""
        object_type = run.object_type
        mappings = self.store.get_field_mappings(object_type.id)
        result = await asyncio.to_thread(run.loader.load_batch, object_type.name, records, mappings)

        if result.succeeded:
            self.store.mark_migrated(object_type.id, result.succeeded)
            self.progress.update(object_type.id, migrated=len(result.succeeded), failed=-len(result.succeeded))
        for failure in result.failed:
            exc = failure.get("exception") or RecordValidationError(failure["error"], record_id=failure["id"])
            run.handler.record_failure(exc, run.context("retry", record_id=failure["id"]))
        logger.info(
            f"Retried {object_type.name} batch: {len(result.succeeded)} migrated, {len(result.failed)} still failing"
        )
        return True
