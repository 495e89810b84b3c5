"""Per-object-type record counters and progress snapshots."""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models.error import MigrationError
from ..models.project import ObjectType, ObjectTypeStatus

logger = logging.getLogger(__name__)

ACTIVE_STAGES = (
    ObjectTypeStatus.MAPPING,
    ObjectTypeStatus.EXTRACTING,
    ObjectTypeStatus.LOADING,
    ObjectTypeStatus.VERIFYING,
)


@dataclass
class ProgressSnapshot:
    """Point-in-time progress of a project, recomputed from raw counts."""
    project_id: str
    status: str
    stage: str
    percentage: float
    current_object: Optional[str]
    processed_records: int
    migrated_records: int
    failed_records: int
    total_records: int
    throughput_per_second: float
    estimated_time_remaining: Optional[float]  # seconds
    errors: int
    per_object_type: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def overall(self) -> Dict[str, Any]:
        return {
            "total": self.total_records,
            "migrated": self.migrated_records,
            "failed": self.failed_records,
            "percentage": self.percentage,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "project_id": self.project_id,
            "status": self.status,
            "stage": self.stage,
            "percentage": self.percentage,
            "current_object": self.current_object,
            "processed_records": self.processed_records,
            "migrated_records": self.migrated_records,
            "failed_records": self.failed_records,
            "total_records": self.total_records,
            "throughput_per_second": self.throughput_per_second,
            "estimated_time_remaining": self.estimated_time_remaining,
            "errors": self.errors,
            "overall": self.overall,
            "per_object_type": self.per_object_type,
        }


def _percentage(migrated: int, total: int, finished: bool) -> float:
    if total <= 0:
        return 100.0 if finished else 0.0
    return round(migrated / total * 100, 2)


class ProgressTracker:
    """
    Aggregates record counts per object type and publishes snapshots.

    Counter changes are increments applied under a lock, so concurrent
    batches never lose updates and the final counts do not depend on the
    order in which batches finish. Every change is written through to the
    store and pushed to subscribers.
    """

    def __init__(self, store):
        self.store = store
        self._lock = threading.RLock()
        self._object_types: Dict[str, ObjectType] = {}
        self._project_object_types: Dict[str, List[str]] = {}
        self._run_started: Dict[str, float] = {}
        self._run_baseline: Dict[str, int] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._queue_loops: Dict[int, asyncio.AbstractEventLoop] = {}

    def register(self, project_id: str, object_type: ObjectType) -> None:
        """Start tracking an object type."""
        with self._lock:
            self._object_types[object_type.id] = object_type
            ids = self._project_object_types.setdefault(project_id, [])
            if object_type.id not in ids:
                ids.append(object_type.id)

    def _get(self, object_type_id: str) -> ObjectType:
        try:
            return self._object_types[object_type_id]
        except KeyError:
            raise KeyError(f"Object type {object_type_id} is not registered for progress tracking")

    def start_run(self, project_id: str) -> None:
        """Reset the throughput clock for a (re)started run."""
        with self._lock:
            self._run_started[project_id] = time.monotonic()
            self._run_baseline[project_id] = sum(
                self._object_types[i].processed_records
                for i in self._project_object_types.get(project_id, [])
            )

    def set_total(self, object_type_id: str, total: int) -> None:
        """Set the record total, never below what was already processed."""
        with self._lock:
            object_type = self._get(object_type_id)
            object_type.total_records = max(int(total), object_type.processed_records)
            self._persist(object_type)
        self.publish(object_type.project_id)

    def add_total(self, object_type_id: str, count: int) -> None:
        """Grow the record total as batches are discovered."""
        if count < 0:
            raise ValueError("add_total count must not be negative")
        with self._lock:
            object_type = self._get(object_type_id)
            object_type.total_records += count
            self._persist(object_type)
        self.publish(object_type.project_id)

    def update(self, object_type_id: str, migrated: int = 0, failed: int = 0) -> ObjectType:
        """
        Apply a counter delta atomically.

        Args:
            object_type_id: Object type to update
            migrated: Change in migrated records
            failed: Change in failed records

        Returns:
            The updated object type

        Raises:
            ValueError: If the delta would make a count negative or push
                migrated + failed past the total
        """
        with self._lock:
            object_type = self._get(object_type_id)
            new_failed = object_type.failed_records + failed
            new_processed = object_type.processed_records + migrated + failed
            if new_failed < 0 or new_processed - new_failed < 0:
                raise ValueError(f"Progress update would make counts negative for {object_type.name}")
            if new_processed > object_type.total_records:
                raise ValueError(
                    f"Progress update would exceed total for {object_type.name}: "
                    f"{new_processed} > {object_type.total_records}"
                )
            object_type.failed_records = new_failed
            object_type.processed_records = new_processed
            self._persist(object_type)

        self.publish(object_type.project_id)
        return object_type

    def _persist(self, object_type: ObjectType) -> None:
        """Write counts through to the store (called with the lock held)."""
        self.store.save_object_type(object_type)
        project = self.store.get_project(object_type.project_id)
        members = [self._object_types[i] for i in self._project_object_types.get(project.id, [])]
        project.total_objects = sum(o.total_records for o in members)
        project.failed_objects = sum(o.failed_records for o in members)
        project.migrated_objects = sum(o.migrated_records for o in members)
        self.store.save_project(project)

    def snapshot(self, project_id: str) -> ProgressSnapshot:
        """Compute a fresh snapshot from raw counts."""
        project = self.store.get_project(project_id)
        with self._lock:
            object_types = [self._object_types[i] for i in self._project_object_types.get(project_id, [])]
            if not object_types:
                object_types = self.store.list_object_types(project_id)
            per_object = []
            total = migrated = failed = 0
            current_object = None
            current_stage = None
            for object_type in object_types:
                total += object_type.total_records
                migrated += object_type.migrated_records
                failed += object_type.failed_records
                if current_object is None and object_type.status in ACTIVE_STAGES:
                    current_object = object_type.name
                    current_stage = object_type.status.value
                per_object.append({
                    "id": object_type.id,
                    "name": object_type.name,
                    "status": object_type.status.value,
                    "total": object_type.total_records,
                    "migrated": object_type.migrated_records,
                    "failed": object_type.failed_records,
                    "processed": object_type.processed_records,
                    "percentage": _percentage(
                        object_type.migrated_records, object_type.total_records, object_type.is_finished
                    ),
                })
            started = self._run_started.get(project_id)
            baseline = self._run_baseline.get(project_id, 0)

        processed = migrated + failed
        throughput = 0.0
        if started is not None:
            elapsed = time.monotonic() - started
            if elapsed > 0:
                throughput = round(max(processed - baseline, 0) / elapsed, 2)
        remaining = max(total - processed, 0)
        eta = round(remaining / throughput, 1) if throughput > 0 else None

        all_finished = bool(object_types) and all(o.is_finished for o in object_types)
        errors = sum(1 for e in self.store.list_errors(project_id) if not e.resolved)

        return ProgressSnapshot(
            project_id=project_id,
            status=project.status.value,
            stage=current_stage or project.status.value,
            percentage=_percentage(migrated, total, all_finished),
            current_object=current_object,
            processed_records=processed,
            migrated_records=migrated,
            failed_records=failed,
            total_records=total,
            throughput_per_second=throughput,
            estimated_time_remaining=eta if remaining else 0.0,
            errors=errors,
            per_object_type=per_object,
        )

    # Push channel

    def subscribe(self, project_id: str, maxsize: int = 100) -> asyncio.Queue:
        """
        Subscribe to snapshot updates; must be called from a running event loop.

        Returns:
            Queue receiving snapshot dicts; when full the oldest entry is dropped
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        with self._lock:
            self._subscribers.setdefault(project_id, []).append(queue)
            self._queue_loops[id(queue)] = asyncio.get_running_loop()
        return queue

    def unsubscribe(self, project_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            queues = self._subscribers.get(project_id, [])
            if queue in queues:
                queues.remove(queue)
            self._queue_loops.pop(id(queue), None)

    def publish(self, project_id: str) -> None:
        """Push a fresh snapshot to every subscriber of a project."""
        with self._lock:
            queues = [(q, self._queue_loops.get(id(q))) for q in self._subscribers.get(project_id, [])]
        if not queues:
            return

        payload = self.snapshot(project_id).to_dict()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        for queue, loop in queues:
            if loop is None or loop.is_closed():
                continue
            if loop is running:
                self._put_latest(queue, payload)
            else:
                loop.call_soon_threadsafe(self._put_latest, queue, payload)

    @staticmethod
    def _put_latest(queue: asyncio.Queue, payload: Dict[str, Any]) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(payload)

    def on_error_event(self, event: str, error: MigrationError) -> None:
        """ErrorHandler listener: republish so error counts stay current."""
        self.publish(error.project_id)

