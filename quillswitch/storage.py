"""Persistence for projects, object types, mappings, errors and cursors."""

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from .exceptions import MappingValidationError, ProjectNotFoundError
from .models.error import MigrationError
from .models.mapping import FieldMapping
from .models.project import MigrationProject, ObjectType

logger = logging.getLogger(__name__)


class MigrationStore:
    """
    Thread-safe in-memory store.

    Returned objects are the live stored instances; callers mutate them and
    call the matching ``save_*`` method so subclasses can persist the change.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._projects: Dict[str, MigrationProject] = {}
        self._object_types: Dict[str, ObjectType] = {}
        self._mappings: Dict[str, List[FieldMapping]] = {}
        self._errors: Dict[str, MigrationError] = {}
        self._cursors: Dict[str, Dict[str, Optional[str]]] = {}
        self._migrated_ids: Dict[str, Set[str]] = {}

    def _persist(self, force: bool = False) -> None:
        """
        Hook called after every mutation, with the lock held.

        ``force`` asks for the change to be durable before returning;
        otherwise a subclass may defer it.
        """

    def flush(self) -> None:
        """Make every change so far durable."""

    # Projects

    def save_project(self, project: MigrationProject) -> None:
        with self._lock:
            self._projects[project.id] = project
            self._persist()

    def get_project(self, project_id: str) -> MigrationProject:
        with self._lock:
            project = self._projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Migration project {project_id} not found")
        return project

    def list_projects(self, owner_id: Optional[str] = None, workspace_id: Optional[str] = None) -> List[MigrationProject]:
        with self._lock:
            projects = list(self._projects.values())
        if owner_id:
            projects = [p for p in projects if p.owner_id == owner_id]
        if workspace_id:
            projects = [p for p in projects if p.workspace_id == workspace_id]
        return sorted(projects, key=lambda p: p.created_at, reverse=True)

    # Object types

    def save_object_type(self, object_type: ObjectType) -> None:
        with self._lock:
            self._object_types[object_type.id] = object_type
            self._persist()

    def get_object_type(self, object_type_id: str) -> ObjectType:
        with self._lock:
            object_type = self._object_types.get(object_type_id)
        if object_type is None:
            raise KeyError(f"Object type {object_type_id} not found")
        return object_type

    def list_object_types(self, project_id: str) -> List[ObjectType]:
        with self._lock:
            return [o for o in self._object_types.values() if o.project_id == project_id]

    # Field mappings

    def get_field_mappings(self, object_type_id: str) -> List[FieldMapping]:
        """Current mappings of an object type (a copy of the list)."""
        with self._lock:
            return list(self._mappings.get(object_type_id, []))

    def replace_field_mappings(self, object_type_id: str, mappings: List[FieldMapping]) -> None:
        """
        Replace every mapping of an object type in one step.

        Readers see either the old set or the new one, never a mix. If the
        new set cannot be persisted the old set is restored and the error
        re-raised.

        Raises:
            MappingValidationError: If two required mappings share a destination field
        """
        required_destinations = [m.destination_field for m in mappings if m.is_required]
        if len(required_destinations) != len(set(required_destinations)):
            raise MappingValidationError(
                f"Required mappings of object type {object_type_id} share a destination field"
            )
        for mapping in mappings:
            if mapping.object_type_id != object_type_id:
                raise MappingValidationError(
                    f"Mapping {mapping.id} belongs to object type {mapping.object_type_id}, not {object_type_id}"
                )

        with self._lock:
            had_previous = object_type_id in self._mappings
            previous = self._mappings.get(object_type_id)
            self._mappings[object_type_id] = list(mappings)
            try:
                self._persist(force=True)
            except Exception:
                if had_previous:
                    self._mappings[object_type_id] = previous
                else:
                    del self._mappings[object_type_id]
                logger.error(f"Failed to persist mappings for {object_type_id}, previous mappings restored")
                raise

    # Errors

    def save_error(self, error: MigrationError) -> None:
        with self._lock:
            self._errors[error.id] = error
            self._persist()

    def get_error(self, error_id: str) -> Optional[MigrationError]:
        with self._lock:
            return self._errors.get(error_id)

    def list_errors(self, project_id: str) -> List[MigrationError]:
        with self._lock:
            return [e for e in self._errors.values() if e.project_id == project_id]

    # Cursors and migrated ids

    def save_cursor(self, project_id: str, object_type_id: str, cursor: Optional[str]) -> None:
        with self._lock:
            self._cursors.setdefault(project_id, {})[object_type_id] = cursor
            self._persist()

    def get_cursor(self, project_id: str, object_type_id: str) -> Optional[str]:
        with self._lock:
            return self._cursors.get(project_id, {}).get(object_type_id)

    def mark_migrated(self, object_type_id: str, record_ids: Iterable[str]) -> None:
        with self._lock:
            self._migrated_ids.setdefault(object_type_id, set()).update(record_ids)
            self._persist()

    def migrated_ids(self, object_type_id: str) -> Set[str]:
        with self._lock:
            return set(self._migrated_ids.get(object_type_id, set()))

    # Serialization

    def to_dict(self, include_migrated_ids: bool = True) -> Dict[str, Any]:
        """Snapshot of the whole store."""
        with self._lock:
            data = {
                "projects": [p.to_dict() for p in self._projects.values()],
                "object_types": [o.to_dict() for o in self._object_types.values()],
                "field_mappings": {
                    ot_id: [m.to_dict() for m in mappings]
                    for ot_id, mappings in self._mappings.items()
                },
                "errors": [e.to_dict() for e in self._errors.values()],
                "cursors": self._cursors,
            }
            if include_migrated_ids:
                data["migrated_ids"] = {ot_id: sorted(ids) for ot_id, ids in self._migrated_ids.items()}
            return data

    def load_dict(self, data: Dict[str, Any]) -> None:
        """Replace the store contents from a ``to_dict`` snapshot."""
        with self._lock:
            self._projects = {
                p["id"]: MigrationProject.from_dict(p) for p in data.get("projects", [])
            }
            self._object_types = {
                o["id"]: ObjectType.from_dict(o) for o in data.get("object_types", [])
            }
            self._mappings = {
                ot_id: [FieldMapping.from_dict(m) for m in mappings]
                for ot_id, mappings in data.get("field_mappings", {}).items()
            }
            self._errors = {
                e["id"]: MigrationError.from_dict(e) for e in data.get("errors", [])
            }
            self._cursors = {k: dict(v) for k, v in data.get("cursors", {}).items()}
            self._migrated_ids = {
                ot_id: set(ids) for ot_id, ids in data.get("migrated_ids", {}).items()
            }


class JsonFileMigrationStore(MigrationStore):
    """
    MigrationStore persisted to a JSON file.

    The state file is rewritten atomically (temp file plus ``os.replace``),
    at most once per ``write_interval`` seconds unless a write is forced.
    Migrated record ids are not part of it: they go to an append-only
    journal beside the state file, and the state records how many journal
    lines it accounts for. A restarted process replays exactly those lines,
    so counts, cursors and migrated ids always come from the same write.
    """

    def __init__(self, path: str, write_interval: float = 1.0, clock=time.monotonic):
        """
        Initialize the store, loading any previous state.

        Args:
            path: State file location
            write_interval: Minimum seconds between unforced writes
            clock: Monotonic clock used to space writes
        """
        super().__init__()
        self.path = Path(path)
        self.journal_path = self.path.with_name(f"{self.path.name}.migrated.jsonl")
        self.write_interval = write_interval
        self._clock = clock
        self._pending_ids: List[Dict[str, Any]] = []
        self._journal_lines = 0
        self._last_write = float("-inf")
        self._dirty = False
        if self.path.exists():
            self._load()
            logger.info(f"Loaded migration state from {self.path}")
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> None:
        with open(self.path) as f:
            data = json.load(f)
        self.load_dict(data)

        expected = data.get("journal_lines", 0)
        lines: List[str] = []
        if self.journal_path.exists():
            with open(self.journal_path) as f:
                lines = f.read().splitlines()
        if len(lines) < expected:
            logger.warning(f"{self.journal_path} has {len(lines)} lines, state expects {expected}")
        for line in lines[:expected]:
            entry = json.loads(line)
            self._migrated_ids.setdefault(entry["object_type_id"], set()).update(entry["ids"])
        self._journal_lines = min(len(lines), expected)

        if len(lines) > expected:
            # Appended after the last state write; the state does not count them
            logger.warning(f"Dropping {len(lines) - expected} uncommitted lines from {self.journal_path}")
            self._rewrite_journal(lines[:expected])

    def _rewrite_journal(self, lines: List[str]) -> None:
        tmp_path = self.journal_path.with_name(f".{self.journal_path.name}.tmp")
        with open(tmp_path, 'w') as f:
            f.writelines(f"{line}\n" for line in lines)
        os.replace(tmp_path, self.journal_path)

    def mark_migrated(self, object_type_id: str, record_ids: Iterable[str]) -> None:
        record_ids = list(record_ids)
        with self._lock:
            self._pending_ids.append({"object_type_id": object_type_id, "ids": record_ids})
            super().mark_migrated(object_type_id, record_ids)

    def _persist(self, force: bool = False) -> None:
        self._dirty = True
        if force or self._clock() - self._last_write >= self.write_interval:
            self._write()

    def _write(self) -> None:
        if self._pending_ids:
            with open(self.journal_path, 'a') as f:
                for entry in self._pending_ids:
                    f.write(json.dumps(entry) + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._journal_lines += len(self._pending_ids)
            self._pending_ids = []

        state = self.to_dict(include_migrated_ids=False)
        state["journal_lines"] = self._journal_lines
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        with open(tmp_path, 'w') as f:
            json.dump(state, f, indent=2, default=str)
        os.replace(tmp_path, self.path)

        self._dirty = False
        self._last_write = self._clock()

    def flush(self) -> None:
        with self._lock:
            if self._dirty:
                self._write()
