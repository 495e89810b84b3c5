"""Migration project and object type models."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class ProjectStatus(str, Enum):
    """Status of a migration project."""
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PROJECT_STATUSES


TERMINAL_PROJECT_STATUSES = frozenset({
    ProjectStatus.COMPLETED,
    ProjectStatus.COMPLETED_WITH_ERRORS,
    ProjectStatus.FAILED,
    ProjectStatus.CANCELLED,
})

# Allowed project status transitions. Terminal statuses have no way out.
PROJECT_TRANSITIONS = {
    ProjectStatus.SCHEDULED: {ProjectStatus.IN_PROGRESS, ProjectStatus.CANCELLED},
    ProjectStatus.IN_PROGRESS: {
        ProjectStatus.COMPLETED,
        ProjectStatus.COMPLETED_WITH_ERRORS,
        ProjectStatus.FAILED,
        ProjectStatus.PAUSED,
        ProjectStatus.CANCELLED,
    },
    ProjectStatus.PAUSED: {ProjectStatus.IN_PROGRESS, ProjectStatus.CANCELLED},
    ProjectStatus.COMPLETED: set(),
    ProjectStatus.COMPLETED_WITH_ERRORS: set(),
    ProjectStatus.FAILED: set(),
    ProjectStatus.CANCELLED: set(),
}


class ObjectTypeStatus(str, Enum):
    """Pipeline stage of one object type within a project."""
    PENDING = "pending"
    NEEDS_MAPPING = "needs_mapping"
    MAPPING = "mapping"
    EXTRACTING = "extracting"
    LOADING = "loading"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "object_failed"


class MigrationStrategy(str, Enum):
    """How object types are scheduled within a run."""
    FULL = "full"
    INCREMENTAL = "incremental"
    PARALLEL = "parallel"


@dataclass
class ObjectType:
    """One migratable entity class (Contact, Account, Deal...) of a project."""
    project_id: str
    name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ObjectTypeStatus = ObjectTypeStatus.PENDING
    total_records: int = 0
    processed_records: int = 0  # migrated + failed
    failed_records: int = 0
    description: str = ""
    status_reason: str = ""
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def migrated_records(self) -> int:
        return self.processed_records - self.failed_records

    @property
    def is_finished(self) -> bool:
        return self.status in (ObjectTypeStatus.DONE, ObjectTypeStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "status": self.status.value,
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "failed_records": self.failed_records,
            "migrated_records": self.migrated_records,
            "description": self.description,
            "status_reason": self.status_reason,
            "updated_at": _isoformat(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectType":
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            name=data["name"],
            status=ObjectTypeStatus(data.get("status", "pending")),
            total_records=data.get("total_records", 0),
            processed_records=data.get("processed_records", 0),
            failed_records=data.get("failed_records", 0),
            description=data.get("description", ""),
            status_reason=data.get("status_reason", ""),
            updated_at=_parse_datetime(data.get("updated_at")) or utcnow(),
        )


@dataclass
class MigrationProject:
    """A single source-to-destination migration."""
    company_name: str
    source_system: str  # connection id
    destination_system: str  # connection id
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ProjectStatus = ProjectStatus.SCHEDULED
    strategy: MigrationStrategy = MigrationStrategy.FULL
    status_reason: str = ""

    # Aggregate counts across object types
    total_objects: int = 0
    migrated_objects: int = 0
    failed_objects: int = 0

    # Ownership
    owner_id: Optional[str] = None
    workspace_id: Optional[str] = None

    # Timing
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_successful_run_at: Optional[datetime] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "company_name": self.company_name,
            "source_system": self.source_system,
            "destination_system": self.destination_system,
            "status": self.status.value,
            "strategy": self.strategy.value,
            "status_reason": self.status_reason,
            "total_objects": self.total_objects,
            "migrated_objects": self.migrated_objects,
            "failed_objects": self.failed_objects,
            "owner_id": self.owner_id,
            "workspace_id": self.workspace_id,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
            "last_successful_run_at": _isoformat(self.last_successful_run_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationProject":
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            company_name=data.get("company_name", ""),
            source_system=data.get("source_system", ""),
            destination_system=data.get("destination_system", ""),
            status=ProjectStatus(data.get("status", "scheduled")),
            strategy=MigrationStrategy(data.get("strategy", "full")),
            status_reason=data.get("status_reason", ""),
            total_objects=data.get("total_objects", 0),
            migrated_objects=data.get("migrated_objects", 0),
            failed_objects=data.get("failed_objects", 0),
            owner_id=data.get("owner_id"),
            workspace_id=data.get("workspace_id"),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=_parse_datetime(data.get("updated_at")) or utcnow(),
            started_at=_parse_datetime(data.get("started_at")),
            completed_at=_parse_datetime(data.get("completed_at")),
            last_successful_run_at=_parse_datetime(data.get("last_successful_run_at")),
            metadata=data.get("metadata", {}),
        )
