"""Recorded migration failures."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime
import uuid

from .project import utcnow


class ErrorType(str, Enum):
    """Classification of a failure."""
    AUTH_FAILURE = "auth_failure"
    RATE_LIMITED = "rate_limited"
    VALIDATION_ERROR = "validation_error"
    DUPLICATE_RECORD = "duplicate_record"
    TRANSIENT_NETWORK = "transient_network"
    UNRECOVERABLE_PROJECT_ERROR = "unrecoverable_project_error"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class MigrationError:
    """One recorded failure, kept for the life of the project."""
    project_id: str
    type: ErrorType
    severity: Severity
    message: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    object_type_id: Optional[str] = None
    record_id: Optional[str] = None
    batch_sequence: Optional[int] = None
    retryable: bool = False
    suggested_remediation: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    # Lifecycle
    attempts: int = 1
    terminal: bool = False
    resolved: bool = False
    resolution_notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "object_type_id": self.object_type_id,
            "record_id": self.record_id,
            "batch_sequence": self.batch_sequence,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "retryable": self.retryable,
            "suggested_remediation": self.suggested_remediation,
            "timestamp": self.timestamp.isoformat(),
            "attempts": self.attempts,
            "terminal": self.terminal,
            "resolved": self.resolved,
            "resolution_notes": self.resolution_notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationError":
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            object_type_id=data.get("object_type_id"),
            record_id=data.get("record_id"),
            batch_sequence=data.get("batch_sequence"),
            type=ErrorType(data.get("type", "unknown")),
            severity=Severity(data.get("severity", "medium")),
            message=data.get("message", ""),
            retryable=data.get("retryable", False),
            suggested_remediation=data.get("suggested_remediation", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else utcnow(),
            attempts=data.get("attempts", 1),
            terminal=data.get("terminal", False),
            resolved=data.get("resolved", False),
            resolution_notes=data.get("resolution_notes", ""),
        )
