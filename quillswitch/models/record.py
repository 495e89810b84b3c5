"""Record models for migration data."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime

from .project import utcnow


@dataclass
class ValidationError:
    """A validation error on a record."""
    field: str
    message: str
    error_type: str = "validation"
    severity: str = "error"  # error, warning
    value: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "field": self.field,
            "message": self.message,
            "error_type": self.error_type,
            "severity": self.severity,
            "value": self.value,
        }


@dataclass
class SourceRecord:
    """A record extracted from a source system."""
    id: str
    object_type: str
    data: Dict[str, Any]
    extracted_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "object_type": self.object_type,
            "data": self.data,
            "extracted_at": self.extracted_at.isoformat(),
            "metadata": self.metadata,
        }

    def get_field(self, path: str, default: Any = None) -> Any:
        """Get a field value by dot-notation path (e.g., 'address.city')."""
        if path in self.data:
            value = self.data[path]
            return default if value is None else value

        value: Any = self.data
        for part in path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            elif isinstance(value, list) and part.isdigit():
                idx = int(part)
                value = value[idx] if idx < len(value) else None
            else:
                return default
            if value is None:
                return default
        return value


@dataclass
class TransformedRecord:
    """A record mapped into the destination system's shape."""
    id: str  # source record id
    object_type: str
    data: Dict[str, Any]
    validation_errors: List[ValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "object_type": self.object_type,
            "data": self.data,
            "validation_errors": [e.to_dict() for e in self.validation_errors],
            "warnings": self.warnings,
        }

    def add_validation_error(self, field: str, message: str, **kwargs) -> None:
        """Add a validation error."""
        self.validation_errors.append(ValidationError(field=field, message=message, **kwargs))

    @property
    def is_valid(self) -> bool:
        """Check if record passed validation."""
        return not any(e.severity == "error" for e in self.validation_errors)

    @property
    def error_summary(self) -> str:
        return "; ".join(
            f"{e.field}: {e.message}" for e in self.validation_errors if e.severity == "error"
        )
