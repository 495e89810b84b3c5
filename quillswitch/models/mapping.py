"""Field mapping models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import uuid


@dataclass
class FieldMapping:
    """Mapping between a source field and a destination field of one object type."""
    object_type_id: str
    source_field: str
    destination_field: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_required: bool = False
    transformation_rule: Optional[str] = None  # e.g. "trim|lowercase"
    confidence: Optional[float] = None  # 0-1, set when suggested

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "id": self.id,
            "object_type_id": self.object_type_id,
            "source_field": self.source_field,
            "destination_field": self.destination_field,
            "is_required": self.is_required,
        }
        if self.transformation_rule:
            result["transformation_rule"] = self.transformation_rule
        if self.confidence is not None:
            result["confidence"] = self.confidence
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        """Create from dictionary representation."""
        kwargs = {}
        if data.get("id"):
            kwargs["id"] = data["id"]
        return cls(
            object_type_id=data.get("object_type_id", ""),
            source_field=data.get("source_field", ""),
            destination_field=data.get("destination_field", ""),
            is_required=data.get("is_required", data.get("required", False)),
            transformation_rule=data.get("transformation_rule"),
            confidence=data.get("confidence"),
            **kwargs,
        )


@dataclass
class MappingSuggestion:
    """A suggested field mapping with a confidence score."""
    source_field: str
    destination_field: str
    confidence: float  # 0-1
    reason: str = ""
    is_required: bool = False
    transformation_rule: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_field": self.source_field,
            "destination_field": self.destination_field,
            "confidence": round(self.confidence, 4),
            "reason": self.reason,
            "is_required": self.is_required,
            "transformation_rule": self.transformation_rule,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MappingSuggestion":
        """Create from dictionary representation."""
        confidence = float(data.get("confidence", 1.0))
        return cls(
            source_field=data.get("source_field", ""),
            destination_field=data.get("destination_field", ""),
            confidence=min(max(confidence, 0.0), 1.0),
            reason=data.get("reason", data.get("reasoning", "")),
            is_required=data.get("is_required", False),
            transformation_rule=data.get("transformation_rule"),
        )


@dataclass
class SuggestionResult:
    """Suggestions for one object type plus the gaps that need a human."""
    suggestions: List[MappingSuggestion] = field(default_factory=list)
    needs_manual_mapping: List[str] = field(default_factory=list)
    provider: str = "heuristic"  # heuristic, ai, ai+heuristic

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestions": [s.to_dict() for s in self.suggestions],
            "needs_manual_mapping": self.needs_manual_mapping,
            "provider": self.provider,
        }
