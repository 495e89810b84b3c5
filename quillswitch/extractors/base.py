"""Base extractor interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime
import logging

from ..models.record import SourceRecord

logger = logging.getLogger(__name__)


@dataclass
class ExtractedBatch:
    """One page of records read from a source system."""
    records: List[SourceRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None  # Opaque; resumes right after this batch
    has_more: bool = False

    def __len__(self) -> int:
        return len(self.records)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "records": [r.to_dict() for r in self.records],
            "next_cursor": self.next_cursor,
            "has_more": self.has_more,
        }


class BaseExtractor(ABC):
    """
    Base class for all source connectors.

    Extractors read records of one object type a page at a time. Cursors are
    opaque strings owned by the extractor: the pipeline only stores the
    ``next_cursor`` of a batch and hands it back to resume.

    Failures are raised using the exception taxonomy in
    ``quillswitch.exceptions`` so the error handler can classify them.
    """

    def __init__(self, connection_id: str):
        """
        Initialize the extractor.

        Args:
            connection_id: Opaque id of the connection this extractor reads
        """
        self.connection_id = connection_id

    @abstractmethod
    def extract_batch(
        self,
        object_type: str,
        cursor: Optional[str] = None,
        size: int = 100,
        since: Optional[datetime] = None
    ) -> ExtractedBatch:
        """
        Extract one batch of records.

        Args:
            object_type: Object type name (e.g. "contact")
            cursor: Cursor returned by the previous batch, None to start over
            size: Maximum records to return
            since: Only records modified at or after this time

        Returns:
            ExtractedBatch with the records and the cursor that follows them
        """
        pass

    def count_records(self, object_type: str, since: Optional[datetime] = None) -> Optional[int]:
        """
        Total records that a full extraction would return.

        Returns:
            The count, or None when the source cannot tell up front
        """
        return None

    def describe_fields(self, object_type: str) -> Tuple[List[str], List[str]]:
        """
        Field names of an object type and which of them are required.

        The default samples one batch and uses its keys; connectors with a
        metadata API override this.
        """
        batch = self.extract_batch(object_type, size=10)
        fields: List[str] = []
        for record in batch.records:
            for key in record.data:
                if key not in fields:
                    fields.append(key)
        return fields, []

    def validate_connection(self) -> bool:
        """Check that the source is reachable with the configured credentials."""
        return True

    def create_record(
        self,
        id: Any,
        object_type: str,
        data: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None
    ) -> SourceRecord:
        """Create a SourceRecord tagged with this connection."""
        meta = {"connection_id": self.connection_id}
        if metadata:
            meta.update(metadata)
        return SourceRecord(
            id=str(id),
            object_type=object_type,
            data=data,
            metadata=meta,
        )
