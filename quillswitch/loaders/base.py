"""Base loader interface for destination systems."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime
import logging

from ..exceptions import DuplicateRecordError, RecordValidationError
from ..models.mapping import FieldMapping
from ..models.project import utcnow
from ..models.record import SourceRecord, TransformedRecord
from ..services.transformer import TransformEngine

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    """Outcome of loading one batch."""
    object_type: str
    succeeded: List[str] = field(default_factory=list)  # source record ids
    failed: List[Dict[str, Any]] = field(default_factory=list)  # {id, error, error_type, exception}
    created_ids: List[str] = field(default_factory=list)  # destination ids
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success_rate(self) -> float:
        if self.total_attempted == 0:
            return 0.0
        return len(self.succeeded) / self.total_attempted

    def add_failure(self, record_id: str, exc: Exception) -> None:
        error_type = "duplicate_record" if isinstance(exc, DuplicateRecordError) else "validation_error"
        self.failed.append({
            "id": record_id,
            "error": str(exc),
            "error_type": error_type,
            "exception": exc,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "total_attempted": self.total_attempted,
            "succeeded": self.succeeded,
            "failed": [
                {k: v for k, v in f.items() if k != "exception"} for f in self.failed
            ],
            "created_ids": self.created_ids,
            "success_rate": self.success_rate,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


class BaseLoader(ABC):
    """
    Base class for destination connectors.

    ``load_batch`` transforms records with the object type's mappings and
    writes them one by one. Per-record rejections (validation failures,
    duplicates) are reported in the LoadResult; anything else (auth, rate
    limit, network, 5xx) propagates and fails the batch as a whole.
    Loaders upsert, so loading the same record twice is harmless.
    """

    def __init__(
        self,
        connection_id: str,
        dry_run: bool = False,
        transform_engine: Optional[TransformEngine] = None
    ):
        """
        Initialize the loader.

        Args:
            connection_id: Opaque id of the destination connection
            dry_run: If True, transform and validate without writing
            transform_engine: Engine used to apply mapping rules
        """
        self.connection_id = connection_id
        self.dry_run = dry_run
        self.transform_engine = transform_engine or TransformEngine()

    @abstractmethod
    def load_record(self, object_type: str, record: TransformedRecord, upsert: bool = True) -> str:
        """
        Write a single record to the destination.

        Args:
            object_type: Object type name
            record: Transformed record to load
            upsert: If True, update when it already exists

        Returns:
            The destination id of the record

        Raises:
            RecordValidationError: The destination rejected this record
            ConnectorError: Any failure that affects the whole batch
        """
        pass

    def load_batch(
        self,
        object_type: str,
        records: List[SourceRecord],
        mappings: List[FieldMapping],
        upsert: bool = True
    ) -> LoadResult:
        """
        Transform and load a batch of records.

        Args:
            object_type: Object type name
            records: Source records of the batch
            mappings: Field mappings of the object type
            upsert: If True, update records that already exist

        Returns:
            LoadResult with succeeded ids and per-record failures
        """
        result = LoadResult(object_type=object_type)
        result.started_at = utcnow()

        for record in records:
            transformed = self.transform_engine.transform_record(record, mappings)
            if not transformed.is_valid:
                result.add_failure(
                    record.id,
                    RecordValidationError(transformed.error_summary, record_id=record.id),
                )
                continue

            if self.dry_run:
                result.succeeded.append(record.id)
                continue

            try:
                destination_id = self.load_record(object_type, transformed, upsert)
            except RecordValidationError as e:
                if e.record_id is None:
                    e.record_id = record.id
                result.add_failure(record.id, e)
                logger.warning(f"Record {record.id} rejected by {self.connection_id}: {e}")
                continue

            result.succeeded.append(record.id)
            result.created_ids.append(destination_id)

        result.completed_at = utcnow()
        logger.debug(
            f"Loaded {len(result.succeeded)}/{len(records)} {object_type} records into {self.connection_id}"
        )
        return result

    def describe_fields(self, object_type: str) -> Tuple[List[str], List[str]]:
        """
        Field names the destination accepts and which are required.

        Raises:
            NotImplementedError: If the destination has no metadata API
        """
        raise NotImplementedError(f"{type(self).__name__} cannot describe {object_type}")

    def validate_connection(self) -> bool:
        """Check that the destination is reachable with the configured credentials."""
        return True
