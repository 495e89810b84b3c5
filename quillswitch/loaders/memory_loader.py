"""In-memory destination system used for dry runs, demos and tests."""

import logging
import threading
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple

from .base import BaseLoader, LoadResult
from ..exceptions import DuplicateRecordError, RecordValidationError
from ..models.mapping import FieldMapping
from ..models.record import SourceRecord, TransformedRecord
from ..services.transformer import TransformEngine

logger = logging.getLogger(__name__)

# Called before a batch is written: (object_type, records, call_number).
# Raise from it to fail the whole batch.
LoadHook = Callable[[str, List[SourceRecord], int], None]


class MemoryLoader(BaseLoader):
    """
    Keeps loaded records in dictionaries keyed by source record id.

    Writes are upserts, so reloading a record overwrites it. ``load_counts``
    tracks how many times each record was written, which lets tests verify
    that nothing is processed twice.
    """

    def __init__(
        self,
        connection_id: str,
        schemas: Optional[Dict[str, Tuple[List[str], List[str]]]] = None,
        reject: Optional[Dict[str, str]] = None,
        duplicates: Optional[List[str]] = None,
        before_load: Optional[LoadHook] = None,
        dry_run: bool = False,
        transform_engine: Optional[TransformEngine] = None
    ):
        """
        Initialize the loader.

        Args:
            connection_id: Connection id
            schemas: Optional (fields, required) per object type
            reject: Source record ids the destination rejects, with the reason
            duplicates: Source record ids reported as duplicates
            before_load: Batch-level failure injection hook
            dry_run: If True, transform and validate without writing
            transform_engine: Engine used to apply mapping rules
        """
        super().__init__(connection_id, dry_run, transform_engine)
        self.schemas = {k.lower(): v for k, v in (schemas or {}).items()}
        self.reject = dict(reject or {})
        self.duplicates = set(duplicates or [])
        self.before_load = before_load
        self.records: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.load_counts: Counter = Counter()
        self.batch_calls = 0
        self._lock = threading.Lock()

    def load_batch(
        self,
        object_type: str,
        records: List[SourceRecord],
        mappings: List[FieldMapping],
        upsert: bool = True
    ) -> LoadResult:
        with self._lock:
            self.batch_calls += 1
            call_number = self.batch_calls
        if self.before_load:
            self.before_load(object_type, records, call_number)
        return super().load_batch(object_type, records, mappings, upsert)

    def load_record(self, object_type: str, record: TransformedRecord, upsert: bool = True) -> str:
        if record.id in self.reject:
            raise RecordValidationError(self.reject[record.id], record_id=record.id, status_code=422)
        if record.id in self.duplicates:
            raise DuplicateRecordError(f"Duplicate {object_type} {record.id}", record_id=record.id, status_code=409)

        with self._lock:
            bucket = self.records.setdefault(object_type.lower(), {})
            if record.id in bucket and not upsert:
                raise DuplicateRecordError(f"{object_type} {record.id} already loaded", record_id=record.id)
            bucket[record.id] = dict(record.data)
            self.load_counts[(object_type.lower(), record.id)] += 1
        return f"mem-{record.id}"

    def loaded(self, object_type: str) -> Dict[str, Dict[str, Any]]:
        """Records written for an object type, keyed by source id."""
        with self._lock:
            return dict(self.records.get(object_type.lower(), {}))

    def describe_fields(self, object_type: str) -> Tuple[List[str], List[str]]:
        key = object_type.lower()
        if key not in self.schemas:
            return super().describe_fields(object_type)
        fields, required = self.schemas[key]
        return list(fields), list(required)
