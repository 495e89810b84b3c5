"""In-memory source system used for dry runs, demos and tests."""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from dateutil import parser as date_parser

from .base import BaseExtractor, ExtractedBatch
from ..exceptions import UnknownObjectTypeError

logger = logging.getLogger(__name__)

# Called before each batch is read: (object_type, cursor, call_number).
# It may raise to simulate a failing source or trigger side effects.
ExtractHook = Callable[[str, Optional[str], int], None]


class MemoryExtractor(BaseExtractor):
    """
    Serves records from dictionaries held in memory.

    Cursors are stringified offsets, so a batch always hands back a
    ``next_cursor`` even when it is the last one.
    """

    def __init__(
        self,
        connection_id: str,
        data: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        schemas: Optional[Dict[str, Tuple[List[str], List[str]]]] = None,
        id_field: str = "id",
        updated_field: str = "updated_at",
        before_extract: Optional[ExtractHook] = None
    ):
        """
        Initialize the extractor.

        Args:
            connection_id: Connection id
            data: Records per object type name
            schemas: Optional (fields, required) per object type; otherwise
                fields are inferred from the records
            id_field: Key holding each record's id
            updated_field: Key holding the last-modified timestamp
            before_extract: Failure injection hook
        """
        super().__init__(connection_id)
        self.data = {k.lower(): list(v) for k, v in (data or {}).items()}
        self.schemas = {k.lower(): v for k, v in (schemas or {}).items()}
        self.id_field = id_field
        self.updated_field = updated_field
        self.before_extract = before_extract
        self.calls = 0
        self._lock = threading.Lock()

    def add_records(self, object_type: str, records: List[Dict[str, Any]]) -> None:
        """Append records to an object type, creating it if needed."""
        with self._lock:
            self.data.setdefault(object_type.lower(), []).extend(records)

    def _rows(self, object_type: str, since: Optional[datetime]) -> List[Dict[str, Any]]:
        key = object_type.lower()
        if key not in self.data:
            raise UnknownObjectTypeError(f"Source {self.connection_id} has no object type {object_type}")
        rows = self.data[key]
        if since is None:
            return rows
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return [row for row in rows if self._modified_at(row) is None or self._modified_at(row) >= since]

    def _modified_at(self, row: Dict[str, Any]) -> Optional[datetime]:
        value = row.get(self.updated_field)
        if value is None:
            return None
        if not isinstance(value, datetime):
            value = date_parser.parse(str(value))
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def extract_batch(
        self,
        object_type: str,
        cursor: Optional[str] = None,
        size: int = 100,
        since: Optional[datetime] = None
    ) -> ExtractedBatch:
        with self._lock:
            self.calls += 1
            call_number = self.calls
        if self.before_extract:
            self.before_extract(object_type, cursor, call_number)

        rows = self._rows(object_type, since)
        offset = int(cursor) if cursor else 0
        page = rows[offset:offset + size]
        records = [
            self.create_record(id=row.get(self.id_field, offset + i), object_type=object_type, data=dict(row))
            for i, row in enumerate(page)
        ]
        next_offset = offset + len(page)
        return ExtractedBatch(
            records=records,
            next_cursor=str(next_offset),
            has_more=next_offset < len(rows),
        )

    def count_records(self, object_type: str, since: Optional[datetime] = None) -> Optional[int]:
        return len(self._rows(object_type, since))

    def describe_fields(self, object_type: str) -> Tuple[List[str], List[str]]:
        key = object_type.lower()
        if key in self.schemas:
            fields, required = self.schemas[key]
            return list(fields), list(required)
        fields: List[str] = []
        for row in self._rows(object_type, None):
            for name in row:
                if name not in fields:
                    fields.append(name)
        return fields, []
