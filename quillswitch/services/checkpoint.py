"""Gap-free resumption cursors for batches that finish out of order."""

import threading
from typing import Dict, Optional


class CheckpointTracker:
    """
    Tracks which batches of one object type are done.

    Batches are numbered in the order they were extracted. The committed
    cursor only moves past a batch once that batch and every batch before it
    have been processed, so resuming from it never skips records.
    """

    def __init__(self, start_cursor: Optional[str] = None):
        self._lock = threading.Lock()
        self.committed_cursor = start_cursor
        self._next_sequence = 0
        self._next_to_commit = 0
        self._completed: Dict[int, Optional[str]] = {}

    def assign(self) -> int:
        """Number the next batch handed to the loader."""
        with self._lock:
            sequence = self._next_sequence
            self._next_sequence += 1
            return sequence

    def complete(self, sequence: int, next_cursor: Optional[str]) -> bool:
        """
        Mark a batch processed.

        Args:
            sequence: Batch number from ``assign``
            next_cursor: Cursor that follows this batch

        Returns:
            True if ``committed_cursor`` advanced and should be persisted
        """
        with self._lock:
            if sequence < self._next_to_commit or sequence >= self._next_sequence:
                raise ValueError(f"Batch {sequence} is not outstanding")
            self._completed[sequence] = next_cursor

            advanced = False
            while self._next_to_commit in self._completed:
                self.committed_cursor = self._completed.pop(self._next_to_commit)
                self._next_to_commit += 1
                advanced = True
            return advanced

    @property
    def outstanding(self) -> int:
        """Batches assigned but not yet committed."""
        with self._lock:
            return self._next_sequence - self._next_to_commit
