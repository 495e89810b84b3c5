"""Failure classification, retry with backoff, and the error monitor."""

import asyncio
import logging
import random
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import requests

from ..exceptions import (
    AuthenticationError,
    ConnectorError,
    DuplicateRecordError,
    RateLimitError,
    RecordValidationError,
    TransientNetworkError,
    UnrecoverableProjectError,
)
from ..models.error import ErrorType, MigrationError, Severity
from ..models.migration import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorListener = Callable[[str, MigrationError], None]


@dataclass
class Classification:
    """How a failure should be treated."""
    type: ErrorType
    severity: Severity
    retryable: bool
    remediation: str


@dataclass
class ErrorContext:
    """Where a failure happened."""
    project_id: str
    object_type_id: Optional[str] = None
    record_id: Optional[str] = None
    batch_sequence: Optional[int] = None
    operation: str = "operation"

    def dedupe_key(self) -> str:
        return f"{self.project_id}:{self.object_type_id}:{self.batch_sequence}:{self.record_id}:{self.operation}"


class RetryOutcome(str, Enum):
    """Result of a manual retry from the error monitor."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_RETRYABLE = "not_retryable"
    NOT_FOUND = "not_found"
    ALREADY_RESOLVED = "already_resolved"


CLASSIFICATIONS: Dict[ErrorType, Classification] = {
    ErrorType.AUTH_FAILURE: Classification(
        ErrorType.AUTH_FAILURE, Severity.CRITICAL, False,
        "Authentication failed. Reconnect the CRM connection or refresh its access token.",
    ),
    ErrorType.RATE_LIMITED: Classification(
        ErrorType.RATE_LIMITED, Severity.MEDIUM, True,
        "API rate limit reached. The system will retry after a delay; lower concurrent batches if it persists.",
    ),
    ErrorType.VALIDATION_ERROR: Classification(
        ErrorType.VALIDATION_ERROR, Severity.HIGH, False,
        "Data validation failed. Check the field mappings and map every required field.",
    ),
    ErrorType.DUPLICATE_RECORD: Classification(
        ErrorType.DUPLICATE_RECORD, Severity.LOW, False,
        "Record already exists in the destination system. Check the duplicate key or enable upserts.",
    ),
    ErrorType.TRANSIENT_NETWORK: Classification(
        ErrorType.TRANSIENT_NETWORK, Severity.MEDIUM, True,
        "Network connectivity issue. The system retries automatically.",
    ),
    ErrorType.UNRECOVERABLE_PROJECT_ERROR: Classification(
        ErrorType.UNRECOVERABLE_PROJECT_ERROR, Severity.CRITICAL, False,
        "The migration cannot continue. Review the error and start a new run once it is fixed.",
    ),
    ErrorType.UNKNOWN: Classification(
        ErrorType.UNKNOWN, Severity.MEDIUM, True,
        "An unexpected error occurred. The system retries once before giving up.",
    ),
}


def _classify_message(message: str) -> ErrorType:
    """Best-effort classification of untyped errors from their message."""
    message = message.lower()
    if "rate limit" in message or "429" in message:
        return ErrorType.RATE_LIMITED
    if any(k in message for k in ("unauthorized", "401", "403", "permission", "access denied", "expired token")):
        return ErrorType.AUTH_FAILURE
    if any(k in message for k in ("network", "timeout", "timed out", "econnreset", "connection reset")):
        return ErrorType.TRANSIENT_NETWORK
    if "duplicate" in message or "already exists" in message:
        return ErrorType.DUPLICATE_RECORD
    if any(k in message for k in ("validation", "invalid", "required")):
        return ErrorType.VALIDATION_ERROR
    return ErrorType.UNKNOWN


class ErrorHandler:
    """
    Classifies failures, retries what can be retried, and records the rest.

    Each logical failure is stored once: repeated attempts of the same
    operation update the existing MigrationError rather than adding new ones.
    """

    def __init__(
        self,
        store,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Initialize the error handler.

        Args:
            store: MigrationStore persisting MigrationError records
            retry_config: Default retry budget and backoff curve
            sleep: Coroutine used for backoff delays
        """
        self.store = store
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._error_ids_by_key: Dict[str, str] = {}
        self._retry_actions: Dict[str, Callable[[], Awaitable[Optional[bool]]]] = {}
        self._listeners: List[ErrorListener] = []

    def add_listener(self, listener: ErrorListener) -> None:
        """Register a callback receiving ``(event, error)`` pairs."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ErrorListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: str, error: MigrationError) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, error)
            except Exception:
                logger.exception(f"Error listener failed on {event} for {error.id}")

    def classify(self, exc: BaseException) -> Classification:
        """
        Classify an exception.

        Args:
            exc: The failure

        Returns:
            Classification with type, severity, retryability and remediation
        """
        if isinstance(exc, AuthenticationError):
            error_type = ErrorType.AUTH_FAILURE
        elif isinstance(exc, RateLimitError):
            error_type = ErrorType.RATE_LIMITED
        elif isinstance(exc, DuplicateRecordError):
            error_type = ErrorType.DUPLICATE_RECORD
        elif isinstance(exc, RecordValidationError):
            error_type = ErrorType.VALIDATION_ERROR
        elif isinstance(exc, TransientNetworkError):
            error_type = ErrorType.TRANSIENT_NETWORK
        elif isinstance(exc, UnrecoverableProjectError):
            error_type = ErrorType.UNRECOVERABLE_PROJECT_ERROR
        elif isinstance(exc, (requests.Timeout, requests.ConnectionError, asyncio.TimeoutError, ConnectionError)):
            error_type = ErrorType.TRANSIENT_NETWORK
        elif isinstance(exc, ConnectorError) and exc.status_code:
            if exc.status_code in (401, 403):
                error_type = ErrorType.AUTH_FAILURE
            elif exc.status_code == 429:
                error_type = ErrorType.RATE_LIMITED
            elif exc.status_code >= 500:
                error_type = ErrorType.TRANSIENT_NETWORK
            elif exc.status_code == 409:
                error_type = ErrorType.DUPLICATE_RECORD
            elif exc.status_code in (400, 422):
                error_type = ErrorType.VALIDATION_ERROR
            else:
                error_type = _classify_message(str(exc))
        else:
            error_type = _classify_message(str(exc))

        return CLASSIFICATIONS[error_type]

    def max_attempts_for(self, classification: Classification) -> int:
        """Total attempts allowed for a classified failure (first try included)."""
        if not classification.retryable:
            return 1
        return self.retry_config.attempts_for(classification.type.value)

    def backoff_delay(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        """Delay before retrying after failed attempt number ``attempt``."""
        delay = self.retry_config.delay_for(attempt)
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            delay = min(max(delay, float(retry_after)), self.retry_config.max_delay)
        if self.retry_config.jitter:
            delay += random.uniform(0, self.retry_config.jitter)
        return delay

    def record_error(self, error: MigrationError) -> MigrationError:
        """Persist a MigrationError and notify listeners."""
        self.store.save_error(error)
        log = logger.error if error.terminal or not error.retryable else logger.warning
        log(f"[{error.type.value}/{error.severity.value}] {error.message} (project {error.project_id})")
        self._emit("error_recorded", error)
        return error

    def record_failure(
        self,
        exc: BaseException,
        context: ErrorContext,
        dedupe_key: Optional[str] = None,
        attempts: int = 1,
        terminal: Optional[bool] = None,
        classification: Optional[Classification] = None
    ) -> MigrationError:
        """
        Record a failure, once per logical failure.

        Args:
            exc: The failure
            context: Where it happened
            dedupe_key: Identity of the logical failure; later calls with the
                same key update the stored record instead of adding one
            attempts: Attempts made so far
            terminal: Whether retries are exhausted (defaults to not retryable)
            classification: Precomputed classification

        Returns:
            The stored MigrationError
        """
        classification = classification or self.classify(exc)
        if terminal is None:
            terminal = not classification.retryable
        key = dedupe_key or context.dedupe_key()
        record_id = context.record_id or getattr(exc, "record_id", None)

        with self._lock:
            existing_id = self._error_ids_by_key.get(key)
            existing = self.store.get_error(existing_id) if existing_id else None
            if existing is not None and not existing.resolved:
                existing.attempts = max(existing.attempts, attempts)
                existing.message = str(exc) or existing.message
                existing.terminal = terminal
                self.store.save_error(existing)
                updated = existing
            else:
                updated = None
                error = MigrationError(
                    project_id=context.project_id,
                    object_type_id=context.object_type_id,
                    record_id=record_id,
                    batch_sequence=context.batch_sequence,
                    type=classification.type,
                    severity=classification.severity,
                    message=str(exc) or exc.__class__.__name__,
                    retryable=classification.retryable,
                    suggested_remediation=classification.remediation,
                    attempts=attempts,
                    terminal=terminal,
                )
                self._error_ids_by_key[key] = error.id

        if updated is not None:
            if terminal:
                logger.error(f"Giving up on {context.operation} after {attempts} attempts: {exc}")
            self._emit("error_updated", updated)
            return updated
        return self.record_error(error)

    def error_for_key(self, dedupe_key: str) -> Optional[MigrationError]:
        """The error recorded under a dedupe key, if any."""
        with self._lock:
            error_id = self._error_ids_by_key.get(dedupe_key)
        return self.store.get_error(error_id) if error_id else None

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: ErrorContext,
        dedupe_key: Optional[str] = None
    ) -> T:
        """
        Run an async operation, retrying retryable failures with backoff.

        Args:
            operation: Zero-argument coroutine factory
            context: Where the operation runs, for error records
            dedupe_key: Identity of the logical operation

        Returns:
            The operation's result

        Raises:
            The last exception once retries are exhausted or the failure is
            not retryable; it is recorded as terminal first.
        """
        key = dedupe_key or context.dedupe_key()
        error: Optional[MigrationError] = None
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await operation()
            except Exception as exc:
                classification = self.classify(exc)
                exhausted = attempt >= self.max_attempts_for(classification)
                error = self.record_failure(
                    exc, context,
                    dedupe_key=key,
                    attempts=attempt,
                    terminal=exhausted,
                    classification=classification,
                )
                if exhausted:
                    raise
                delay = self.backoff_delay(attempt, exc)
                logger.warning(
                    f"{context.operation} failed (attempt {attempt}, {classification.type.value}), "
                    f"retrying in {delay:.2f}s: {exc}"
                )
                await self._sleep(delay)
                continue

            if error is not None:
                self.mark_resolved(error.id, f"recovered after {attempt} attempts")
            return result

    def register_retry_action(
        self,
        error_id: str,
        action: Callable[[], Awaitable[Optional[bool]]]
    ) -> None:
        """Attach the coroutine factory that re-runs the work behind an error."""
        self._retry_actions[error_id] = action

    def mark_resolved(self, error_id: str, notes: str = "") -> Optional[MigrationError]:
        """Mark an error resolved."""
        error = self.store.get_error(error_id)
        if error is None:
            return None
        error.resolved = True
        error.resolution_notes = notes
        self.store.save_error(error)
        self._retry_actions.pop(error_id, None)
        logger.info(f"Error {error_id} resolved: {notes}")
        self._emit("error_resolved", error)
        return error

    async def retry(self, error_id: str) -> RetryOutcome:
        """
        Manually retry the work behind a recorded error.

        Args:
            error_id: MigrationError id

        Returns:
            RetryOutcome
        """
        error = self.store.get_error(error_id)
        if error is None:
            return RetryOutcome.NOT_FOUND
        if error.resolved:
            return RetryOutcome.ALREADY_RESOLVED
        if not error.retryable:
            return RetryOutcome.NOT_RETRYABLE

        action = self._retry_actions.get(error_id)
        if action is None:
            logger.warning(f"No retry action registered for error {error_id}")
            return RetryOutcome.NOT_RETRYABLE

        try:
            succeeded = await action()
        except Exception as exc:
            error.attempts += 1
            error.message = str(exc) or error.message
            self.store.save_error(error)
            logger.error(f"Manual retry of error {error_id} failed: {exc}")
            self._emit("error_updated", error)
            return RetryOutcome.FAILED

        if succeeded is False:
            error.attempts += 1
            self.store.save_error(error)
            return RetryOutcome.FAILED

        self.mark_resolved(error_id, "resolved by manual retry")
        return RetryOutcome.SUCCEEDED

    def errors_for_monitor(self, project_id: str) -> Dict[str, Any]:
        """
        Unresolved errors of a project grouped for the operator monitor.

        Returns:
            Dict with ``total``, ``by_type`` (type -> error dicts) and
            ``by_severity`` (severity -> count)
        """
        errors = [e for e in self.store.list_errors(project_id) if not e.resolved]
        by_type: Dict[str, List[Dict[str, Any]]] = {}
        by_severity: Dict[str, int] = {}
        for error in sorted(errors, key=lambda e: e.timestamp, reverse=True):
            by_type.setdefault(error.type.value, []).append(error.to_dict())
            by_severity[error.severity.value] = by_severity.get(error.severity.value, 0) + 1

        return {
            "project_id": project_id,
            "total": len(errors),
            "by_type": by_type,
            "by_severity": by_severity,
        }
