"""Exception taxonomy used across the migration pipeline."""

from typing import Optional


class QuillSwitchError(Exception):
    """Base class for all migration engine errors."""


class ConnectorError(QuillSwitchError):
    """A source or destination system call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ConnectorError):
    """Credentials were rejected (expired token, revoked access)."""


class RateLimitError(ConnectorError):
    """The remote system asked us to slow down."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        status_code: Optional[int] = 429,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class TransientNetworkError(ConnectorError):
    """Timeouts, dropped connections and 5xx responses."""


class RecordValidationError(ConnectorError):
    """A single record was rejected by the destination."""

    def __init__(
        self,
        message: str,
        record_id: Optional[str] = None,
        field: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, status_code)
        self.record_id = record_id
        self.field = field


class DuplicateRecordError(RecordValidationError):
    """The destination already holds a record with the same key."""


class UnrecoverableProjectError(QuillSwitchError):
    """A failure that must stop the whole project."""


class UnknownObjectTypeError(QuillSwitchError):
    """No schema is known for the requested object type."""


class MappingValidationError(QuillSwitchError):
    """A set of field mappings violates a mapping invariant."""


class MappingLockedError(QuillSwitchError):
    """Mappings cannot change while their project is running."""


class InvalidTransitionError(QuillSwitchError):
    """A project or object type status change is not allowed."""


class ProjectNotFoundError(QuillSwitchError):
    """No project exists with the given id."""
