"""Data models for the migration engine."""

from .project import (
    MigrationProject,
    ObjectType,
    ProjectStatus,
    ObjectTypeStatus,
    MigrationStrategy,
)
from .mapping import (
    FieldMapping,
    MappingSuggestion,
    SuggestionResult,
)
from .migration import (
    BatchConfig,
    RetryConfig,
    ConnectionConfig,
    ScheduleConfig,
    ObjectTypeRequest,
    MigrationRequest,
    MigrationConfig,
    DEFAULT_BATCH_CONFIG,
    HIGH_PERFORMANCE_CONFIG,
    STANDARD_PERFORMANCE_CONFIG,
)
from .record import (
    SourceRecord,
    TransformedRecord,
    ValidationError,
)
from .error import (
    MigrationError,
    ErrorType,
    Severity,
)

__all__ = [
    "MigrationProject",
    "ObjectType",
    "ProjectStatus",
    "ObjectTypeStatus",
    "MigrationStrategy",
    "FieldMapping",
    "MappingSuggestion",
    "SuggestionResult",
    "BatchConfig",
    "RetryConfig",
    "ConnectionConfig",
    "ScheduleConfig",
    "ObjectTypeRequest",
    "MigrationRequest",
    "MigrationConfig",
    "DEFAULT_BATCH_CONFIG",
    "HIGH_PERFORMANCE_CONFIG",
    "STANDARD_PERFORMANCE_CONFIG",
    "SourceRecord",
    "TransformedRecord",
    "ValidationError",
    "MigrationError",
    "ErrorType",
    "Severity",
]
