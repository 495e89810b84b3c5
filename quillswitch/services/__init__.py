"""Service layer for the migration pipeline.

``connections`` and ``scheduler`` are imported by their module path; they
depend on the connector packages, which in turn depend on this package.
"""

from .checkpoint import CheckpointTracker
from .concurrency import BatchPool, CancellationToken, TaskOutcome, run_concurrent
from .error_handler import Classification, ErrorContext, ErrorHandler, RetryOutcome
from .field_mapper import FieldMapper
from .llm_inference import LLMMappingAdvisor
from .progress import ProgressSnapshot, ProgressTracker
from .schema_resolver import SchemaResolver, SchemaResult
from .transformer import TransformEngine

__all__ = [
    "CheckpointTracker",
    "BatchPool",
    "CancellationToken",
    "TaskOutcome",
    "run_concurrent",
    "Classification",
    "ErrorContext",
    "ErrorHandler",
    "RetryOutcome",
    "FieldMapper",
    "LLMMappingAdvisor",
    "ProgressSnapshot",
    "ProgressTracker",
    "SchemaResolver",
    "SchemaResult",
    "TransformEngine",
]
