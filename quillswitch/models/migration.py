"""Migration run configuration models."""

import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .mapping import MappingSuggestion
from .project import MigrationStrategy


@dataclass(frozen=True)
class BatchConfig:
    """Batching and concurrency settings, fixed for the length of a run."""
    batch_size: int = 100
    concurrent_batches: int = 3
    enable_streaming: bool = False
    enable_advanced_concurrency: bool = False
    max_concurrent_batches: int = 20  # Hard ceiling for concurrent_batches

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.concurrent_batches < 1:
            raise ValueError("concurrent_batches must be at least 1")
        if self.max_concurrent_batches < 1:
            raise ValueError("max_concurrent_batches must be at least 1")

    @property
    def effective_concurrency(self) -> int:
        """Concurrent batches after applying the ceiling."""
        return min(self.concurrent_batches, self.max_concurrent_batches)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BatchConfig":
        """Create from dictionary representation."""
        data = data or {}
        return cls(
            batch_size=data.get("batch_size", 100),
            concurrent_batches=data.get("concurrent_batches", 3),
            enable_streaming=data.get("enable_streaming", False),
            enable_advanced_concurrency=data.get("enable_advanced_concurrency", False),
            max_concurrent_batches=data.get("max_concurrent_batches", 20),
        )


DEFAULT_BATCH_CONFIG = BatchConfig()

HIGH_PERFORMANCE_CONFIG = BatchConfig(
    batch_size=100,
    concurrent_batches=10,
    enable_streaming=True,
    enable_advanced_concurrency=True,
)

STANDARD_PERFORMANCE_CONFIG = BatchConfig(
    batch_size=50,
    concurrent_batches=5,
    enable_streaming=False,
    enable_advanced_concurrency=False,
)


@dataclass
class RetryConfig:
    """Retry budget and exponential backoff curve."""
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.0  # Upper bound of random seconds added to each delay
    attempts_by_type: Dict[str, int] = field(default_factory=lambda: {
        "rate_limited": 5,
        "unknown": 2,
    })

    def attempts_for(self, error_type: str) -> int:
        """Total attempts allowed for an error type (first try included)."""
        return max(1, self.attempts_by_type.get(error_type, self.max_attempts))

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry following failed attempt number ``attempt``."""
        delay = self.base_delay * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_delay)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryConfig":
        """Create from dictionary representation."""
        data = data or {}
        config = cls(
            max_attempts=data.get("max_attempts", 3),
            base_delay=data.get("base_delay", 1.0),
            backoff_multiplier=data.get("backoff_multiplier", 2.0),
            max_delay=data.get("max_delay", 30.0),
            jitter=data.get("jitter", 0.0),
        )
        config.attempts_by_type.update(data.get("attempts_by_type", {}))
        return config


@dataclass
class ConnectionConfig:
    """How to reach one source or destination system."""
    id: str
    service: str  # hubspot, salesforce, generic, memory
    base_url: Optional[str] = None
    access_token: Optional[str] = None
    rate_limit: Optional[float] = None  # requests per second
    timeout: float = 30.0
    max_retries: int = 3
    backoff_factor: float = 1.0
    object_endpoints: Dict[str, str] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (token omitted)."""
        return {
            "id": self.id,
            "service": self.service,
            "base_url": self.base_url,
            "rate_limit": self.rate_limit,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "backoff_factor": self.backoff_factor,
            "object_endpoints": self.object_endpoints,
            "options": self.options,
        }

    @classmethod
    def from_dict(cls, connection_id: str, data: Dict[str, Any]) -> "ConnectionConfig":
        """Create from a config entry; ``access_token_env`` names an env var holding the token."""
        access_token = data.get("access_token")
        if not access_token and data.get("access_token_env"):
            access_token = os.environ.get(data["access_token_env"])
        known = {
            "service", "base_url", "access_token", "access_token_env", "rate_limit",
            "timeout", "max_retries", "backoff_factor", "object_endpoints",
        }
        return cls(
            id=connection_id,
            service=data.get("service", "generic").lower(),
            base_url=data.get("base_url"),
            access_token=access_token,
            rate_limit=data.get("rate_limit"),
            timeout=data.get("timeout", 30.0),
            max_retries=data.get("max_retries", 3),
            backoff_factor=data.get("backoff_factor", 1.0),
            object_endpoints=data.get("object_endpoints", {}),
            options={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class ScheduleConfig:
    """When a migration runs: right away or on a cron schedule."""
    type: str = "immediate"  # immediate, recurring
    cron: Optional[str] = None  # e.g. "0 2 * * *"

    def __post_init__(self):
        if self.type not in ("immediate", "recurring"):
            raise ValueError(f"Unsupported schedule type: {self.type}")
        if self.type == "recurring" and not self.cron:
            raise ValueError("A recurring schedule needs a cron expression")

    @property
    def is_immediate(self) -> bool:
        return self.type == "immediate"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "cron": self.cron}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ScheduleConfig":
        data = data or {}
        return cls(type=data.get("type", "immediate"), cron=data.get("cron"))


@dataclass
class ObjectTypeRequest:
    """An object type to migrate, optionally with its field mappings."""
    name: str
    field_mappings: List[MappingSuggestion] = field(default_factory=list)
    auto_map: bool = True  # Suggest mappings when none are given
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "field_mappings": [m.to_dict() for m in self.field_mappings],
            "auto_map": self.auto_map,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectTypeRequest":
        return cls(
            name=data["name"],
            field_mappings=[MappingSuggestion.from_dict(m) for m in data.get("field_mappings", [])],
            auto_map=data.get("auto_map", True),
            description=data.get("description", ""),
        )


@dataclass
class MigrationRequest:
    """Everything needed to create and start a migration project."""
    company_name: str
    source_connection_id: str
    destination_connection_id: str
    object_types: List[ObjectTypeRequest] = field(default_factory=list)
    strategy: MigrationStrategy = MigrationStrategy.FULL
    batch_config: BatchConfig = field(default_factory=BatchConfig)
    retry_config: RetryConfig = field(default_factory=RetryConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    # Fraction of object types that must fail before the whole project fails
    object_failure_threshold: float = 1.0

    owner_id: Optional[str] = None
    workspace_id: Optional[str] = None

    def __post_init__(self):
        if not 0.0 < self.object_failure_threshold <= 1.0:
            raise ValueError("object_failure_threshold must be in (0, 1]")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "company_name": self.company_name,
            "source_connection_id": self.source_connection_id,
            "destination_connection_id": self.destination_connection_id,
            "object_types": [o.to_dict() for o in self.object_types],
            "strategy": self.strategy.value,
            "batch_config": self.batch_config.to_dict(),
            "retry_config": self.retry_config.to_dict(),
            "schedule": self.schedule.to_dict(),
            "object_failure_threshold": self.object_failure_threshold,
            "owner_id": self.owner_id,
            "workspace_id": self.workspace_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationRequest":
        """Create from dictionary representation."""
        return cls(
            company_name=data.get("company_name", ""),
            source_connection_id=data["source_connection_id"],
            destination_connection_id=data["destination_connection_id"],
            object_types=[ObjectTypeRequest.from_dict(o) for o in data.get("object_types", [])],
            strategy=MigrationStrategy(data.get("strategy", "full")),
            batch_config=BatchConfig.from_dict(data.get("batch_config")),
            retry_config=RetryConfig.from_dict(data.get("retry_config")),
            schedule=ScheduleConfig.from_dict(data.get("schedule")),
            object_failure_threshold=data.get("object_failure_threshold", 1.0),
            owner_id=data.get("owner_id"),
            workspace_id=data.get("workspace_id"),
        )


@dataclass
class MigrationConfig:
    """File-based configuration for the CLI: connections plus one request."""
    name: str
    request: MigrationRequest
    connections: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    state_file: Optional[str] = None

    # AI mapping
    use_ai_mapping: bool = False
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o"
    llm_api_key: Optional[str] = None

    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (secrets omitted)."""
        connections = {
            conn_id: {k: v for k, v in conn.items() if k not in ("access_token", "api_key")}
            for conn_id, conn in self.connections.items()
        }
        return {
            "name": self.name,
            "request": self.request.to_dict(),
            "connections": connections,
            "state_file": self.state_file,
            "use_ai_mapping": self.use_ai_mapping,
            "llm_provider": self.llm_provider,
            "llm_model": self.llm_model,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create from dictionary representation."""
        return cls(
            name=data.get("name", ""),
            request=MigrationRequest.from_dict(data["request"]),
            connections=data.get("connections", {}),
            state_file=data.get("state_file"),
            use_ai_mapping=data.get("use_ai_mapping", False),
            llm_provider=data.get("llm_provider", "openai"),
            llm_model=data.get("llm_model", "gpt-4o"),
            llm_api_key=data.get("llm_api_key"),
            dry_run=data.get("dry_run", False),
        )
