"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum

from ..models.mapping import MappingSuggestion
from ..models.migration import (
    BatchConfig,
    MigrationRequest,
    ObjectTypeRequest,
    RetryConfig,
    ScheduleConfig,
)
from ..models.project import MigrationStrategy


class StrategyEnum(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    PARALLEL = "parallel"


class ScheduleTypeEnum(str, Enum):
    IMMEDIATE = "immediate"
    RECURRING = "recurring"


# Request Models
class FieldMappingCreate(BaseModel):
    source_field: str
    destination_field: str
    transformation_rule: Optional[str] = None
    is_required: bool = False
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    def to_suggestion(self) -> MappingSuggestion:
        return MappingSuggestion(
            source_field=self.source_field,
            destination_field=self.destination_field,
            confidence=self.confidence,
            is_required=self.is_required,
            transformation_rule=self.transformation_rule,
        )


class ObjectTypeCreate(BaseModel):
    name: str
    description: str = ""
    auto_map: bool = True
    field_mappings: List[FieldMappingCreate] = Field(default_factory=list)


class BatchConfigCreate(BaseModel):
    batch_size: int = Field(default=100, ge=1)
    concurrent_batches: int = Field(default=3, ge=1)
    enable_streaming: bool = False
    enable_advanced_concurrency: bool = False
    max_concurrent_batches: int = Field(default=20, ge=1)


class RetryConfigCreate(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    jitter: float = Field(default=0.0, ge=0.0)
    attempts_by_type: Dict[str, int] = Field(default_factory=dict)


class ScheduleCreate(BaseModel):
    type: ScheduleTypeEnum = ScheduleTypeEnum.IMMEDIATE
    cron: Optional[str] = None


class MigrationCreate(BaseModel):
    company_name: str
    source_connection_id: str
    destination_connection_id: str
    object_types: List[ObjectTypeCreate]
    strategy: StrategyEnum = StrategyEnum.FULL
    batch_config: BatchConfigCreate = Field(default_factory=BatchConfigCreate)
    retry_config: RetryConfigCreate = Field(default_factory=RetryConfigCreate)
    schedule: ScheduleCreate = Field(default_factory=ScheduleCreate)
    object_failure_threshold: float = Field(default=1.0, gt=0.0, le=1.0)
    owner_id: Optional[str] = None
    workspace_id: Optional[str] = None

    def to_request(self) -> MigrationRequest:
        """Convert to the engine's MigrationRequest."""
        retry_config = RetryConfig(
            max_attempts=self.retry_config.max_attempts,
            base_delay=self.retry_config.base_delay,
            backoff_multiplier=self.retry_config.backoff_multiplier,
            max_delay=self.retry_config.max_delay,
            jitter=self.retry_config.jitter,
        )
        retry_config.attempts_by_type.update(self.retry_config.attempts_by_type)
        return MigrationRequest(
            company_name=self.company_name,
            source_connection_id=self.source_connection_id,
            destination_connection_id=self.destination_connection_id,
            object_types=[
                ObjectTypeRequest(
                    name=o.name,
                    description=o.description,
                    auto_map=o.auto_map,
                    field_mappings=[m.to_suggestion() for m in o.field_mappings],
                )
                for o in self.object_types
            ],
            strategy=MigrationStrategy(self.strategy.value),
            batch_config=BatchConfig(**self.batch_config.model_dump()),
            retry_config=retry_config,
            schedule=ScheduleConfig(type=self.schedule.type.value, cron=self.schedule.cron),
            object_failure_threshold=self.object_failure_threshold,
            owner_id=self.owner_id,
            workspace_id=self.workspace_id,
        )


class MappingSuggestRequest(BaseModel):
    source_fields: List[str]
    destination_fields: List[str]
    required_fields: Optional[List[str]] = None
    object_type: Optional[str] = None


class MappingReplaceRequest(BaseModel):
    field_mappings: List[FieldMappingCreate]
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


# Response Models
class ObjectTypeResponse(BaseModel):
    id: str
    name: str
    status: str
    status_reason: str = ""
    total_records: int = 0
    processed_records: int = 0
    migrated_records: int = 0
    failed_records: int = 0


class MigrationResponse(BaseModel):
    id: str
    company_name: str
    source_system: str
    destination_system: str
    status: str
    strategy: str
    status_reason: str = ""
    total_objects: int = 0
    migrated_objects: int = 0
    failed_objects: int = 0
    owner_id: Optional[str] = None
    workspace_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_successful_run_at: Optional[str] = None
    next_run: Optional[str] = None
    object_types: List[ObjectTypeResponse] = Field(default_factory=list)


class MigrationListResponse(BaseModel):
    migrations: List[MigrationResponse]
    total: int


class FieldMappingResponse(BaseModel):
    id: str
    object_type_id: str
    source_field: str
    destination_field: str
    is_required: bool = False
    transformation_rule: Optional[str] = None
    confidence: Optional[float] = None


class MappingSuggestionResponse(BaseModel):
    source_field: str
    destination_field: str
    confidence: float
    reason: str = ""
    is_required: bool = False
    transformation_rule: Optional[str] = None


class SuggestResponse(BaseModel):
    suggestions: List[MappingSuggestionResponse]
    needs_manual_mapping: List[str] = Field(default_factory=list)
    provider: str = "heuristic"


class SchemaResponse(BaseModel):
    connection_id: str
    object_type: str
    fields: List[str]
    required: List[str] = Field(default_factory=list)
    source: str = "api"


class RetryResponse(BaseModel):
    error_id: str
    outcome: str


class ErrorMonitorResponse(BaseModel):
    project_id: str
    total: int
    by_type: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    by_severity: Dict[str, int] = Field(default_factory=dict)
