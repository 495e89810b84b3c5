"""Field mapping suggestion and replacement endpoints."""

import asyncio
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ...exceptions import MappingLockedError, MappingValidationError
from ...orchestrator import MigrationOrchestrator
from ..dependencies import get_orchestrator
from ..models import (
    FieldMappingResponse,
    MappingReplaceRequest,
    MappingSuggestRequest,
    SuggestResponse,
)

router = APIRouter()


def _check_object_type(orchestrator: MigrationOrchestrator, object_type_id: str) -> None:
    try:
        orchestrator.store.get_object_type(object_type_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Object type not found")


@router.post("/suggest", response_model=SuggestResponse)
async def suggest_mappings(data: MappingSuggestRequest, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Suggest source to destination field mappings with confidence scores."""
    result = await asyncio.to_thread(
        orchestrator.field_mapper.suggest_mappings,
        data.source_fields,
        data.destination_fields,
        data.required_fields,
        object_type=data.object_type,
    )
    return result.to_dict()


@router.get("/{object_type_id}", response_model=List[FieldMappingResponse])
async def get_mappings(object_type_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Current mappings of an object type."""
    _check_object_type(orchestrator, object_type_id)
    return [m.to_dict() for m in orchestrator.store.get_field_mappings(object_type_id)]


@router.put("/{object_type_id}", response_model=List[FieldMappingResponse])
async def replace_mappings(
    object_type_id: str,
    data: MappingReplaceRequest,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Replace every mapping of an object type in one step."""
    _check_object_type(orchestrator, object_type_id)
    try:
        mappings = orchestrator.apply_mappings(
            object_type_id,
            [m.to_suggestion() for m in data.field_mappings],
            min_confidence=data.min_confidence,
        )
    except MappingLockedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except MappingValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [m.to_dict() for m in mappings]
