"""Schema lookup endpoints."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException

from ...exceptions import UnknownObjectTypeError
from ...orchestrator import MigrationOrchestrator
from ..dependencies import get_orchestrator
from ..models import SchemaResponse

router = APIRouter()


@router.get("/{connection_id}/{object_type}", response_model=SchemaResponse)
async def get_schema(
    connection_id: str,
    object_type: str,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """Field list of an object type, from the connected system or the fallback table."""
    if connection_id not in orchestrator.connections:
        raise HTTPException(status_code=404, detail="Connection not found")
    try:
        result = await asyncio.to_thread(orchestrator.schema_resolver.get_schema, connection_id, object_type)
    except UnknownObjectTypeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SchemaResponse(connection_id=connection_id, **result.to_dict())
