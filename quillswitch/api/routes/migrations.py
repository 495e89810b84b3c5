"""Migration project lifecycle, progress and error monitor endpoints."""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from ...exceptions import InvalidTransitionError, MappingValidationError, ProjectNotFoundError
from ...models.project import MigrationProject
from ...orchestrator import MigrationOrchestrator
from ..dependencies import get_orchestrator
from ..models import (
    ErrorMonitorResponse,
    MigrationCreate,
    MigrationListResponse,
    MigrationResponse,
    ObjectTypeResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Seconds between keep-alive comments on an idle event stream
EVENT_KEEPALIVE = 15.0


def project_response(orchestrator: MigrationOrchestrator, project: MigrationProject) -> MigrationResponse:
    """Build the API view of a project and its object types."""
    data = project.to_dict()
    data.pop("metadata")
    object_types = orchestrator.store.list_object_types(project.id)
    return MigrationResponse(
        **data,
        next_run=project.metadata.get("next_run"),
        object_types=[ObjectTypeResponse(**o.to_dict()) for o in object_types],
    )


def _get_project(orchestrator: MigrationOrchestrator, project_id: str) -> MigrationProject:
    try:
        return orchestrator.store.get_project(project_id)
    except ProjectNotFoundError:
        raise HTTPException(status_code=404, detail="Migration not found")


@router.post("", response_model=MigrationResponse)
async def create_migration(data: MigrationCreate, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Create a migration and start it now or on its cron schedule."""
    try:
        project = await orchestrator.start(data.to_request())
    except (ValueError, MappingValidationError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return project_response(orchestrator, project)


@router.get("", response_model=MigrationListResponse)
async def list_migrations(
    owner_id: Optional[str] = None,
    workspace_id: Optional[str] = None,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """List migrations, newest first."""
    projects = orchestrator.store.list_projects(owner_id=owner_id, workspace_id=workspace_id)
    migrations = [project_response(orchestrator, p) for p in projects]
    return MigrationListResponse(migrations=migrations, total=len(migrations))


@router.get("/{migration_id}", response_model=MigrationResponse)
async def get_migration(migration_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Get a specific migration."""
    return project_response(orchestrator, _get_project(orchestrator, migration_id))


@router.post("/{migration_id}/pause", response_model=MigrationResponse)
async def pause_migration(migration_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Pause a running migration after its in-flight batches finish."""
    _get_project(orchestrator, migration_id)
    try:
        project = orchestrator.pause(migration_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return project_response(orchestrator, project)


@router.post("/{migration_id}/resume", response_model=MigrationResponse)
async def resume_migration(migration_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Resume a paused migration from its last committed cursors."""
    _get_project(orchestrator, migration_id)
    try:
        project = await orchestrator.resume(migration_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return project_response(orchestrator, project)


@router.post("/{migration_id}/cancel", response_model=MigrationResponse)
async def cancel_migration(migration_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Cancel a migration."""
    _get_project(orchestrator, migration_id)
    try:
        project = orchestrator.cancel(migration_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return project_response(orchestrator, project)


@router.get("/{migration_id}/progress")
async def get_progress(migration_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Current progress snapshot."""
    _get_project(orchestrator, migration_id)
    return orchestrator.snapshot(migration_id).to_dict()


@router.get("/{migration_id}/errors", response_model=ErrorMonitorResponse)
async def get_errors(migration_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Unresolved errors grouped by type and severity."""
    _get_project(orchestrator, migration_id)
    return orchestrator.errors(migration_id)


@router.get("/{migration_id}/events")
async def stream_events(
    migration_id: str,
    request: Request,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator)
):
    """
    Server-sent events stream of progress snapshots.

    The current snapshot is sent first; the stream ends once the project
    reaches a terminal status.
    """
    _get_project(orchestrator, migration_id)
    queue = orchestrator.progress.subscribe(migration_id)

    async def event_stream():
        try:
            snapshot = orchestrator.snapshot(migration_id).to_dict()
            yield f"event: progress\ndata: {json.dumps(snapshot)}\n\n"
            while not orchestrator.store.get_project(migration_id).status.is_terminal:
                if await request.is_disconnected():
                    break
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=EVENT_KEEPALIVE)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: progress\ndata: {json.dumps(snapshot)}\n\n"
            yield f"event: done\ndata: {json.dumps(orchestrator.snapshot(migration_id).to_dict())}\n\n"
        finally:
            orchestrator.progress.unsubscribe(migration_id, queue)

    return StreamingResponse(event_stream(), media_type="text/event-stream")
