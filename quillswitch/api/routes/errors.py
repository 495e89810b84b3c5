"""Manual retry of recorded errors."""

from fastapi import APIRouter, Depends, HTTPException

from ...orchestrator import MigrationOrchestrator
from ...services.error_handler import RetryOutcome
from ..dependencies import get_orchestrator
from ..models import RetryResponse

router = APIRouter()


@router.post("/{error_id}/retry", response_model=RetryResponse)
async def retry_error(error_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Re-run the work behind an error; the outcome says whether it now succeeds."""
    outcome = await orchestrator.retry_error(error_id)
    if outcome == RetryOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Error not found")
    return RetryResponse(error_id=error_id, outcome=outcome.value)
