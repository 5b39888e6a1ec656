from __future__ import annotations

from fastapi import APIRouter, Depends

from ..dependencies import get_tracker, require_admin
from ..schemas import RetryDrainOut, SweepOut
from ..services.status_tracker import StatusTracker


router = APIRouter(prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/sweep", response_model=SweepOut)
def run_offline_sweep(tracker: StatusTracker = Depends(get_tracker)) -> SweepOut:
    """Run the offline sweep now instead of waiting for the scheduler."""
    marked = tracker.check_offline_devices()
    return SweepOut(marked_offline=marked, count=len(marked))


@router.post("/fallback-retries", response_model=RetryDrainOut)
def run_fallback_retries(tracker: StatusTracker = Depends(get_tracker)) -> RetryDrainOut:
    result = tracker.process_fallback_retries()
    return RetryDrainOut(dequeued=result.dequeued, scheduled=result.scheduled, exhausted=result.exhausted)
