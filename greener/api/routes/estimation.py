"""Estimation pass control endpoints."""

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from greener.api.deps import get_task_runner
from greener.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/estimation", tags=["estimation"])


@router.post("/run", status_code=status.HTTP_202_ACCEPTED)
async def run_estimation(runner: TaskRunner = Depends(get_task_runner)):
    """Start a background estimation pass."""
    if runner.trigger_estimation():
        return {"status": "started"}
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"status": "already_running"},
    )


@router.get("/status")
async def estimation_status(runner: TaskRunner = Depends(get_task_runner)):
    """Whether a pass is running, and the summary of the last completed pass."""
    return {
        "running": runner.running,
        "lastSummary": runner.last_summary.to_dict() if runner.last_summary else None,
    }
