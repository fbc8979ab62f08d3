"""
Scheduler API Endpoints

Read-only status of the in-process scheduler, plus manual passes.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status

from core.auth import get_current_user, require_admin
from models import User
from services.commit_scheduler import CommitScheduler

router = APIRouter(prefix="/v1/scheduler", tags=["scheduler"])


def get_scheduler(request: Request) -> CommitScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        # Scheduler disabled in this process: passes still run on demand.
        scheduler = CommitScheduler()
    return scheduler


@router.get("/status")
def get_status(
    current_user: User = Depends(get_current_user),
    scheduler: CommitScheduler = Depends(get_scheduler),
):
    return scheduler.status()


@router.post("/run/{cadence}")
def run_pass(
    cadence: str,
    current_user: User = Depends(require_admin),
    scheduler: CommitScheduler = Depends(get_scheduler),
):
    """Run one pass synchronously and return its summary."""
    try:
        return scheduler.run_cadence(cadence)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown cadence: {cadence}")
