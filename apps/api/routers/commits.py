"""
Commit API Endpoints

Manual commits, history/stats, retries and the bulk generators
(backfill, streak maintenance). Domain errors bubble up as
CommitEngineError and are rendered by the handler in main.py.
"""
import zoneinfo
from datetime import date
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.cache import get_cache, set_cache
from core.config import settings
from core.database import get_db
from core.exceptions import CommitValidationError, NotFoundError
from models import CommitSettings, InvalidTransition, User, utcnow
from services.commit_orchestrator import CommitOrchestrator
from services.commit_records import CommitRecordStore
from services.commit_content import parse_hhmm

router = APIRouter(prefix="/v1/commits", tags=["commits"])

JOB_META_TTL_S = 24 * 60 * 60


def get_orchestrator(db: Session = Depends(get_db)) -> CommitOrchestrator:
    return CommitOrchestrator(db)


class TimeRange(BaseModel):
    start: str = "09:00"
    end: str = "17:00"


class BackfillOptions(BaseModel):
    frequency: str = "daily"
    timeRange: TimeRange = Field(default_factory=TimeRange)
    commitTypes: Optional[List[str]] = None


class BackfillRequest(BaseModel):
    startDate: date
    endDate: date
    backfill: Optional[BackfillOptions] = None
    force: bool = False


class StreakMaintenanceRequest(BaseModel):
    dates: List[date] = Field(..., min_length=1)
    backfill: Optional[BackfillOptions] = None
    force: bool = False


class CommitSettingsUpdate(BaseModel):
    time: Optional[str] = None
    timezone: Optional[str] = None
    messages: Optional[List[str]] = None
    customMessages: Optional[List[str]] = None
    enableAutoCommits: Optional[bool] = None
    enableSmartContent: Optional[bool] = None


def _settings_dict(user: User) -> Dict[str, Any]:
    s = user.commit_settings
    return {
        "time": s.time,
        "timezone": s.timezone,
        "messages": s.messages,
        "customMessages": s.custom_messages,
        "enableAutoCommits": s.enable_auto_commits,
        "enableSmartContent": s.enable_smart_content,
    }


def dispatch_bulk_job(db: Session, job: str, user: User, params: Dict) -> Dict:
    """Run inline, or enqueue when BULK_JOBS_ASYNC is set."""
    if settings.BULK_JOBS_ASYNC:
        from tasks.commit_tasks import run_bulk_commit_job_task

        task = run_bulk_commit_job_task.delay(job, str(user.id), params)
        # Track the task so status polling can tell "unknown" from "pending"
        set_cache(f"commit_job:{task.id}", {"user_id": str(user.id), "job": job}, JOB_META_TTL_S)
        return {"success": True, "status": "queued", "job": job, "taskId": task.id}

    from tasks.commit_tasks import run_bulk_job

    return run_bulk_job(db, job, str(user.id), params)


@router.post("/manual")
def trigger_manual_commit(
    current_user: User = Depends(get_current_user),
    orchestrator: CommitOrchestrator = Depends(get_orchestrator),
):
    """Commit now, outside the schedule. One per local day."""
    return orchestrator.trigger_manual_commit(current_user).to_dict()


@router.get("/history")
def get_commit_history(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    records, total = CommitRecordStore(db).recent(current_user, limit=limit, offset=offset)
    return {
        "commits": [r.to_dict() for r in records],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/stats")
def get_commit_stats(
    days: int = Query(30, ge=1, le=365),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    now = utcnow()
    store = CommitRecordStore(db)
    return {
        **store.summary(current_user, now),
        "currentStreak": current_user.current_streak or 0,
        "longestStreak": current_user.longest_streak or 0,
        "lastCommitDate": current_user.last_commit_date.isoformat() if current_user.last_commit_date else None,
        "trialDaysRemaining": current_user.trial_days_remaining(now),
        "daily": store.daily_stats(current_user, days, now),
    }


@router.get("/settings")
def get_commit_settings(current_user: User = Depends(get_current_user)):
    return _settings_dict(current_user)


@router.put("/settings")
def update_commit_settings(
    payload: CommitSettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    current = current_user.commit_settings
    if payload.time is not None:
        parse_hhmm(payload.time)
    if payload.timezone is not None:
        try:
            zoneinfo.ZoneInfo(payload.timezone)
        except (ValueError, zoneinfo.ZoneInfoNotFoundError):
            raise CommitValidationError(f"Unknown timezone: {payload.timezone}", details={"timezone": payload.timezone})

    current_user.apply_commit_settings(CommitSettings(
        time=payload.time if payload.time is not None else current.time,
        timezone=payload.timezone if payload.timezone is not None else current.timezone,
        messages=payload.messages if payload.messages is not None else current.messages,
        custom_messages=payload.customMessages if payload.customMessages is not None else current.custom_messages,
        enable_auto_commits=(
            payload.enableAutoCommits if payload.enableAutoCommits is not None else current.enable_auto_commits
        ),
        enable_smart_content=(
            payload.enableSmartContent if payload.enableSmartContent is not None else current.enable_smart_content
        ),
    ))
    db.commit()
    return _settings_dict(current_user)


@router.post("/backfill")
def generate_past_commits(
    payload: BackfillRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Fill a past date range with backdated commits (elevated tier)."""
    params = payload.model_dump(mode="json")
    return dispatch_bulk_job(db, "backfill", current_user, params)


@router.post("/streak-maintenance")
def generate_streak_maintenance_commits(
    payload: StreakMaintenanceRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Backdated commits for specific missed days."""
    params = payload.model_dump(mode="json")
    return dispatch_bulk_job(db, "streak_maintenance", current_user, params)


@router.get("/jobs/{task_id}")
def get_job_status(task_id: str, current_user: User = Depends(get_current_user)):
    """
    Status of a queued bulk job.

    Celery reports PENDING for unknown ids too, so only jobs we enqueued
    for this user are reported.
    """
    meta = get_cache(f"commit_job:{task_id}")
    if not meta or meta.get("user_id") != str(current_user.id):
        return {"taskId": task_id, "status": "unknown", "message": "Job not found or expired"}

    from tasks import celery_app

    task = celery_app.AsyncResult(task_id)
    response = {"taskId": task_id, "job": meta.get("job"), "status": task.state.lower()}
    if task.state == "SUCCESS":
        response["result"] = task.result
    elif task.state == "FAILURE":
        response["error"] = str(task.result)
    return response


@router.get("/{record_id}")
def get_commit(
    record_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    record = CommitRecordStore(db).get_for_user(current_user.id, record_id)
    if record is None:
        raise NotFoundError("Commit", str(record_id))
    return record.to_dict()


@router.post("/{record_id}/retry")
def retry_commit(
    record_id: UUID,
    current_user: User = Depends(get_current_user),
    orchestrator: CommitOrchestrator = Depends(get_orchestrator),
):
    record = orchestrator.store.get_for_user(current_user.id, record_id)
    if record is None:
        raise NotFoundError("Commit", str(record_id))
    try:
        return orchestrator.retry_record(record, current_user).to_dict()
    except InvalidTransition as e:
        raise CommitValidationError(str(e), details={"status": record.status.value, "retryCount": record.retry_count})
