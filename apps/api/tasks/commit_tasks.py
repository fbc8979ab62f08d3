"""
Commit background tasks

Bulk generators (backfill, streak maintenance, pattern) can take minutes:
every write is followed by a polite delay. When BULK_JOBS_ASYNC is set the
API enqueues them here instead of running inline.

Both paths go through run_bulk_job(), which holds a per-user Redis lock so
two bulk runs never interleave writes on the same branch.
"""

from datetime import date
from typing import Dict, List, Optional
from celery import Task
from sqlalchemy.orm import Session
from core.cache import acquire_lock, lock_key, release_lock
from core.database import get_db_sync
from core.exceptions import BulkRunInProgressError, CommitEngineError, CommitValidationError
from tasks import celery_app
from services.commit_orchestrator import BackfillSettings, CommitOrchestrator
from services.commit_scheduler import CommitScheduler
import logging

logger = logging.getLogger(__name__)

JOB_BACKFILL = "backfill"
JOB_STREAK_MAINTENANCE = "streak_maintenance"
JOB_PATTERN = "pattern"
BULK_JOBS = (JOB_BACKFILL, JOB_STREAK_MAINTENANCE, JOB_PATTERN)


def _parse_day(value, field: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise CommitValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", details={field: value})


def _parse_days(values: Optional[List], field: str) -> List[date]:
    return [_parse_day(v, field) for v in (values or [])]


def run_bulk_job(
    db: Session,
    job: str,
    user_id: str,
    params: Dict,
    orchestrator: Optional[CommitOrchestrator] = None,
) -> Dict:
    """Run one bulk generator for `user_id` under the per-user lock."""
    if job not in BULK_JOBS:
        raise CommitValidationError(f"Unknown bulk job: {job}", details={"job": job})

    key = lock_key("bulk-commits", user_id)
    token = acquire_lock(key)
    if token is None:
        raise BulkRunInProgressError(
            "A bulk commit run is already in progress for this user",
            details={"user_id": str(user_id), "job": job},
        )

    try:
        orchestrator = orchestrator or CommitOrchestrator(db)
        force = bool(params.get("force", False))
        # No settings block: each generator applies its own default window.
        backfill = BackfillSettings.from_dict(params["backfill"]) if params.get("backfill") else None

        if job == JOB_BACKFILL:
            return orchestrator.generate_past_commits(
                user_id,
                _parse_day(params.get("startDate"), "startDate"),
                _parse_day(params.get("endDate"), "endDate"),
                backfill=backfill,
                force=force,
            )
        if job == JOB_STREAK_MAINTENANCE:
            return orchestrator.generate_streak_maintenance_commits(
                user_id,
                _parse_days(params.get("dates"), "dates"),
                backfill=backfill,
                force=force,
            )
        end_date = params.get("endDate")
        return orchestrator.generate_pattern_commits(
            user_id,
            params.get("text") or "",
            intensity=int(params.get("intensity", 3)),
            alignment=params.get("alignment") or "center",
            spacing=int(params.get("spacing", 1)),
            end_date=_parse_day(end_date, "endDate") if end_date else None,
        )
    finally:
        release_lock(key, token)


@celery_app.task(name="tasks.run_bulk_commit_job", bind=True)
def run_bulk_commit_job_task(self: Task, job: str, user_id: str, params: Dict) -> Dict:
    """Run a bulk generator in the worker. Returns a status dict, never raises."""
    db: Session = get_db_sync()

    try:
        result = run_bulk_job(db, job, user_id, params or {})
        logger.info(
            f"Bulk job {job} finished for user {user_id}",
            extra={"extra_fields": {"job": job, "user_id": user_id, "created": result.get("commitsCreated")}},
        )
        return {"status": "success", "job": job, "user_id": user_id, "result": result}
    except CommitEngineError as e:
        db.rollback()
        logger.warning(f"Bulk job {job} for user {user_id} stopped: {e.error_code} {e.message}")
        return {"status": "error", "job": job, "user_id": user_id, "error": e.to_dict()}
    except Exception as e:
        db.rollback()
        logger.error(f"Bulk job {job} for user {user_id} crashed: {e}", exc_info=True)
        return {
            "status": "error",
            "job": job,
            "user_id": user_id,
            "error": {"code": "INTERNAL_ERROR", "message": str(e), "details": {}},
        }
    finally:
        db.close()


@celery_app.task(name="tasks.run_scheduler_pass")
def run_scheduler_pass_task(cadence: str) -> Dict:
    """
    Run one scheduler pass (daily_batch, window_check, retry_sweep, cleanup_sweep)
    out of band, e.g. to replay a missed daily batch.
    """
    scheduler = CommitScheduler()
    try:
        return {"status": "success", "summary": scheduler.run_cadence(cadence)}
    except KeyError:
        return {"status": "error", "message": f"Unknown cadence: {cadence}"}
