"""
Commit Scheduler

Four independent cadences drive the orchestrator:

    daily_batch    daily at SCHEDULER_DAILY_BATCH_TIME   standard-tier users (trial)
    window_check   every N minutes (default 60)          elevated users whose own
                                                         commit time is within +/-5 min
    retry_sweep    every SCHEDULER_RETRY_INTERVAL_MINUTES stale in-flight -> failed,
                                                         then retry what is retryable
                                                         (auto/manual already done that day: closed)
    cleanup_sweep  daily at SCHEDULER_CLEANUP_TIME       drop terminal records > 30 days

Cadences are celery.schedules.crontab expressions evaluated in the
scheduler timezone, but run in-process rather than through beat. Each
cadence gets its own CadenceRunner thread so a slow pass never delays
another cadence. Inside a pass candidates are handled one at a time, and a
failure for one user/record is logged and counted, never fatal to the pass.

There is no module-level scheduler: main.py builds one at startup and keeps
it on app.state. Every pass is also a plain method, so Celery tasks and
tests call them directly with an injected clock.

    UNINITIALIZED --initialize()--> INITIALIZED --start()--> RUNNING
          ^                                                    |
          +------------------------- stop() -------------------+
"""

import enum
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Callable, Dict, List, Optional

from celery.schedules import crontab
from sqlalchemy.orm import Session

from core.config import settings
from core.database import SessionLocal
from models import (
    CommitKind,
    CommitSource,
    User,
    UserTier,
    ensure_utc,
    resolve_timezone,
    utcnow,
)
from services.commit_content import parse_hhmm
from services.commit_records import CommitRecordStore

logger = logging.getLogger(__name__)

DAILY_BATCH = "daily_batch"
WINDOW_CHECK = "window_check"
RETRY_SWEEP = "retry_sweep"
CLEANUP_SWEEP = "cleanup_sweep"

STALE_IN_FLIGHT = "STALE_IN_FLIGHT"


class SchedulerState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RUNNING = "running"


@dataclass(frozen=True)
class Cadence:
    """When a handler fires: daily at HH:MM, or every N minutes, as a crontab in `timezone`."""
    name: str
    handler: Callable[[], Dict]
    timezone: str
    daily_at: Optional[str] = None
    every_minutes: Optional[int] = None

    def __post_init__(self):
        if (self.daily_at is None) == (self.every_minutes is None):
            raise ValueError(f"Cadence {self.name} needs exactly one of daily_at / every_minutes")
        self.cron_fields()

    def cron_fields(self) -> Dict[str, str]:
        if self.daily_at is not None:
            hour, minute = parse_hhmm(self.daily_at)
            return {"minute": str(minute), "hour": str(hour)}

        every = self.every_minutes
        if every < 1:
            raise ValueError(f"Cadence {self.name}: every_minutes must be >= 1")
        if every < 60 and 60 % every == 0:
            return {"minute": f"*/{every}"}
        if every == 60:
            return {"minute": "0"}
        if every % 60 == 0 and 24 % (every // 60) == 0:
            return {"minute": "0", "hour": f"*/{every // 60}"}
        raise ValueError(
            f"Cadence {self.name}: every_minutes must divide an hour or be whole hours dividing a day, got {every}"
        )

    def schedule(self, nowfun: Callable[[], datetime]) -> crontab:
        from tasks import celery_app

        return crontab(nowfun=nowfun, app=celery_app, **self.cron_fields())

    def describe(self) -> str:
        fields = self.cron_fields()
        return f"crontab(minute={fields['minute']}, hour={fields.get('hour', '*')}) {self.timezone}"

    def next_fire_after(self, moment: datetime) -> datetime:
        """First fire time strictly after `moment` (UTC)."""
        # crontab fields are matched against wall time, so hand it local datetimes.
        local = ensure_utc(moment).astimezone(resolve_timezone(self.timezone))
        remaining = self.schedule(lambda: local).remaining_estimate(local)
        return ensure_utc(local + remaining)


class CadenceRunner(threading.Thread):
    """Daemon thread that sleeps until the cadence's next slot, then runs it."""

    def __init__(self, cadence: Cadence, clock: Callable[[], datetime] = utcnow):
        super().__init__(name=f"cadence-{cadence.name}", daemon=True)
        self.cadence = cadence
        self.clock = clock
        self.next_run: Optional[datetime] = None
        self.last_run: Optional[datetime] = None
        self.runs = 0
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.is_set():
            now = ensure_utc(self.clock())
            # A clock stepped backwards must not fire the same slot twice.
            base = max(now, self.last_run) if self.last_run else now
            self.next_run = self.cadence.next_fire_after(base)
            delay = max(0.0, (self.next_run - now).total_seconds())
            if self._stop_event.wait(delay):
                break
            try:
                self.cadence.handler()
            except Exception as e:
                logger.error(f"Cadence {self.cadence.name} pass crashed: {e}", exc_info=True)
            self.last_run = self.next_run
            self.runs += 1

    def cancel(self) -> None:
        self._stop_event.set()

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()


class CommitScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        orchestrator_factory: Optional[Callable[[Session], object]] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        runner_factory: Callable[..., CadenceRunner] = CadenceRunner,
        timezone: Optional[str] = None,
        daily_batch_time: Optional[str] = None,
        cleanup_time: Optional[str] = None,
        window_interval_minutes: Optional[int] = None,
        window_tolerance_minutes: Optional[int] = None,
        retry_interval_minutes: Optional[int] = None,
        stale_after_minutes: Optional[int] = None,
        retention_days: Optional[int] = None,
        join_timeout_s: float = 5.0,
    ):
        self.session_factory = session_factory
        self.orchestrator_factory = orchestrator_factory or self._default_orchestrator
        self.clock = clock
        self.runner_factory = runner_factory
        self.timezone = timezone or settings.SCHEDULER_TIMEZONE
        self.daily_batch_time = daily_batch_time or settings.SCHEDULER_DAILY_BATCH_TIME
        self.cleanup_time = cleanup_time or settings.SCHEDULER_CLEANUP_TIME
        self.window_interval_minutes = window_interval_minutes or settings.SCHEDULER_WINDOW_CHECK_INTERVAL_MINUTES
        self.window_tolerance_minutes = (
            settings.SCHEDULER_WINDOW_TOLERANCE_MINUTES if window_tolerance_minutes is None else window_tolerance_minutes
        )
        self.retry_interval_minutes = retry_interval_minutes or settings.SCHEDULER_RETRY_INTERVAL_MINUTES
        self.stale_after_minutes = stale_after_minutes or settings.STALE_RECORD_MINUTES
        self.retention_days = retention_days or settings.COMMIT_RETENTION_DAYS
        self.join_timeout_s = join_timeout_s

        self.state = SchedulerState.UNINITIALIZED
        self.cadences: Dict[str, Cadence] = {}
        self.runners: Dict[str, CadenceRunner] = {}
        self._lock = threading.Lock()

    def _default_orchestrator(self, db: Session):
        from services.commit_orchestrator import CommitOrchestrator

        return CommitOrchestrator(db, clock=self.clock)

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> bool:
        with self._lock:
            if self.state != SchedulerState.UNINITIALIZED:
                logger.warning(f"Commit scheduler already {self.state.value}, initialize() ignored")
                return False

            self.cadences = {
                DAILY_BATCH: Cadence(DAILY_BATCH, self.run_daily_batch, self.timezone, daily_at=self.daily_batch_time),
                WINDOW_CHECK: Cadence(WINDOW_CHECK, self.run_window_check, self.timezone, every_minutes=self.window_interval_minutes),
                RETRY_SWEEP: Cadence(RETRY_SWEEP, self.run_retry_sweep, self.timezone, every_minutes=self.retry_interval_minutes),
                CLEANUP_SWEEP: Cadence(CLEANUP_SWEEP, self.run_cleanup_sweep, self.timezone, daily_at=self.cleanup_time),
            }
            self.state = SchedulerState.INITIALIZED

        for cadence in self.cadences.values():
            logger.info(f"Registered cadence {cadence.name}: {cadence.describe()}")
        return True

    def start(self) -> bool:
        if self.state == SchedulerState.UNINITIALIZED:
            self.initialize()
        with self._lock:
            if self.state == SchedulerState.RUNNING:
                logger.warning("Commit scheduler already running, start() ignored")
                return False
            for name, cadence in self.cadences.items():
                runner = self.runner_factory(cadence, self.clock)
                runner.start()
                self.runners[name] = runner
            self.state = SchedulerState.RUNNING
        logger.info(f"Commit scheduler started with {len(self.runners)} cadences ({self.timezone})")
        return True

    def stop(self) -> None:
        """Cancel every cadence. In-flight passes finish; safe to call repeatedly."""
        with self._lock:
            runners = list(self.runners.values())
            self.runners = {}
            self.cadences = {}
            was = self.state
            self.state = SchedulerState.UNINITIALIZED

        for runner in runners:
            runner.cancel()
        for runner in runners:
            if runner.is_alive() and runner is not threading.current_thread():
                runner.join(self.join_timeout_s)
        if was != SchedulerState.UNINITIALIZED:
            logger.info("Commit scheduler stopped")

    def status(self) -> Dict:
        return {
            "initialized": self.state != SchedulerState.UNINITIALIZED,
            "running": self.state == SchedulerState.RUNNING,
            "state": self.state.value,
            "activeCadences": sorted(
                name for name, runner in self.runners.items() if not getattr(runner, "cancelled", False)
            ),
            "jobCount": len(self.runners),
            "now": self._now().isoformat(),
            "timezone": self.timezone,
            "nextRuns": {
                name: self.cadences[name].next_fire_after(self._now()).isoformat() for name in sorted(self.cadences)
            },
        }

    def run_cadence(self, name: str) -> Dict:
        """Run one pass now (manual trigger)."""
        handlers = {
            DAILY_BATCH: self.run_daily_batch,
            WINDOW_CHECK: self.run_window_check,
            RETRY_SWEEP: self.run_retry_sweep,
            CLEANUP_SWEEP: self.run_cleanup_sweep,
        }
        if name not in handlers:
            raise KeyError(name)
        return handlers[name]()

    # ------------------------------------------------------------------
    # passes
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    @staticmethod
    def _auto_commit_candidates(db: Session, tier: UserTier) -> List[User]:
        users = (
            db.query(User)
            .filter(
                User.is_active.is_(True),
                User.subscription_tier == tier,
                User.enable_auto_commits.is_(True),
                User.github_token.isnot(None),
            )
            .order_by(User.created_at.asc())
            .all()
        )
        return [u for u in users if u.active_repository is not None]

    def in_commit_window(self, user: User, now: datetime) -> bool:
        """Is `now` within +/- tolerance of the user's configured local commit time?"""
        tz = user.tz
        local = ensure_utc(now).astimezone(tz)
        commit_settings = user.commit_settings
        tolerance = timedelta(minutes=self.window_tolerance_minutes)
        for offset in (-1, 0, 1):
            target = datetime.combine(
                local.date() + timedelta(days=offset),
                time(commit_settings.hour, commit_settings.minute),
                tzinfo=tz,
            )
            if abs(local - target) <= tolerance:
                return True
        return False

    def _produce_for(self, db: Session, users: List[User], summary: Dict, now: datetime) -> None:
        orchestrator = self.orchestrator_factory(db)
        for user in users:
            try:
                if not user.can_auto_commit(now):
                    summary["skipped"] += 1
                    summary["trialExpired"] += 1
                    continue
                outcome = orchestrator.produce_commit(user, kind=CommitKind.AUTO, source=CommitSource.SCHEDULER)
                if outcome.skipped:
                    summary["skipped"] += 1
                elif outcome.success:
                    summary["committed"] += 1
                else:
                    summary["failed"] += 1
            except Exception as e:
                summary["failed"] += 1
                summary["errors"].append({"user_id": str(user.id), "error": str(e)})
                logger.error(f"Automatic commit failed for user {user.id}: {e}")
                db.rollback()

    @staticmethod
    def _pass_summary(cadence: str, now: datetime) -> Dict:
        return {
            "cadence": cadence,
            "startedAt": now.isoformat(),
            "candidates": 0,
            "committed": 0,
            "skipped": 0,
            "trialExpired": 0,
            "failed": 0,
            "errors": [],
        }

    def _log_pass(self, summary: Dict) -> Dict:
        counters = {k: v for k, v in summary.items() if k != "errors"}
        counters["error_count"] = len(summary.get("errors", []))
        logger.info(f"Cadence {summary['cadence']} finished: {counters}", extra={"extra_fields": counters})
        return summary

    def run_daily_batch(self) -> Dict:
        now = self._now()
        summary = self._pass_summary(DAILY_BATCH, now)
        with self._session() as db:
            users = self._auto_commit_candidates(db, UserTier.STANDARD)
            summary["candidates"] = len(users)
            self._produce_for(db, users, summary, now)
        return self._log_pass(summary)

    def run_window_check(self) -> Dict:
        now = self._now()
        summary = self._pass_summary(WINDOW_CHECK, now)
        with self._session() as db:
            users = [
                u for u in self._auto_commit_candidates(db, UserTier.ELEVATED)
                if u.is_elevated(now) and self.in_commit_window(u, now)
            ]
            summary["candidates"] = len(users)
            self._produce_for(db, users, summary, now)
        return self._log_pass(summary)

    def run_retry_sweep(self) -> Dict:
        now = self._now()
        summary = {
            "cadence": RETRY_SWEEP,
            "startedAt": now.isoformat(),
            "staleMarkedFailed": 0,
            "candidates": 0,
            "skipped": 0,
            "succeeded": 0,
            "failed": 0,
            "errors": [],
        }
        with self._session() as db:
            store = CommitRecordStore(db)

            for record in store.stale_in_flight(now - timedelta(minutes=self.stale_after_minutes)):
                try:
                    record.mark_failed(
                        "Commit did not complete before the retry sweep",
                        STALE_IN_FLIGHT,
                        {"previous_status": record.status.value},
                        executed_at=now,
                    )
                    db.commit()
                    summary["staleMarkedFailed"] += 1
                except Exception as e:
                    db.rollback()
                    summary["errors"].append({"record_id": str(record.id), "error": str(e)})
                    logger.error(f"Could not fail stale record {record.id}: {e}")

            orchestrator = self.orchestrator_factory(db)
            records = store.retryable()
            summary["candidates"] = len(records)
            for record in records:
                try:
                    outcome = orchestrator.retry_record(record)
                    if outcome.skipped:
                        summary["skipped"] += 1
                    elif outcome.success:
                        summary["succeeded"] += 1
                    else:
                        summary["failed"] += 1
                except Exception as e:
                    summary["failed"] += 1
                    summary["errors"].append({"record_id": str(record.id), "error": str(e)})
                    logger.error(f"Retry of commit {record.id} failed: {e}")
                    db.rollback()
        return self._log_pass(summary)

    def run_cleanup_sweep(self) -> Dict:
        now = self._now()
        with self._session() as db:
            deleted = CommitRecordStore(db).delete_expired(now, self.retention_days)
            db.commit()
        return self._log_pass({
            "cadence": CLEANUP_SWEEP,
            "startedAt": now.isoformat(),
            "deleted": deleted,
            "retentionDays": self.retention_days,
            "errors": [],
        })
