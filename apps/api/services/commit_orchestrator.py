"""
Commit Orchestrator

Turns "commit for this user now" (or "for these past dates") into
CommitRecords and GitHub writes.

Single commits:
    produce_commit()        eligibility -> content -> pending record -> execute_commit()
    execute_commit()        GitHub write -> success/failed -> streak stats -> notification
    retry_record()          failed -> retrying -> execute_commit()

Caller-facing operations (validate first, never create a record on a
validation error):
    trigger_manual_commit()
    generate_past_commits()               backfill, log-and-continue
    generate_streak_maintenance_commits() backfill of chosen days, log-and-continue
    generate_pattern_commits()            pixel text, aborts past the failure threshold

Commit-time windows (user's local time):
    backfill            BackfillSettings.timeRange, default 09:00-17:00
    streak maintenance  STREAK_TIME_RANGE 09:00-18:00 unless backfill settings are passed
    pattern             09:00-18:59:59 (pattern_mapper)

Every state change is committed immediately so the record trail survives a
crash between the GitHub write and the caller.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Sequence, Union
from uuid import UUID

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import (
    AlreadyCommittedTodayError,
    BulkRunAbortedError,
    CommitEngineError,
    CommitValidationError,
    NoActiveRepositoryError,
    RemoteConflictError,
    TierRequiredError,
    TrialExpiredError,
    UnknownRemoteError,
    UserNotFoundError,
)
from models import (
    CommitKind,
    CommitRecord,
    CommitSource,
    ContentType,
    User,
    UserRepository,
    ensure_utc,
    utcnow,
)
from services import commit_content
from services import pattern_mapper
from services.commit_records import CommitRecordStore, day_bounds
from services.email_service import email_service
from services.github_service import CommitResult, client_for_user

logger = logging.getLogger(__name__)

STREAK_TIME_RANGE = ("09:00", "18:00")

# One successful commit per local day for these kinds.
DAILY_KINDS = (CommitKind.AUTO, CommitKind.MANUAL)


@dataclass
class CommitOutcome:
    success: bool
    record: Optional[CommitRecord] = None
    skipped: bool = False
    recoverable: bool = False
    code: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "recoverable": self.recoverable,
            "code": self.code,
            "message": self.message,
            "commit": self.record.to_dict() if self.record is not None else None,
        }


@dataclass
class BackfillSettings:
    frequency: str = "daily"  # daily | workdays | random | custom
    time_start: str = "09:00"
    time_end: str = "17:00"
    commit_types: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "BackfillSettings":
        data = data or {}
        time_range = data.get("timeRange") or data.get("time_range") or {}
        if isinstance(time_range, (list, tuple)) and len(time_range) == 2:
            start, end = time_range
        else:
            start, end = time_range.get("start"), time_range.get("end")
        return cls(
            frequency=data.get("frequency") or "daily",
            time_start=start or "09:00",
            time_end=end or "17:00",
            commit_types=data.get("commitTypes") or data.get("commit_types"),
        )


@dataclass
class BulkItem:
    scheduled_for: datetime
    message: str
    content: str
    content_type: ContentType
    file_path: Optional[str] = None
    context: Dict = field(default_factory=dict)


@dataclass
class BulkRunSummary:
    planned: int = 0
    created: int = 0
    failed: int = 0
    conflicts: int = 0
    record_ids: List[str] = field(default_factory=list)


class CommitOrchestrator:
    def __init__(
        self,
        db: Session,
        *,
        client_factory: Callable = client_for_user,
        notifier=email_service,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.store = CommitRecordStore(db)
        self.client_factory = client_factory
        self.notifier = notifier
        self.clock = clock
        self.sleep = sleep
        self.rng = rng or random.Random()

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _load_user(self, user_or_id: Union[User, UUID, str]) -> User:
        if isinstance(user_or_id, User):
            return user_or_id
        user_id = user_or_id if isinstance(user_or_id, UUID) else UUID(str(user_or_id))
        user = self.db.query(User).filter(User.id == user_id).first()
        if user is None:
            raise UserNotFoundError(f"User not found: {user_id}")
        return user

    @staticmethod
    def _require_repository(user: User) -> UserRepository:
        repository = user.active_repository
        if repository is None:
            raise NoActiveRepositoryError(details={"user_id": str(user.id)})
        return repository

    # ------------------------------------------------------------------
    # single commits
    # ------------------------------------------------------------------

    def produce_commit(
        self,
        user: User,
        kind: CommitKind = CommitKind.AUTO,
        source: CommitSource = CommitSource.SCHEDULER,
    ) -> CommitOutcome:
        now = self._now()
        repository = self._require_repository(user)

        if kind == CommitKind.AUTO:
            if self.store.has_success_on_day(user, CommitKind.AUTO, now):
                logger.info(f"User {user.id} already has an automatic commit today, skipping")
                return CommitOutcome(
                    success=True,
                    skipped=True,
                    code=AlreadyCommittedTodayError.error_code,
                    message="Already committed today",
                )
            if not user.can_auto_commit(now):
                raise TrialExpiredError(details={"user_id": str(user.id)})

        commit_settings = user.commit_settings
        content, content_type = commit_content.generate_content(
            commit_settings, now, smart_allowed=user.is_elevated(now), rng=self.rng
        )
        record = self.store.create(
            user=user,
            repository=repository,
            kind=kind,
            source=source,
            message=commit_content.pick_message(commit_settings, rng=self.rng),
            content=content,
            content_type=content_type,
            scheduled_for=now,
            created_at=now,
        )
        self.db.commit()
        return self.execute_commit(record, user)

    def execute_commit(self, record: CommitRecord, user: User) -> CommitOutcome:
        """
        Push one record to GitHub and settle its status.

        Raises whatever the client raised (after recording it on the record),
        except a recoverable conflict, which comes back as an outcome.
        """
        kind = CommitKind(record.kind)
        backdated = kind.is_backdated

        try:
            client = self.client_factory(user)
            result: CommitResult = client.upsert_file(
                record.repository_full_name,
                record.file_path,
                record.content,
                record.message,
                custom_date=ensure_utc(record.scheduled_for) if backdated else None,
                author=user.commit_author() if backdated else None,
            )
        except CommitEngineError as e:
            record.mark_failed(e.message, e.error_code, e.details or None, executed_at=self._now())
            self.db.commit()
            logger.error(f"Commit {record.id} failed for user {user.id}: [{e.error_code}] {e.message}")
            raise
        except Exception as e:
            record.mark_failed(str(e), UnknownRemoteError.error_code, {"exception": type(e).__name__}, executed_at=self._now())
            self.db.commit()
            logger.error(f"Commit {record.id} failed for user {user.id}: {e}", exc_info=True)
            raise

        now = self._now()
        if not result.success:
            record.mark_failed(
                result.error or "Ref update rejected (not a fast forward)",
                result.error_code or RemoteConflictError.error_code,
                {"recoverable": True, "branch": result.branch},
                executed_at=now,
            )
            self.db.commit()
            return CommitOutcome(
                success=False,
                record=record,
                recoverable=True,
                code=record.error_code,
                message=record.error_message,
            )

        record.mark_success(result.sha, result.url, now)
        user.record_commit(now)
        repository = user.active_repository
        if repository is not None and repository.full_name == record.repository_full_name:
            repository.last_commit_at = now
        self.db.commit()
        logger.info(f"Commit {record.id} ({kind.value}) pushed for user {user.id}: {result.sha}")

        self._notify(user, record, result, now)
        return CommitOutcome(success=True, record=record)

    def _notify(self, user: User, record: CommitRecord, result: CommitResult, now: datetime) -> None:
        if not (user.email_notifications and user.is_elevated(now)):
            return
        try:
            self.notifier.send_commit_notification(user, record, result)
        except Exception as e:
            # The commit already landed; notification trouble must not surface.
            logger.warning(f"Commit notification failed for user {user.id}: {e}")

    def retry_record(self, record: CommitRecord, user: Optional[User] = None) -> CommitOutcome:
        """
        failed -> retrying -> execute. InvalidTransition when the budget is spent.

        An auto/manual record whose day already has a successful commit of the
        same kind is closed instead of pushed, and reported as skipped.
        """
        user = user or self._load_user(record.user_id)
        kind = CommitKind(record.kind)
        if (
            kind in DAILY_KINDS
            and record.can_retry
            and self.store.has_success_on_day(user, kind, ensure_utc(record.scheduled_for))
        ):
            record.close_retries(AlreadyCommittedTodayError.error_code)
            self.db.commit()
            logger.info(f"Commit {record.id} not retried: user {user.id} already has a {kind.value} commit that day")
            return CommitOutcome(
                success=True,
                record=record,
                skipped=True,
                code=AlreadyCommittedTodayError.error_code,
                message=f"Already committed ({kind.value}) that day",
            )

        record.mark_retrying(self._now())
        self.db.commit()
        logger.info(f"Retrying commit {record.id} (attempt {record.retry_count}/{record.max_retries})")
        return self.execute_commit(record, user)

    # ------------------------------------------------------------------
    # caller-facing operations
    # ------------------------------------------------------------------

    def trigger_manual_commit(self, user_id: Union[User, UUID, str]) -> CommitOutcome:
        user = self._load_user(user_id)
        now = self._now()
        if not user.can_auto_commit(now):
            raise TrialExpiredError(details={"user_id": str(user.id)})
        self._require_repository(user)

        if self.store.has_success_on_day(user, CommitKind.MANUAL, now):
            return CommitOutcome(
                success=True,
                skipped=True,
                code=AlreadyCommittedTodayError.error_code,
                message="Already committed manually today",
            )
        return self.produce_commit(user, kind=CommitKind.MANUAL, source=CommitSource.WEB)

    def generate_past_commits(
        self,
        user_id: Union[User, UUID, str],
        start_date: date,
        end_date: date,
        backfill: Optional[BackfillSettings] = None,
        force: bool = False,
    ) -> Dict:
        backfill = backfill or BackfillSettings()
        user = self._load_user(user_id)
        now = self._now()
        if not user.is_elevated(now):
            raise TierRequiredError("Past commit generation requires the elevated tier")
        repository = self._require_repository(user)

        today = user.local_day(now)
        if start_date >= end_date:
            raise CommitValidationError("Start date must be before end date")
        if end_date >= today:
            raise CommitValidationError("Backfill dates must be in the past")
        if (end_date - start_date).days > settings.BACKFILL_MAX_DAYS:
            raise CommitValidationError(
                f"Date range cannot exceed {settings.BACKFILL_MAX_DAYS} days",
                details={"days": (end_date - start_date).days},
            )
        if backfill.frequency not in commit_content.BACKFILL_FREQUENCIES:
            raise CommitValidationError(
                f"Unknown frequency {backfill.frequency!r}",
                details={"allowed": list(commit_content.BACKFILL_FREQUENCIES)},
            )
        # Validates the HH:MM pair before anything is deleted.
        commit_content.random_time_in_range(start_date, backfill.time_start, backfill.time_end, rng=self.rng)

        lower, _ = day_bounds(user, start_date)
        _, upper = day_bounds(user, end_date)
        existing = self.store.in_range(user, CommitKind.BACKFILL, lower, upper)
        deleted = 0
        if existing:
            if not force:
                raise CommitValidationError(
                    "Backfill commits already exist in this date range",
                    details={"existing": len(existing), "hint": "retry with force=true to regenerate"},
                )
            # Not transactional with the regeneration below.
            deleted = self.store.delete_in_range(user, CommitKind.BACKFILL, lower, upper)
            self.db.commit()
            logger.info(f"Deleted {deleted} backfill records for user {user.id} before regeneration")

        items = []
        for day in commit_content.date_range(start_date, end_date):
            if not commit_content.should_commit_on(day, backfill.frequency, rng=self.rng):
                continue
            moment = commit_content.random_time_in_range(
                day, backfill.time_start, backfill.time_end, tz=user.tz, rng=self.rng
            )
            data = commit_content.backfill_commit_data(backfill.commit_types, rng=self.rng)
            items.append(BulkItem(
                scheduled_for=moment,
                message=data["message"],
                content=commit_content.backfill_content(data["type"], data["message"], moment),
                content_type=ContentType.TIMESTAMP,
                context={"backfill": True, "originalDate": day.isoformat(), "commitType": data["type"]},
            ))

        summary = self._run_bulk(
            user,
            repository,
            items,
            kind=CommitKind.BACKFILL,
            source=CommitSource.API,
            delay_s=settings.BULK_COMMIT_DELAY_S,
        )
        return {
            "success": True,
            "commitsCreated": summary.created,
            "failures": summary.failed,
            "conflicts": summary.conflicts,
            "planned": summary.planned,
            "deleted": deleted,
            "dateRange": {"startDate": start_date.isoformat(), "endDate": end_date.isoformat()},
        }

    def generate_streak_maintenance_commits(
        self,
        user_id: Union[User, UUID, str],
        dates: Sequence[date],
        backfill: Optional[BackfillSettings] = None,
        force: bool = False,
    ) -> Dict:
        user = self._load_user(user_id)
        now = self._now()
        if not user.can_auto_commit(now):
            raise TrialExpiredError(details={"user_id": str(user.id)})
        repository = self._require_repository(user)

        if not dates:
            raise CommitValidationError("At least one date is required")
        days = sorted(set(dates))
        today = user.local_day(now)

        not_past = [d.isoformat() for d in days if d >= today]
        if not_past:
            raise CommitValidationError("Streak dates must be in the past", details={"dates": not_past})

        elevated = user.is_elevated(now)
        limit = settings.STREAK_MAINTENANCE_MAX_DAYS_BACK
        too_old = [d.isoformat() for d in days if (today - d).days > limit]
        if too_old and not elevated:
            raise TierRequiredError(
                f"Dates more than {limit} days back require the elevated tier",
                details={"dates": too_old, "max_days_back": limit},
            )

        existing = self.store.successes_on_dates(user, days)
        deleted = 0
        if existing:
            if not force:
                taken = sorted({user.local_day(r.scheduled_for).isoformat() for r in existing})
                raise CommitValidationError(
                    "Commits already exist for some of these dates",
                    details={"dates": taken, "hint": "retry with force=true to regenerate"},
                )
        if force:
            # Not transactional with the regeneration below.
            deleted = self.store.delete_for_dates(user, days)
            self.db.commit()

        start_time, end_time = STREAK_TIME_RANGE
        if backfill is not None:
            start_time, end_time = backfill.time_start, backfill.time_end
        commit_types = backfill.commit_types if backfill else None

        items = []
        for day in days:
            moment = commit_content.random_time_in_range(day, start_time, end_time, tz=user.tz, rng=self.rng)
            data = commit_content.backfill_commit_data(commit_types, rng=self.rng)
            content, content_type = commit_content.generate_content(
                user.commit_settings, moment, smart_allowed=elevated, rng=self.rng
            )
            items.append(BulkItem(
                scheduled_for=moment,
                message=data["message"],
                content=content,
                content_type=content_type,
                context={"streakMaintenance": True, "date": day.isoformat()},
            ))

        summary = self._run_bulk(
            user,
            repository,
            items,
            kind=CommitKind.BACKFILL,
            source=CommitSource.STREAK_MAINTENANCE,
            delay_s=settings.BULK_COMMIT_DELAY_S,
        )
        return {
            "success": True,
            "commitsCreated": summary.created,
            "failures": summary.failed,
            "conflicts": summary.conflicts,
            "deleted": deleted,
            "dates": [d.isoformat() for d in days],
            "userTier": "elevated" if elevated else "standard",
        }

    def generate_pattern_commits(
        self,
        user_id: Union[User, UUID, str],
        text: str,
        intensity: int = 3,
        alignment: str = "center",
        spacing: int = 1,
        end_date: Optional[date] = None,
    ) -> Dict:
        user = self._load_user(user_id)
        now = self._now()
        if not user.is_elevated(now):
            raise TierRequiredError("Pattern generation requires the elevated tier")
        repository = self._require_repository(user)

        grid = pattern_mapper.render_text(text, intensity=intensity, alignment=alignment, spacing=spacing)
        self._ensure_identity(user)

        dates = pattern_mapper.grid_to_dates(
            grid, end_date=end_date or user.local_day(now), rng=self.rng, tz=user.tz
        )
        label = text.upper()
        items = [
            BulkItem(
                scheduled_for=d.date,
                message=commit_content.pattern_commit_message(label, d.intensity, rng=self.rng),
                content=commit_content.pattern_commit_content(label, d.date, rng=self.rng),
                content_type=ContentType.PATTERN,
                file_path=commit_content.pattern_file_path(repository.file_path, d.date, rng=self.rng),
                context={"pattern": True, "patternText": label, "intensity": d.intensity, "week": d.week, "day": d.day},
            )
            for d in dates
        ]
        logger.info(f"Pattern '{label}' for user {user.id}: {len(items)} commits planned")

        summary = self._run_bulk(
            user,
            repository,
            items,
            kind=CommitKind.PATTERN,
            source=CommitSource.PATTERN_GENERATOR,
            delay_s=settings.PATTERN_COMMIT_DELAY_S,
            abort_threshold=settings.PATTERN_FAILURE_THRESHOLD,
        )
        return {
            "success": True,
            "commitsCreated": summary.created,
            "failures": summary.failed,
            "stats": {
                "totalCommits": summary.planned,
                "successCount": summary.created,
                "failureCount": summary.failed,
                "conflicts": summary.conflicts,
                "text": label,
                "pattern": grid,
            },
        }

    def _ensure_identity(self, user: User) -> None:
        """Fill in the verified GitHub name/email so backdated commits are attributed."""
        if user.github_email and user.github_name:
            return
        try:
            identity = self.client_factory(user).get_authenticated_user()
        except CommitEngineError as e:
            logger.warning(f"Could not fetch GitHub identity for user {user.id}, using profile values: {e}")
            return
        user.github_email = user.github_email or identity.email or user.email
        user.github_name = user.github_name or identity.name or identity.login or user.full_name
        user.github_username = user.github_username or identity.login
        self.db.commit()

    def _run_bulk(
        self,
        user: User,
        repository: UserRepository,
        items: List[BulkItem],
        *,
        kind: CommitKind,
        source: CommitSource,
        delay_s: float,
        abort_threshold: Optional[float] = None,
    ) -> BulkRunSummary:
        """
        Apply `items` oldest first, one GitHub write at a time.

        Per-item failures are logged and counted. With an abort_threshold the
        whole run stops once failures exceed that share of the planned items.
        """
        items = sorted(items, key=lambda i: ensure_utc(i.scheduled_for))
        summary = BulkRunSummary(planned=len(items))

        for index, item in enumerate(items):
            if index:
                self.sleep(delay_s)

            record = self.store.create(
                user=user,
                repository=repository,
                kind=kind,
                source=source,
                message=item.message,
                content=item.content,
                content_type=item.content_type,
                scheduled_for=item.scheduled_for,
                created_at=self._now(),
                file_path=item.file_path,
                context=item.context,
            )
            self.db.commit()
            summary.record_ids.append(str(record.id))

            try:
                outcome = self.execute_commit(record, user)
            except Exception as e:
                summary.failed += 1
                logger.warning(
                    f"{kind.value} commit for {ensure_utc(item.scheduled_for).isoformat()} failed "
                    f"({summary.failed} failures so far): {e}"
                )
            else:
                if outcome.success:
                    summary.created += 1
                else:
                    summary.failed += 1
                    summary.conflicts += 1

            if abort_threshold is not None and summary.failed > summary.planned * abort_threshold:
                logger.error(
                    f"Aborting {kind.value} run for user {user.id}: {summary.failed}/{summary.planned} failed",
                    extra={"extra_fields": {"user_id": str(user.id), "created": summary.created, "failed": summary.failed}},
                )
                raise BulkRunAbortedError(
                    f"Too many commit failures: {summary.failed}/{summary.planned}",
                    details={"created": summary.created, "failed": summary.failed, "planned": summary.planned},
                )

        logger.info(
            f"{kind.value} run finished for user {user.id}: {summary.created} created, {summary.failed} failed",
            extra={"extra_fields": {
                "user_id": str(user.id),
                "kind": kind.value,
                "planned": summary.planned,
                "created": summary.created,
                "failed": summary.failed,
                "conflicts": summary.conflicts,
            }},
        )
        return summary
