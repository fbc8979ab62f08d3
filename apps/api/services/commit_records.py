"""
Commit Record Store

Query and persistence helpers for CommitRecord. Owns the idempotency
questions the orchestrator and scheduler ask ("did this user already
succeed today?", "what is in this backfill range?").

"Today" is always the calendar day in the user's configured timezone.
All datetimes written or compared here are normalized to UTC.
"""

import logging
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from core.config import settings
from models import (
    CommitKind,
    CommitRecord,
    CommitSource,
    CommitStatus,
    ContentType,
    User,
    UserRepository,
    ensure_utc,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (CommitStatus.SUCCESS, CommitStatus.FAILED)
IN_FLIGHT_STATUSES = (CommitStatus.PENDING, CommitStatus.RETRYING)


def day_bounds(user: User, day: date) -> Tuple[datetime, datetime]:
    """[start, end) of a local calendar day for `user`, in UTC."""
    tz = user.tz
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return ensure_utc(start), ensure_utc(end)


class CommitRecordStore:
    def __init__(self, db: Session):
        self.db = db

    # --- writes ---

    def create(
        self,
        *,
        user: User,
        repository: UserRepository,
        kind: CommitKind,
        source: CommitSource,
        message: str,
        content: str,
        content_type: ContentType,
        scheduled_for: datetime,
        created_at: datetime,
        file_path: Optional[str] = None,
        context: Optional[Dict] = None,
        max_retries: Optional[int] = None,
    ) -> CommitRecord:
        record = CommitRecord(
            user_id=user.id,
            repository_name=repository.name,
            repository_full_name=repository.full_name,
            repository_url=repository.url,
            file_path=file_path or repository.file_path,
            message=message,
            content=content,
            content_type=content_type,
            status=CommitStatus.PENDING,
            kind=kind,
            source=source,
            scheduled_for=ensure_utc(scheduled_for),
            created_at=ensure_utc(created_at),
            last_attempt_at=ensure_utc(created_at),
            retry_count=0,
            max_retries=settings.DEFAULT_MAX_RETRIES if max_retries is None else max_retries,
            context=context or {},
        )
        self.db.add(record)
        self.db.flush()
        return record

    def delete_expired(self, now: datetime, days: Optional[int] = None) -> int:
        """Retention sweep: drop terminal records older than `days`."""
        days = settings.COMMIT_RETENTION_DAYS if days is None else days
        cutoff = ensure_utc(now) - timedelta(days=days)
        deleted = (
            self.db.query(CommitRecord)
            .filter(
                CommitRecord.status.in_(TERMINAL_STATUSES),
                CommitRecord.created_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
        return deleted or 0

    def delete_in_range(self, user: User, kind: CommitKind, start: datetime, end: datetime) -> int:
        records = self.in_range(user, kind, start, end)
        for record in records:
            self.db.delete(record)
        self.db.flush()
        return len(records)

    def delete_for_dates(self, user: User, days: Iterable[date]) -> int:
        """Remove every record (any kind/status) scheduled on the given local days."""
        records = self.on_dates(user, days)
        for record in records:
            self.db.delete(record)
        self.db.flush()
        return len(records)

    # --- reads ---

    def get(self, record_id: UUID) -> Optional[CommitRecord]:
        return self.db.query(CommitRecord).filter(CommitRecord.id == record_id).first()

    def get_for_user(self, user_id: UUID, record_id: UUID) -> Optional[CommitRecord]:
        return (
            self.db.query(CommitRecord)
            .filter(CommitRecord.id == record_id, CommitRecord.user_id == user_id)
            .first()
        )

    def has_success_on_day(self, user: User, kind: CommitKind, now: datetime) -> bool:
        start, end = day_bounds(user, user.local_day(now))
        return (
            self.db.query(CommitRecord.id)
            .filter(
                CommitRecord.user_id == user.id,
                CommitRecord.kind == kind,
                CommitRecord.status == CommitStatus.SUCCESS,
                CommitRecord.scheduled_for >= start,
                CommitRecord.scheduled_for < end,
            )
            .first()
            is not None
        )

    def retryable(self, limit: Optional[int] = None) -> List[CommitRecord]:
        query = (
            self.db.query(CommitRecord)
            .filter(
                CommitRecord.status == CommitStatus.FAILED,
                CommitRecord.retry_count < CommitRecord.max_retries,
            )
            .order_by(CommitRecord.scheduled_for.asc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def stale_in_flight(self, older_than: datetime) -> List[CommitRecord]:
        """pending/retrying records whose last attempt started before `older_than`."""
        return (
            self.db.query(CommitRecord)
            .filter(
                CommitRecord.status.in_(IN_FLIGHT_STATUSES),
                CommitRecord.last_attempt_at < ensure_utc(older_than),
            )
            .all()
        )

    def in_range(self, user: User, kind: CommitKind, start: datetime, end: datetime) -> List[CommitRecord]:
        return (
            self.db.query(CommitRecord)
            .filter(
                CommitRecord.user_id == user.id,
                CommitRecord.kind == kind,
                CommitRecord.scheduled_for >= ensure_utc(start),
                CommitRecord.scheduled_for <= ensure_utc(end),
            )
            .order_by(CommitRecord.scheduled_for.asc())
            .all()
        )

    def on_dates(self, user: User, days: Iterable[date], status: Optional[CommitStatus] = None) -> List[CommitRecord]:
        wanted = set(days)
        if not wanted:
            return []
        lower, _ = day_bounds(user, min(wanted))
        _, upper = day_bounds(user, max(wanted))
        query = self.db.query(CommitRecord).filter(
            CommitRecord.user_id == user.id,
            CommitRecord.scheduled_for >= lower,
            CommitRecord.scheduled_for < upper,
        )
        if status is not None:
            query = query.filter(CommitRecord.status == status)
        return [r for r in query.all() if user.local_day(r.scheduled_for) in wanted]

    def successes_on_dates(self, user: User, days: Iterable[date]) -> List[CommitRecord]:
        return self.on_dates(user, days, status=CommitStatus.SUCCESS)

    def recent(self, user: User, limit: int = 10, offset: int = 0) -> Tuple[List[CommitRecord], int]:
        query = self.db.query(CommitRecord).filter(CommitRecord.user_id == user.id)
        total = query.count()
        records = query.order_by(CommitRecord.created_at.desc()).offset(offset).limit(limit).all()
        return records, total

    def daily_stats(self, user: User, days: int, now: datetime) -> List[Dict]:
        """Per local day counts for the last `days` days, oldest first."""
        today = user.local_day(now)
        first = today - timedelta(days=days - 1)
        lower, _ = day_bounds(user, first)
        _, upper = day_bounds(user, today)

        buckets: "OrderedDict[date, Dict]" = OrderedDict(
            (first + timedelta(days=i), {"total": 0, "success": 0, "failed": 0})
            for i in range(days)
        )
        records = (
            self.db.query(CommitRecord)
            .filter(
                CommitRecord.user_id == user.id,
                CommitRecord.scheduled_for >= lower,
                CommitRecord.scheduled_for < upper,
            )
            .all()
        )
        for record in records:
            bucket = buckets.get(user.local_day(record.scheduled_for))
            if bucket is None:
                continue
            bucket["total"] += 1
            if record.status == CommitStatus.SUCCESS:
                bucket["success"] += 1
            elif record.status == CommitStatus.FAILED:
                bucket["failed"] += 1

        return [{"date": day.isoformat(), **counts} for day, counts in buckets.items()]

    def summary(self, user: User, now: datetime) -> Dict:
        base = self.db.query(CommitRecord).filter(CommitRecord.user_id == user.id)
        succeeded = base.filter(CommitRecord.status == CommitStatus.SUCCESS).count()
        failed = base.filter(CommitRecord.status == CommitStatus.FAILED).count()
        start, end = day_bounds(user, user.local_day(now))
        committed_today = (
            base.filter(
                CommitRecord.status == CommitStatus.SUCCESS,
                CommitRecord.scheduled_for >= start,
                CommitRecord.scheduled_for < end,
            ).first()
            is not None
        )
        attempts = succeeded + failed
        return {
            "totalCommits": succeeded,
            "failedCommits": failed,
            "todayCommitted": committed_today,
            "successRate": round(succeeded / attempts * 100, 1) if attempts else 0.0,
        }
