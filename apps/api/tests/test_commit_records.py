"""
Commit Record Tests

Status machine on CommitRecord, streak bookkeeping on User, and the
CommitRecordStore queries the orchestrator and scheduler depend on.
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from models import (
    CommitKind,
    CommitSource,
    CommitStatus,
    ContentType,
    InvalidTransition,
    User,
    ensure_utc,
)
from services.commit_records import CommitRecordStore, day_bounds


def _record(db_session, user, clock, kind=CommitKind.AUTO, scheduled_for=None, max_retries=1, created_at=None):
    store = CommitRecordStore(db_session)
    record = store.create(
        user=user,
        repository=user.active_repository,
        kind=kind,
        source=CommitSource.SCHEDULER,
        message="Daily update",
        content="Updated: now",
        content_type=ContentType.TIMESTAMP,
        scheduled_for=scheduled_for or clock.now,
        created_at=created_at or clock.now,
        max_retries=max_retries,
    )
    db_session.commit()
    return record


class TestStatusTransitions:
    def test_new_record_is_pending(self, db_session, make_user, clock):
        record = _record(db_session, make_user(), clock)
        assert record.status == CommitStatus.PENDING
        assert record.retry_count == 0

    def test_pending_to_success(self, db_session, make_user, clock):
        record = _record(db_session, make_user(), clock)
        record.mark_success("abc", "https://github.com/x/y/commit/abc", clock.now)
        assert record.status == CommitStatus.SUCCESS
        assert record.remote_sha == "abc"
        assert record.error is None

    def test_success_is_terminal(self, db_session, make_user, clock):
        record = _record(db_session, make_user(), clock)
        record.mark_success("abc", None, clock.now)
        with pytest.raises(InvalidTransition):
            record.mark_failed("late failure")
        with pytest.raises(InvalidTransition):
            record.mark_retrying(clock.now)

    def test_pending_cannot_retry_directly(self, db_session, make_user, clock):
        record = _record(db_session, make_user(), clock)
        with pytest.raises(InvalidTransition):
            record.mark_retrying(clock.now)

    def test_failed_keeps_error_payload(self, db_session, make_user, clock):
        record = _record(db_session, make_user(), clock)
        record.mark_failed("boom", "REMOTE_AUTH_FAILURE", {"status": 401}, executed_at=clock.now)
        assert record.error == {"message": "boom", "code": "REMOTE_AUTH_FAILURE", "details": {"status": 401}}

    def test_failed_without_code_defaults(self, db_session, make_user, clock):
        record = _record(db_session, make_user(), clock)
        record.mark_failed("boom")
        assert record.error_code == "UNKNOWN_ERROR"

    def test_retry_budget_is_bounded(self, db_session, make_user, clock):
        record = _record(db_session, make_user(), clock, max_retries=1)
        record.mark_failed("first")
        assert record.can_retry

        record.mark_retrying(clock.advance(minutes=5))
        assert record.status == CommitStatus.RETRYING
        assert record.retry_count == 1
        assert ensure_utc(record.last_attempt_at) == clock.now

        record.mark_failed("second")
        assert not record.can_retry
        with pytest.raises(InvalidTransition):
            record.mark_retrying(clock.now)
        assert record.retry_count == 1

    def test_retrying_can_succeed(self, db_session, make_user, clock):
        record = _record(db_session, make_user(), clock)
        record.mark_failed("first")
        record.mark_retrying(clock.now)
        record.mark_success("def", None, clock.now)
        assert record.status == CommitStatus.SUCCESS

    def test_to_dict_uses_camel_case(self, db_session, make_user, clock):
        record = _record(db_session, make_user(), clock)
        data = record.to_dict()
        assert data["status"] == "pending"
        assert data["kind"] == "auto"
        assert "scheduledFor" in data
        assert "retryCount" in data


class TestStreaks:
    def _user(self):
        return User(email="s@example.com", commit_timezone="UTC", total_commits=0, current_streak=0, longest_streak=0)

    def test_first_commit_starts_streak(self):
        user = self._user()
        user.record_commit(datetime(2026, 3, 1, 12, tzinfo=timezone.utc))
        assert (user.current_streak, user.longest_streak, user.total_commits) == (1, 1, 1)
        assert user.last_commit_date == date(2026, 3, 1)

    def test_consecutive_days_extend_streak(self):
        user = self._user()
        for day in range(1, 5):
            user.record_commit(datetime(2026, 3, day, 12, tzinfo=timezone.utc))
        assert user.current_streak == 4
        assert user.longest_streak == 4

    def test_same_day_does_not_double_count(self):
        user = self._user()
        user.record_commit(datetime(2026, 3, 1, 9, tzinfo=timezone.utc))
        user.record_commit(datetime(2026, 3, 1, 18, tzinfo=timezone.utc))
        assert user.current_streak == 1
        assert user.total_commits == 2

    def test_gap_resets_but_longest_survives(self):
        user = self._user()
        for day in (1, 2, 3):
            user.record_commit(datetime(2026, 3, day, 12, tzinfo=timezone.utc))
        user.record_commit(datetime(2026, 3, 6, 12, tzinfo=timezone.utc))
        assert user.current_streak == 1
        assert user.longest_streak == 3

    def test_days_follow_user_timezone(self):
        """23:00 UTC on the 1st is already the 2nd in Kolkata."""
        user = self._user()
        user.commit_timezone = "Asia/Kolkata"
        user.record_commit(datetime(2026, 3, 1, 12, tzinfo=timezone.utc))
        user.record_commit(datetime(2026, 3, 1, 23, tzinfo=timezone.utc))
        assert user.current_streak == 2
        assert user.last_commit_date == date(2026, 3, 2)

    def test_last_commit_date_never_moves_backwards(self):
        user = self._user()
        user.record_commit(datetime(2026, 3, 5, 12, tzinfo=timezone.utc))
        user.record_commit(datetime(2026, 3, 2, 12, tzinfo=timezone.utc))
        assert user.last_commit_date == date(2026, 3, 5)


class TestEntitlements:
    def test_expired_trial_cannot_auto_commit(self, make_user, clock):
        user = make_user(trial_active=False)
        assert not user.is_trial_active(clock.now)
        assert not user.can_auto_commit(clock.now)
        assert user.trial_days_remaining(clock.now) == 0

    def test_active_trial_can_auto_commit(self, make_user, clock):
        user = make_user()
        assert user.can_auto_commit(clock.now)
        assert user.trial_days_remaining(clock.now) == 10

    def test_default_trial_length(self, clock):
        user = User(email="t@example.com")
        user.start_trial(clock.now)
        assert user.trial_ends_at - user.trial_started_at == timedelta(days=15)

    def test_elevated_expiry_is_respected(self, make_user, clock):
        user = make_user(tier="elevated", subscription_expires_at=clock.now - timedelta(days=1))
        assert not user.is_elevated(clock.now)

    def test_only_one_active_repository(self, db_session, make_user):
        from models import UserRepository

        user = make_user()
        first = user.active_repository
        second = UserRepository(name="other", full_name=f"{user.github_username}/other")
        user.activate_repository(second)
        db_session.commit()

        assert user.active_repository is second
        assert first.is_active is False
        assert sum(1 for r in user.repositories if r.is_active) == 1


class TestCommitRecordStore:
    def test_day_bounds_follow_user_timezone(self, make_user):
        user = make_user(commit_timezone="Asia/Kolkata")
        start, end = day_bounds(user, date(2026, 3, 10))
        assert start == datetime(2026, 3, 9, 18, 30, tzinfo=timezone.utc)
        assert end - start == timedelta(days=1)

    def test_has_success_on_day_only_counts_successes_of_that_kind(self, db_session, make_user, clock):
        user = make_user()
        store = CommitRecordStore(db_session)
        record = _record(db_session, user, clock, kind=CommitKind.AUTO)
        assert not store.has_success_on_day(user, CommitKind.AUTO, clock.now)

        record.mark_success("abc", None, clock.now)
        db_session.commit()
        assert store.has_success_on_day(user, CommitKind.AUTO, clock.now)
        assert not store.has_success_on_day(user, CommitKind.MANUAL, clock.now)
        assert not store.has_success_on_day(user, CommitKind.AUTO, clock.now + timedelta(days=1))

    def test_retryable_excludes_exhausted(self, db_session, make_user, clock):
        user = make_user()
        store = CommitRecordStore(db_session)
        fresh = _record(db_session, user, clock)
        fresh.mark_failed("x")
        spent = _record(db_session, user, clock, max_retries=0)
        spent.mark_failed("x")
        db_session.commit()
        assert [r.id for r in store.retryable()] == [fresh.id]

    def test_stale_in_flight_uses_last_attempt(self, db_session, make_user, clock):
        user = make_user()
        store = CommitRecordStore(db_session)
        old = _record(db_session, user, clock, created_at=clock.now - timedelta(hours=2))
        _record(db_session, user, clock)
        stale = store.stale_in_flight(clock.now - timedelta(minutes=30))
        assert [r.id for r in stale] == [old.id]

    def test_delete_expired_keeps_in_flight_and_recent(self, db_session, make_user, clock):
        user = make_user()
        store = CommitRecordStore(db_session)
        old_done = _record(db_session, user, clock, created_at=clock.now - timedelta(days=40))
        old_done.mark_success("a", None, clock.now)
        _record(db_session, user, clock, created_at=clock.now - timedelta(days=40))  # still pending
        recent = _record(db_session, user, clock)
        recent.mark_failed("x")
        db_session.commit()

        assert store.delete_expired(clock.now, 30) == 1
        db_session.commit()
        assert store.get(old_done.id) is None

    def test_recent_pages_newest_first(self, db_session, make_user, clock):
        user = make_user()
        store = CommitRecordStore(db_session)
        ids = [_record(db_session, user, clock, created_at=clock.now + timedelta(minutes=i)).id for i in range(3)]
        records, total = store.recent(user, limit=2)
        assert total == 3
        assert [r.id for r in records] == [ids[2], ids[1]]

    def test_summary_and_daily_stats(self, db_session, make_user, clock):
        user = make_user()
        store = CommitRecordStore(db_session)
        ok = _record(db_session, user, clock)
        ok.mark_success("a", None, clock.now)
        bad = _record(db_session, user, clock, scheduled_for=clock.now - timedelta(days=1))
        bad.mark_failed("x")
        db_session.commit()

        summary = store.summary(user, clock.now)
        assert summary["totalCommits"] == 1
        assert summary["failedCommits"] == 1
        assert summary["todayCommitted"] is True
        assert summary["successRate"] == 50.0

        daily = store.daily_stats(user, 3, clock.now)
        assert [d["date"] for d in daily] == ["2026-03-08", "2026-03-09", "2026-03-10"]
        assert daily[-1]["success"] == 1
        assert daily[-2]["failed"] == 1
