"""
Commit, pattern and scheduler API tests.

Requests go through real bearer-token auth; the app's get_db dependency is
overridden to share the test session, and bulk jobs run inline against the
conftest GitHub stand-in.
"""
import random
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from core.config import settings
from core.database import SessionLocal, get_db
from core.security import create_access_token
from main import app
from models import CommitKind, CommitRecord
from routers.commits import get_orchestrator
from routers.scheduler import get_scheduler
from services.commit_orchestrator import CommitOrchestrator
from services.commit_scheduler import CommitScheduler


@pytest.fixture
def client(db_session, orchestrator):
    """TestClient wired to the test session and orchestrator."""

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def bulk_lock():
    """Bulk runs take the per-user lock; keep Redis out of the picture."""
    with patch("tasks.commit_tasks.acquire_lock", return_value="lock-token") as acquire, \
            patch("tasks.commit_tasks.release_lock") as release:
        yield acquire, release


@pytest.fixture
def inline_orchestrator(orchestrator):
    """Inline bulk jobs build their own orchestrator; hand them the test one."""
    with patch("tasks.commit_tasks.CommitOrchestrator", return_value=orchestrator):
        yield orchestrator


def _auth_headers(user):
    token = create_access_token(data={"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


def _assert_error(response, status_code, code):
    assert response.status_code == status_code
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == code
    return body["error"]


class TestHealth:
    def test_ping(self, client):
        assert client.get("/ping").json() == {"pong": True}

    def test_health_reports_disabled_scheduler(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["scheduler"] == "disabled"


class TestAuth:
    def test_missing_token(self, client):
        assert client.post("/v1/commits/manual").status_code == 401

    def test_garbage_token(self, client):
        response = client.get("/v1/commits/history", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_disabled_account(self, client, make_user):
        user = make_user(is_active=False)
        assert client.get("/v1/commits/settings", headers=_auth_headers(user)).status_code == 403


class TestManualCommit:
    def test_commit_then_skip(self, client, make_user, github):
        user = make_user()
        first = client.post("/v1/commits/manual", headers=_auth_headers(user))
        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["commit"]["kind"] == "manual"
        assert first.json()["commit"]["commitSha"] == "sha0001"

        second = client.post("/v1/commits/manual", headers=_auth_headers(user)).json()
        assert second["skipped"] is True
        assert second["code"] == "ALREADY_COMMITTED_TODAY"
        assert github.calls == 1

    def test_expired_trial_is_forbidden(self, client, make_user):
        response = client.post("/v1/commits/manual", headers=_auth_headers(make_user(trial_active=False)))
        _assert_error(response, 403, "TRIAL_EXPIRED")

    def test_no_repository(self, client, make_user):
        response = client.post("/v1/commits/manual", headers=_auth_headers(make_user(with_repo=False)))
        _assert_error(response, 400, "NO_ACTIVE_REPOSITORY")

    def test_remote_failure_maps_to_error_payload(self, client, make_user, github):
        from core.exceptions import RemoteAuthError

        github.errors[1] = RemoteAuthError("Bad credentials", status_code=401)
        response = client.post("/v1/commits/manual", headers=_auth_headers(make_user()))
        error = _assert_error(response, 401, "REMOTE_AUTH_FAILURE")
        assert error["message"] == "Bad credentials"


class TestHistoryAndRecords:
    def test_history_lists_own_commits(self, client, make_user):
        user = make_user()
        other = make_user()
        client.post("/v1/commits/manual", headers=_auth_headers(user))
        client.post("/v1/commits/manual", headers=_auth_headers(other))

        data = client.get("/v1/commits/history?limit=5", headers=_auth_headers(user)).json()
        assert data["total"] == 1
        assert data["limit"] == 5
        assert data["commits"][0]["status"] == "success"

    def test_get_single_record(self, client, make_user):
        user = make_user()
        record_id = client.post("/v1/commits/manual", headers=_auth_headers(user)).json()["commit"]["id"]

        response = client.get(f"/v1/commits/{record_id}", headers=_auth_headers(user))
        assert response.status_code == 200
        assert response.json()["id"] == record_id

    def test_other_users_record_is_not_found(self, client, make_user):
        owner = make_user()
        record_id = client.post("/v1/commits/manual", headers=_auth_headers(owner)).json()["commit"]["id"]
        response = client.get(f"/v1/commits/{record_id}", headers=_auth_headers(make_user()))
        assert response.status_code == 404

    def test_retry_of_successful_record_is_rejected(self, client, make_user):
        user = make_user()
        record_id = client.post("/v1/commits/manual", headers=_auth_headers(user)).json()["commit"]["id"]
        response = client.post(f"/v1/commits/{record_id}/retry", headers=_auth_headers(user))
        _assert_error(response, 400, "VALIDATION_ERROR")

    def test_retry_of_failed_record(self, client, make_user, github):
        from core.exceptions import RemoteAuthError

        user = make_user()
        github.errors[1] = RemoteAuthError("Bad credentials")
        client.post("/v1/commits/manual", headers=_auth_headers(user))
        record_id = client.get("/v1/commits/history", headers=_auth_headers(user)).json()["commits"][0]["id"]

        data = client.post(f"/v1/commits/{record_id}/retry", headers=_auth_headers(user)).json()
        assert data["success"] is True
        assert data["commit"]["retryCount"] == 1

    def test_stats_shape(self, client, make_user):
        user = make_user()
        data = client.get("/v1/commits/stats?days=7", headers=_auth_headers(user)).json()
        for key in ("totalCommits", "failedCommits", "successRate", "currentStreak", "longestStreak",
                    "lastCommitDate", "trialDaysRemaining"):
            assert key in data
        assert len(data["daily"]) == 7


class TestSettings:
    def test_defaults(self, client, make_user):
        data = client.get("/v1/commits/settings", headers=_auth_headers(make_user())).json()
        assert data["time"] == "10:00"
        assert data["timezone"] == "Asia/Kolkata"
        assert data["enableAutoCommits"] is True

    def test_partial_update(self, client, make_user):
        user = make_user()
        response = client.put(
            "/v1/commits/settings",
            json={"time": "08:30", "timezone": "Europe/Berlin", "customMessages": ["chore: tidy"]},
            headers=_auth_headers(user),
        )
        assert response.status_code == 200
        data = response.json()
        assert (data["time"], data["timezone"]) == ("08:30", "Europe/Berlin")
        assert data["customMessages"] == ["chore: tidy"]
        assert data["enableAutoCommits"] is True
        assert user.commit_time == "08:30"

    @pytest.mark.parametrize("payload", [{"time": "8am"}, {"time": "24:00"}, {"timezone": "Mars/Olympus"}])
    def test_invalid_values(self, client, make_user, payload):
        response = client.put("/v1/commits/settings", json=payload, headers=_auth_headers(make_user()))
        _assert_error(response, 400, "VALIDATION_ERROR")


class TestBulkEndpoints:
    def test_backfill_runs_inline(self, client, make_user, inline_orchestrator, github, bulk_lock):
        user = make_user(tier="elevated")
        response = client.post(
            "/v1/commits/backfill",
            json={"startDate": "2026-02-01", "endDate": "2026-02-03",
                  "backfill": {"frequency": "daily", "timeRange": {"start": "10:00", "end": "12:00"}}},
            headers=_auth_headers(user),
        )
        assert response.status_code == 200
        assert response.json()["commitsCreated"] == 3
        assert github.calls == 3

        acquire, release = bulk_lock
        acquire.assert_called_once_with(f"lock:bulk-commits:{user.id}")
        release.assert_called_once_with(f"lock:bulk-commits:{user.id}", "lock-token")

    def test_backfill_requires_elevated_tier(self, client, make_user, inline_orchestrator):
        response = client.post(
            "/v1/commits/backfill",
            json={"startDate": "2026-02-01", "endDate": "2026-02-03"},
            headers=_auth_headers(make_user()),
        )
        _assert_error(response, 403, "TIER_REQUIRED")

    def test_concurrent_bulk_run_is_rejected(self, client, make_user, inline_orchestrator, bulk_lock, github):
        acquire, release = bulk_lock
        acquire.return_value = None
        response = client.post(
            "/v1/commits/backfill",
            json={"startDate": "2026-02-01", "endDate": "2026-02-03"},
            headers=_auth_headers(make_user(tier="elevated")),
        )
        _assert_error(response, 409, "BULK_RUN_IN_PROGRESS")
        assert github.calls == 0
        release.assert_not_called()

    def test_streak_maintenance(self, client, db_session, make_user, inline_orchestrator):
        user = make_user()
        response = client.post(
            "/v1/commits/streak-maintenance",
            json={"dates": ["2026-03-08", "2026-03-09"]},
            headers=_auth_headers(user),
        )
        assert response.status_code == 200
        assert response.json()["commitsCreated"] == 2
        kinds = {r.kind for r in db_session.query(CommitRecord).filter(CommitRecord.user_id == user.id)}
        assert kinds == {CommitKind.BACKFILL}

    def test_streak_maintenance_needs_dates(self, client, make_user):
        response = client.post(
            "/v1/commits/streak-maintenance", json={"dates": []}, headers=_auth_headers(make_user())
        )
        assert response.status_code == 422

    def test_async_dispatch_enqueues(self, client, make_user):
        user = make_user(tier="elevated")
        with patch.object(settings, "BULK_JOBS_ASYNC", True), \
                patch("tasks.commit_tasks.run_bulk_commit_job_task") as task, \
                patch("routers.commits.set_cache") as set_cache:
            task.delay.return_value = MagicMock(id="task-123")
            response = client.post(
                "/v1/commits/backfill",
                json={"startDate": "2026-02-01", "endDate": "2026-02-03"},
                headers=_auth_headers(user),
            )

        assert response.json() == {"success": True, "status": "queued", "job": "backfill", "taskId": "task-123"}
        job, user_id, params = task.delay.call_args.args
        assert (job, user_id) == ("backfill", str(user.id))
        assert params["startDate"] == "2026-02-01"
        set_cache.assert_called_once()

    def test_unknown_job_status(self, client, make_user):
        data = client.get("/v1/commits/jobs/nope", headers=_auth_headers(make_user())).json()
        assert data["status"] == "unknown"


class TestPatternEndpoints:
    def test_templates_are_public(self, client):
        response = client.get("/v1/patterns/templates")
        assert response.status_code == 200
        assert response.json()["templates"]

    def test_validate(self, client):
        assert client.post("/v1/patterns/validate", json={"text": "hi"}).json()["valid"] is True
        assert client.post("/v1/patterns/validate", json={"text": "hi!"}).json()["valid"] is False

    def test_preview(self, client, make_user):
        response = client.post(
            "/v1/patterns/preview",
            json={"text": "HI", "endDate": "2026-03-10"},
            headers=_auth_headers(make_user()),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["stats"]["totalCommits"] == len(data["commitDates"])

    def test_preview_rejects_overflow(self, client, make_user):
        response = client.post(
            "/v1/patterns/preview", json={"text": "ABCDEFGHIJ"}, headers=_auth_headers(make_user())
        )
        error = _assert_error(response, 400, "VALIDATION_ERROR")
        assert error["details"]["width"] == 59

    def test_intensity_bounds_checked_by_schema(self, client, make_user):
        response = client.post(
            "/v1/patterns/preview", json={"text": "HI", "intensity": 5}, headers=_auth_headers(make_user())
        )
        assert response.status_code == 422

    def test_generate(self, client, make_user, inline_orchestrator, github):
        user = make_user(tier="elevated", github_email="me@example.com", github_name="Me")
        response = client.post(
            "/v1/patterns/generate",
            json={"text": "I", "intensity": 1, "endDate": "2026-03-10"},
            headers=_auth_headers(user),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["commitsCreated"] == data["stats"]["totalCommits"] == github.calls


class TestSchedulerEndpoints:
    @pytest.fixture
    def scheduler(self, github, notifier, clock, sleeps):
        scheduler = CommitScheduler(
            SessionLocal,
            lambda db: CommitOrchestrator(
                db,
                client_factory=lambda user: github,
                notifier=notifier,
                clock=clock,
                sleep=sleeps.append,
                rng=random.Random(1),
            ),
            clock=clock,
            timezone="Asia/Kolkata",
        )
        app.dependency_overrides[get_scheduler] = lambda: scheduler
        return scheduler

    def test_status(self, client, scheduler, make_user):
        data = client.get("/v1/scheduler/status", headers=_auth_headers(make_user())).json()
        assert data["state"] == "uninitialized"
        assert data["running"] is False
        assert data["timezone"] == "Asia/Kolkata"

    def test_manual_pass_requires_admin(self, client, scheduler, make_user):
        response = client.post("/v1/scheduler/run/daily_batch", headers=_auth_headers(make_user()))
        assert response.status_code == 403

    def test_admin_runs_a_pass(self, client, scheduler, make_user, github):
        admin = make_user(role="admin", with_repo=False)
        make_user()
        response = client.post("/v1/scheduler/run/daily_batch", headers=_auth_headers(admin))
        assert response.status_code == 200
        data = response.json()
        assert data["cadence"] == "daily_batch"
        assert data["committed"] == 1
        assert github.calls == 1

    def test_unknown_cadence(self, client, scheduler, make_user):
        response = client.post("/v1/scheduler/run/hourly", headers=_auth_headers(make_user(role="admin")))
        assert response.status_code == 404
