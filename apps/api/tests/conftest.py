"""
Pytest configuration and fixtures

Tests run against an in-memory sqlite database (one shared connection).
Every table is emptied after each test so nothing leaks between tests,
including rows committed by the orchestrator and scheduler passes.
"""
import os
import random
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

# Environment must be in place before core.config is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-commitpulse-tests-0123456789")
os.environ["REDIS_URL"] = "redis://127.0.0.1:1/0"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_FORMAT"] = "text"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import Base, SessionLocal, engine  # noqa: E402
from models import (  # noqa: E402
    SubscriptionStatus,
    User,
    UserRepository,
    UserTier,
)
from services.github_service import CommitResult, GitHubIdentity  # noqa: E402

# 10:00 in Asia/Kolkata (UTC+05:30)
NOW = datetime(2026, 3, 10, 4, 30, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def _create_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """Session on the shared sqlite connection; all rows are wiped afterwards."""
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()

    cleanup = SessionLocal()
    for table in reversed(Base.metadata.sorted_tables):
        cleanup.execute(table.delete())
    cleanup.commit()
    cleanup.close()


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class FakeGitHubClient:
    """
    In-memory stand-in for GitHubClient.upsert_file().

    Keeps a single branch: every successful write becomes the new tip with
    the previous tip as its parent, so tests can check ancestry.
    `conflicts` / `errors` are keyed by 1-based call number.
    """

    def __init__(self):
        self.calls = 0
        self.tip = "root"
        self.commits = []
        self.conflicts = set()
        self.errors = {}
        self.identity = GitHubIdentity(id=42, login="octocat", name="Octo Cat", email="octo@example.com")
        self.identity_calls = 0

    def upsert_file(self, full_name, path, content, message, branch=None, custom_date=None, author=None):
        self.calls += 1
        if self.calls in self.errors:
            raise self.errors[self.calls]
        if self.calls in self.conflicts:
            return CommitResult(
                success=False,
                date=custom_date,
                branch="main",
                path=path,
                recoverable=True,
                error_code="REMOTE_CONFLICT",
                error="Update is not a fast forward",
            )

        sha = f"sha{self.calls:04d}"
        self.commits.append({
            "sha": sha,
            "parent": self.tip,
            "date": custom_date,
            "message": message,
            "path": path,
            "content": content,
            "author": author,
            "repo": full_name,
        })
        self.tip = sha
        return CommitResult(
            success=True,
            sha=sha,
            url=f"https://github.com/{full_name}/commit/{sha}",
            date=custom_date,
            branch="main",
            path=path,
        )

    def get_authenticated_user(self):
        self.identity_calls += 1
        return self.identity


@pytest.fixture
def github():
    return FakeGitHubClient()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(db_session, github, notifier, clock, sleeps):
    from services.commit_orchestrator import CommitOrchestrator

    return CommitOrchestrator(
        db_session,
        client_factory=lambda user: github,
        notifier=notifier,
        clock=clock,
        sleep=sleeps.append,
        rng=random.Random(7),
    )


@pytest.fixture
def make_user(db_session, clock):
    """
    Factory for users with an active repository.

    tier="standard" users get a trial ending 10 days after the clock unless
    trial_active=False; tier="elevated" users get an active subscription.
    """
    counter = {"n": 0}

    def _make(
        tier: str = "standard",
        trial_active: bool = True,
        commit_time: str = "10:00",
        commit_timezone: str = "Asia/Kolkata",
        with_repo: bool = True,
        token: str = "encrypted-token",
        **fields,
    ) -> User:
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            first_name="Test",
            last_name=f"User{counter['n']}",
            github_token=token,
            github_username=f"tester{counter['n']}",
            commit_time=commit_time,
            commit_timezone=commit_timezone,
            created_at=clock.now - timedelta(days=30),
        )
        if tier == "elevated":
            user.subscription_tier = UserTier.ELEVATED
            user.subscription_status = SubscriptionStatus.ACTIVE
        else:
            user.subscription_tier = UserTier.STANDARD
            if trial_active:
                user.start_trial(clock.now - timedelta(days=5), 15)
            else:
                user.start_trial(clock.now - timedelta(days=20), 15)
        for key, value in fields.items():
            setattr(user, key, value)

        db_session.add(user)
        db_session.flush()
        if with_repo:
            repo = UserRepository(
                name="daily",
                full_name=f"tester{counter['n']}/daily",
                url=f"https://github.com/tester{counter['n']}/daily",
                file_path="daily-update.md",
            )
            user.activate_repository(repo)
        db_session.commit()
        return user

    return _make
