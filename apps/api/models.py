from sqlalchemy import Column, Integer, Boolean, Date, DateTime, ForeignKey, Text, String, Index, JSON, Uuid, text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import relationship, object_session
from core.config import settings
from core.database import Base
import enum
import uuid
import zoneinfo
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from datetime import date, datetime, timedelta, timezone


DEFAULT_COMMIT_TIME = "10:00"
DEFAULT_COMMIT_TIMEZONE = "Asia/Kolkata"
DEFAULT_COMMIT_MESSAGE = "Daily update"
DEFAULT_REPOSITORY_FILE = "daily-update.md"
DEFAULT_AUTHOR_NAME = "CommitPulse Pattern Generator"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to an aware UTC datetime (sqlite hands back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timezone(name: Optional[str], fallback: str = DEFAULT_COMMIT_TIMEZONE):
    try:
        return zoneinfo.ZoneInfo(name or fallback)
    except (KeyError, ValueError, zoneinfo.ZoneInfoNotFoundError):
        return zoneinfo.ZoneInfo(fallback)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class UserTier(str, enum.Enum):
    STANDARD = "standard"
    ELEVATED = "elevated"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"


class CommitStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (CommitStatus.SUCCESS, CommitStatus.FAILED)


class CommitKind(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"
    RETRY = "retry"
    BACKFILL = "backfill"
    PATTERN = "pattern"

    @property
    def is_backdated(self) -> bool:
        return self in (CommitKind.BACKFILL, CommitKind.PATTERN)


class ContentType(str, enum.Enum):
    TIMESTAMP = "timestamp"
    QUOTE = "quote"
    ASCII = "ascii"
    CUSTOM = "custom"
    PATTERN = "pattern"


class CommitSource(str, enum.Enum):
    WEB = "web"
    API = "api"
    SCHEDULER = "scheduler"
    RETRY_SWEEP = "retry-sweep"
    STREAK_MAINTENANCE = "streak-maintenance"
    PATTERN_GENERATOR = "pattern-generator"


# Exhaustive: anything not listed here is an illegal status move.
ALLOWED_TRANSITIONS: Dict[CommitStatus, frozenset] = {
    CommitStatus.PENDING: frozenset({CommitStatus.SUCCESS, CommitStatus.FAILED}),
    CommitStatus.FAILED: frozenset({CommitStatus.RETRYING}),
    CommitStatus.RETRYING: frozenset({CommitStatus.SUCCESS, CommitStatus.FAILED}),
    CommitStatus.SUCCESS: frozenset(),
}


class InvalidTransition(ValueError):
    def __init__(self, current: CommitStatus, target: CommitStatus, reason: str = ""):
        message = f"Illegal commit status transition {current.value} -> {target.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target


@dataclass
class CommitSettings:
    """Per-user commit configuration with its documented defaults."""

    time: str = DEFAULT_COMMIT_TIME  # "HH:MM" in `timezone`
    timezone: str = DEFAULT_COMMIT_TIMEZONE
    messages: List[str] = field(default_factory=lambda: [DEFAULT_COMMIT_MESSAGE])
    custom_messages: List[str] = field(default_factory=list)
    enable_auto_commits: bool = True
    enable_smart_content: bool = False

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])

    def message_pool(self) -> List[str]:
        pool = [m for m in (self.messages or []) + (self.custom_messages or []) if m and m.strip()]
        return pool or [DEFAULT_COMMIT_MESSAGE]


class User(Base):
    __tablename__ = "app_user"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    email = Column(Text, unique=True, nullable=False)
    first_name = Column(Text, nullable=True)
    last_name = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    role = Column(Text, default="user", nullable=False)  # user | admin

    # --- PLAN ---
    subscription_tier = Column(
        SAEnum(UserTier, native_enum=False, length=16, values_callable=_enum_values),
        default=UserTier.STANDARD,
        nullable=False,
    )
    subscription_status = Column(
        SAEnum(SubscriptionStatus, native_enum=False, length=16, values_callable=_enum_values),
        default=SubscriptionStatus.INACTIVE,
        nullable=False,
    )
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True)
    # Standard-tier users get automatic commits only while the trial runs.
    trial_started_at = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)

    # --- GITHUB IDENTITY ---
    github_token = Column(Text, nullable=True)  # Fernet-encrypted
    github_username = Column(Text, nullable=True)
    github_email = Column(Text, nullable=True)
    github_name = Column(Text, nullable=True)

    # --- COMMIT SETTINGS ---
    commit_time = Column(String(5), default=DEFAULT_COMMIT_TIME, nullable=False)
    commit_timezone = Column(Text, default=DEFAULT_COMMIT_TIMEZONE, nullable=False)
    commit_messages = Column(JSON, default=lambda: [DEFAULT_COMMIT_MESSAGE], nullable=False)
    custom_messages = Column(JSON, default=list, nullable=False)
    enable_auto_commits = Column(Boolean, default=True, nullable=False)
    enable_smart_content = Column(Boolean, default=False, nullable=False)
    email_notifications = Column(Boolean, default=True, nullable=False)

    # --- STATS ---
    total_commits = Column(Integer, default=0, nullable=False)
    current_streak = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    last_commit_date = Column(Date, nullable=True)  # calendar day in commit_timezone

    repositories = relationship(
        "UserRepository",
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="UserRepository.created_at",
    )
    commit_records = relationship(
        "CommitRecord",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def tz(self):
        return resolve_timezone(self.commit_timezone)

    def local_day(self, moment: datetime) -> date:
        return ensure_utc(moment).astimezone(self.tz).date()

    # --- ENTITLEMENTS ---

    def is_elevated(self, now: Optional[datetime] = None) -> bool:
        if self.subscription_tier != UserTier.ELEVATED:
            return False
        if self.subscription_status != SubscriptionStatus.ACTIVE:
            return False
        expires = ensure_utc(self.subscription_expires_at)
        return expires is None or expires > (now or utcnow())

    def is_trial_active(self, now: Optional[datetime] = None) -> bool:
        if self.subscription_tier != UserTier.STANDARD:
            return False
        ends = ensure_utc(self.trial_ends_at)
        if ends is None:
            return False
        return (now or utcnow()) <= ends

    def trial_days_remaining(self, now: Optional[datetime] = None) -> int:
        if not self.is_trial_active(now):
            return 0
        remaining = ensure_utc(self.trial_ends_at) - (now or utcnow())
        # Partial days count as a whole day left.
        return max(0, remaining.days + (1 if remaining.seconds or remaining.microseconds else 0))

    def can_auto_commit(self, now: Optional[datetime] = None) -> bool:
        return self.is_elevated(now) or self.is_trial_active(now)

    def start_trial(self, now: datetime, days: Optional[int] = None) -> None:
        days = settings.TRIAL_LENGTH_DAYS if days is None else days
        self.trial_started_at = now
        self.trial_ends_at = now + timedelta(days=days)

    # --- REPOSITORIES ---

    @property
    def active_repository(self) -> Optional["UserRepository"]:
        for repo in self.repositories:
            if repo.is_active:
                return repo
        return None

    def activate_repository(self, repository: "UserRepository") -> None:
        """Make `repository` the single active one for this user."""
        if repository not in self.repositories:
            self.repositories.append(repository)
        for repo in self.repositories:
            if repo is not repository:
                repo.is_active = False
        session = object_session(self)
        if session is not None:
            # Deactivations must hit the table before the partial unique index sees the new row.
            session.flush()
        repository.is_active = True

    # --- SETTINGS ---

    @property
    def commit_settings(self) -> CommitSettings:
        defaults = CommitSettings()
        return CommitSettings(
            time=self.commit_time or defaults.time,
            timezone=self.commit_timezone or defaults.timezone,
            messages=list(self.commit_messages) if self.commit_messages is not None else defaults.messages,
            custom_messages=list(self.custom_messages or []),
            enable_auto_commits=bool(self.enable_auto_commits) if self.enable_auto_commits is not None else True,
            enable_smart_content=bool(self.enable_smart_content),
        )

    def apply_commit_settings(self, commit_settings: CommitSettings) -> None:
        self.commit_time = commit_settings.time
        self.commit_timezone = commit_settings.timezone
        self.commit_messages = list(commit_settings.messages)
        self.custom_messages = list(commit_settings.custom_messages)
        self.enable_auto_commits = commit_settings.enable_auto_commits
        self.enable_smart_content = commit_settings.enable_smart_content

    def commit_author(self) -> Dict[str, str]:
        """Author identity for backdated commits: verified GitHub identity first."""
        name = self.github_name or self.github_username or self.full_name or DEFAULT_AUTHOR_NAME
        email = self.github_email or self.email
        return {"name": name, "email": email}

    # --- STATS ---

    def record_commit(self, now: datetime) -> None:
        """Update totals and streak counters for a successful commit at `now`."""
        today = self.local_day(now)
        self.total_commits = (self.total_commits or 0) + 1

        last = self.last_commit_date
        if last is None:
            self.current_streak = 1
        else:
            gap = (today - last).days
            if gap == 1:
                self.current_streak = (self.current_streak or 0) + 1
            elif gap >= 2:
                self.current_streak = 1
            # gap <= 0: same calendar day, streak unchanged

        if last is None or today > last:
            self.last_commit_date = today
        self.longest_streak = max(self.longest_streak or 0, self.current_streak or 0)


class UserRepository(Base):
    """A GitHub repository a user has connected. At most one is active."""
    __tablename__ = "user_repository"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    user_id = Column(Uuid, ForeignKey("app_user.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(Text, nullable=False)
    full_name = Column(Text, nullable=False)  # "owner/repo"
    url = Column(Text, nullable=True)
    file_path = Column(Text, default=DEFAULT_REPOSITORY_FILE, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    last_commit_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="repositories")

    __table_args__ = (
        Index(
            "uq_user_repository_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    @property
    def owner_and_name(self):
        owner, _, repo = self.full_name.partition("/")
        return owner, repo


class CommitRecord(Base):
    """
    Durable audit trail of every commit the engine attempted.

    Status moves are only made through the mark_* helpers, which enforce
    ALLOWED_TRANSITIONS.
    """
    __tablename__ = "commit_record"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    user_id = Column(Uuid, ForeignKey("app_user.id", ondelete="CASCADE"), nullable=False, index=True)

    repository_name = Column(Text, nullable=False)
    repository_full_name = Column(Text, nullable=False)
    repository_url = Column(Text, nullable=True)
    file_path = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    content_type = Column(
        SAEnum(ContentType, native_enum=False, length=16, values_callable=_enum_values),
        default=ContentType.TIMESTAMP,
        nullable=False,
    )

    status = Column(
        SAEnum(CommitStatus, native_enum=False, length=16, values_callable=_enum_values),
        default=CommitStatus.PENDING,
        nullable=False,
        index=True,
    )
    kind = Column(
        SAEnum(CommitKind, native_enum=False, length=16, values_callable=_enum_values),
        default=CommitKind.AUTO,
        nullable=False,
    )
    source = Column(
        SAEnum(CommitSource, native_enum=False, length=32, values_callable=_enum_values),
        default=CommitSource.WEB,
        nullable=False,
    )

    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    # Set when the record is created and on every retry; drives stale detection.
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    max_retries = Column(Integer, default=1, nullable=False)

    error_message = Column(Text, nullable=True)
    error_code = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    remote_sha = Column(Text, nullable=True)
    remote_url = Column(Text, nullable=True)
    # Free-form run metadata (pattern text, intensity, backfill commit type, ...)
    context = Column(JSON, nullable=False, default=dict)

    user = relationship("User", back_populates="commit_records")

    __table_args__ = (
        Index("ix_commit_record_user_kind_scheduled", "user_id", "kind", "scheduled_for"),
        Index("ix_commit_record_status_created", "status", "created_at"),
    )

    @property
    def can_retry(self) -> bool:
        return self.status == CommitStatus.FAILED and (self.retry_count or 0) < (self.max_retries or 0)

    @property
    def error(self) -> Optional[Dict]:
        if self.error_code is None and self.error_message is None:
            return None
        return {"message": self.error_message, "code": self.error_code, "details": self.error_details}

    def _transition(self, target: CommitStatus) -> None:
        current = CommitStatus(self.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(current, target)
        self.status = target

    def mark_success(self, sha: Optional[str], url: Optional[str], executed_at: datetime) -> None:
        self._transition(CommitStatus.SUCCESS)
        self.remote_sha = sha
        self.remote_url = url
        self.executed_at = executed_at
        self.error_message = None
        self.error_code = None
        self.error_details = None

    def mark_failed(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict] = None,
        executed_at: Optional[datetime] = None,
    ) -> None:
        self._transition(CommitStatus.FAILED)
        self.error_message = message
        self.error_code = code or "UNKNOWN_ERROR"
        self.error_details = details
        if executed_at is not None:
            self.executed_at = executed_at

    def mark_retrying(self, now: Optional[datetime] = None) -> None:
        if CommitStatus(self.status) == CommitStatus.FAILED and not self.can_retry:
            raise InvalidTransition(
                CommitStatus.FAILED,
                CommitStatus.RETRYING,
                f"retry budget exhausted ({self.retry_count}/{self.max_retries})",
            )
        self._transition(CommitStatus.RETRYING)
        self.retry_count = (self.retry_count or 0) + 1
        self.last_attempt_at = now or utcnow()

    def close_retries(self, reason: str) -> None:
        """Keep a failed record failed for good; the original error stays, `reason` is added to its details."""
        current = CommitStatus(self.status)
        if current != CommitStatus.FAILED:
            raise InvalidTransition(current, CommitStatus.FAILED, "only failed records can be closed")
        self.max_retries = self.retry_count or 0
        self.error_details = {**(self.error_details or {}), "closedReason": reason}

    def to_dict(self) -> Dict:
        return {
            "id": str(self.id),
            "message": self.message,
            "status": CommitStatus(self.status).value,
            "kind": CommitKind(self.kind).value,
            "source": CommitSource(self.source).value,
            "repository": {
                "name": self.repository_name,
                "fullName": self.repository_full_name,
                "url": self.repository_url,
            },
            "filePath": self.file_path,
            "contentType": ContentType(self.content_type).value,
            "scheduledFor": _iso(self.scheduled_for),
            "executedAt": _iso(self.executed_at),
            "createdAt": _iso(self.created_at),
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "commitSha": self.remote_sha,
            "commitUrl": self.remote_url,
            "error": self.error,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None
