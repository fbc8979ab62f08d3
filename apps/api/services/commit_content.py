"""
Commit content and message generation.

Kept deliberately small: ordinary commits only need a timestamp (or a
rotating quote / ASCII block when smart content is on), bulk runs need
plausible conventional-commit messages and randomized times of day.
All randomness goes through an injectable random.Random.
"""

import random
import string
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Tuple

from core.exceptions import CommitValidationError
from models import CommitSettings, ContentType

QUOTES = [
    "The only way to do great work is to love what you do. - Steve Jobs",
    "Innovation distinguishes between a leader and a follower. - Steve Jobs",
    "Code is like humor. When you have to explain it, it's bad. - Cory House",
    "First, solve the problem. Then, write the code. - John Johnson",
    "Experience is the name everyone gives to their mistakes. - Oscar Wilde",
]

ASCII_BLOCKS = [
    "  +--------------------------------------+\n"
    "  |            Daily Update              |\n"
    "  +--------------------------------------+",
    "  .-------------------------------------.\n"
    "  |        Keep the streak alive!        |\n"
    "  '-------------------------------------'",
    "  * - * - * Daily Commit * - * - *",
]

BACKFILL_FREQUENCIES = ("daily", "workdays", "random", "custom")
# Probability of committing on a given day for the randomized frequencies.
_FREQUENCY_ODDS = {"random": 0.7, "custom": 0.6}

BACKFILL_COMMIT_TYPES = ("feature", "fix", "docs", "style", "refactor")
_CONVENTIONAL_PREFIX = {"feature": "feat"}

BACKFILL_MESSAGES: Dict[str, List[str]] = {
    "feature": [
        "Add new functionality",
        "Implement search feature",
        "Add data validation",
        "Create notification system",
        "Add user profile management",
        "Create API endpoints",
    ],
    "fix": [
        "Fix authentication bug",
        "Resolve styling issues",
        "Correct API response",
        "Fix form submission",
        "Correct date formatting",
        "Resolve performance issue",
    ],
    "docs": [
        "Update README",
        "Add API documentation",
        "Update installation guide",
        "Update changelog",
        "Document configuration",
        "Add examples",
    ],
    "style": [
        "Improve code formatting",
        "Clean up imports",
        "Update layout",
        "Improve accessibility",
        "Clean up unused code",
    ],
    "refactor": [
        "Refactor authentication logic",
        "Optimize database queries",
        "Improve error handling",
        "Restructure components",
        "Simplify configuration loading",
    ],
}

_PATTERN_MESSAGES = [
    "feat: enhance {text} implementation",
    "docs: update {text} documentation",
    "style: improve {text} styling",
    "refactor: optimize {text} code",
    "fix: resolve {text} issues",
    "chore: maintain {text} codebase",
]
_INTENSITY_PREFIX = {1: "minor: ", 2: "update: ", 3: "major: ", 4: "critical: "}


def _rng(rng: Optional[random.Random]):
    return rng or random


def generate_content(
    commit_settings: CommitSettings,
    now: datetime,
    smart_allowed: bool = True,
    rng: Optional[random.Random] = None,
) -> Tuple[str, ContentType]:
    """Content for an ordinary (non-backdated) commit."""
    rng = _rng(rng)
    if commit_settings.enable_smart_content and smart_allowed:
        # Alternate quote / ASCII block day by day.
        if now.timetuple().tm_yday % 2 == 0:
            return rng.choice(QUOTES), ContentType.QUOTE
        return rng.choice(ASCII_BLOCKS), ContentType.ASCII
    return f"Updated: {now.astimezone(timezone.utc).isoformat()}", ContentType.TIMESTAMP


def pick_message(commit_settings: CommitSettings, rng: Optional[random.Random] = None) -> str:
    return _rng(rng).choice(commit_settings.message_pool())


def parse_hhmm(value: str) -> Tuple[int, int]:
    try:
        hour_s, minute_s = value.split(":")
        hour, minute = int(hour_s), int(minute_s)
    except (AttributeError, ValueError):
        raise CommitValidationError(f"Invalid time {value!r}, expected HH:MM", details={"value": value})
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise CommitValidationError(f"Invalid time {value!r}, expected HH:MM", details={"value": value})
    return hour, minute


def random_time_in_range(
    day: date,
    start: str = "09:00",
    end: str = "17:00",
    tz: tzinfo = timezone.utc,
    rng: Optional[random.Random] = None,
) -> datetime:
    """A random moment on `day` between `start` (inclusive) and `end` (exclusive)."""
    rng = _rng(rng)
    start_h, start_m = parse_hhmm(start)
    end_h, end_m = parse_hhmm(end)
    start_minutes = start_h * 60 + start_m
    end_minutes = end_h * 60 + end_m
    if end_minutes <= start_minutes:
        raise CommitValidationError(
            f"Time range end {end} must be after start {start}",
            details={"start": start, "end": end},
        )

    minutes = start_minutes + rng.randrange(end_minutes - start_minutes)
    return datetime.combine(day, time(minutes // 60, minutes % 60, rng.randrange(60)), tzinfo=tz)


def should_commit_on(day: date, frequency: str = "daily", rng: Optional[random.Random] = None) -> bool:
    if frequency == "workdays":
        return day.weekday() < 5
    odds = _FREQUENCY_ODDS.get(frequency)
    if odds is not None:
        return _rng(rng).random() < odds
    return True


def backfill_commit_data(
    commit_types: Optional[List[str]] = None,
    rng: Optional[random.Random] = None,
) -> Dict[str, str]:
    rng = _rng(rng)
    types = [t for t in (commit_types or BACKFILL_COMMIT_TYPES) if t in BACKFILL_MESSAGES] or list(BACKFILL_COMMIT_TYPES)
    commit_type = rng.choice(types)
    summary = rng.choice(BACKFILL_MESSAGES[commit_type])
    prefix = _CONVENTIONAL_PREFIX.get(commit_type, commit_type)
    return {"type": commit_type, "message": f"{prefix}: {summary}"}


def backfill_content(commit_type: str, message: str, moment: datetime) -> str:
    return (
        f"# Development log\n\n"
        f"- Date: {moment.date().isoformat()}\n"
        f"- Type: {commit_type}\n"
        f"- Change: {message}\n"
        f"- Recorded: {moment.astimezone(timezone.utc).isoformat()}\n"
    )


def _short_id(rng, length: int = 6) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(rng.choice(alphabet) for _ in range(length))


def pattern_commit_message(text: str, intensity: int, rng: Optional[random.Random] = None) -> str:
    rng = _rng(rng)
    base = rng.choice(_PATTERN_MESSAGES).format(text=text.lower())
    return _INTENSITY_PREFIX.get(intensity, "") + base


def pattern_commit_content(text: str, moment: datetime, rng: Optional[random.Random] = None) -> str:
    rng = _rng(rng)
    commit_id = _short_id(rng, 12)
    return (
        f"// Pattern commit for \"{text.upper()}\"\n"
        f"// Generated on {moment.strftime('%A, %Y-%m-%d at %H:%M:%S')}\n"
        f"// Timestamp: {moment.astimezone(timezone.utc).isoformat()}\n"
        f"\n"
        f"export const patternCommit = {{\n"
        f"  id: \"{commit_id}\",\n"
        f"  text: \"{text.upper()}\",\n"
        f"  timestamp: \"{moment.astimezone(timezone.utc).isoformat()}\",\n"
        f"  type: \"pattern-generation\",\n"
        f"}};\n"
    )


def pattern_file_path(repository_file: str, moment: datetime, rng: Optional[random.Random] = None) -> str:
    """Unique per-commit path under patterns/ so backdated writes never collide."""
    rng = _rng(rng)
    name = (repository_file or "").rsplit("/", 1)[-1]
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, "js"
    stem = stem or "pattern"
    millis = int(moment.timestamp() * 1000)
    return f"patterns/{stem}_{millis}_{_short_id(rng)}.{ext}"


def date_range(start: date, end: date):
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)
