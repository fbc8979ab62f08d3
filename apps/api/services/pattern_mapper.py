"""
Pattern Mapper

Turns text into a 7x53 contribution-graph bitmap and the bitmap into the
dated commits needed to draw it.

    render_text("HI")  ->  7 rows (Sun..Sat) x 53 week columns of 0..4
    grid_to_dates(...) ->  ascending PatternCommitDate list

Everything here is pure: randomness comes from an injectable
``random.Random`` so tests can pin it.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Sequence, Union

from core.exceptions import CommitValidationError

GRID_ROWS = 7
GRID_COLUMNS = 53
GLYPH_WIDTH = 5
GLYPH_HEIGHT = 7

ALIGNMENTS = ("left", "center", "right")
MIN_INTENSITY, MAX_INTENSITY = 1, 4
MIN_SPACING, MAX_SPACING = 0, 3

# Rough character budget at spacing=1 (each glyph plus one gap column).
MAX_TEXT_LENGTH = GRID_COLUMNS // (GLYPH_WIDTH + 1)

# Commits land between 09:00:00 and 18:59:59 local time.
FIRST_COMMIT_HOUR = 9
COMMIT_HOUR_SPAN = 10

Grid = List[List[int]]

# 5x7 bitmaps, one string per row, top row first.
GLYPHS: Dict[str, tuple] = {
    "A": ("01110", "10001", "10001", "11111", "10001", "10001", "10001"),
    "B": ("11110", "10001", "10001", "11110", "10001", "10001", "11110"),
    "C": ("01110", "10001", "10000", "10000", "10000", "10001", "01110"),
    "D": ("11110", "10001", "10001", "10001", "10001", "10001", "11110"),
    "E": ("11111", "10000", "10000", "11110", "10000", "10000", "11111"),
    "F": ("11111", "10000", "10000", "11110", "10000", "10000", "10000"),
    "G": ("01110", "10001", "10000", "10111", "10001", "10001", "01110"),
    "H": ("10001", "10001", "10001", "11111", "10001", "10001", "10001"),
    "I": ("11111", "00100", "00100", "00100", "00100", "00100", "11111"),
    "J": ("11111", "00010", "00010", "00010", "00010", "10010", "01100"),
    "K": ("10001", "10010", "10100", "11000", "10100", "10010", "10001"),
    "L": ("10000", "10000", "10000", "10000", "10000", "10000", "11111"),
    "M": ("10001", "11011", "10101", "10001", "10001", "10001", "10001"),
    "N": ("10001", "11001", "10101", "10011", "10001", "10001", "10001"),
    "O": ("01110", "10001", "10001", "10001", "10001", "10001", "01110"),
    "P": ("11110", "10001", "10001", "11110", "10000", "10000", "10000"),
    "Q": ("01110", "10001", "10001", "10001", "10101", "10010", "01101"),
    "R": ("11110", "10001", "10001", "11110", "10100", "10010", "10001"),
    "S": ("01110", "10001", "10000", "01110", "00001", "10001", "01110"),
    "T": ("11111", "00100", "00100", "00100", "00100", "00100", "00100"),
    "U": ("10001", "10001", "10001", "10001", "10001", "10001", "01110"),
    "V": ("10001", "10001", "10001", "10001", "01010", "01010", "00100"),
    "W": ("10001", "10001", "10001", "10101", "10101", "11011", "10001"),
    "X": ("10001", "01010", "00100", "00100", "00100", "01010", "10001"),
    "Y": ("10001", "01010", "00100", "00100", "00100", "00100", "00100"),
    "Z": ("11111", "00010", "00100", "01000", "10000", "10000", "11111"),
    "0": ("01110", "10001", "10011", "10101", "11001", "10001", "01110"),
    "1": ("00100", "01100", "00100", "00100", "00100", "00100", "11111"),
    "2": ("01110", "10001", "00001", "00010", "00100", "01000", "11111"),
    "3": ("11110", "00001", "00001", "01110", "00001", "00001", "11110"),
    "4": ("10010", "10010", "10010", "11111", "00010", "00010", "00010"),
    "5": ("11111", "10000", "11110", "00001", "00001", "10001", "01110"),
    "6": ("01110", "10000", "11110", "10001", "10001", "10001", "01110"),
    "7": ("11111", "00001", "00010", "00100", "01000", "01000", "01000"),
    "8": ("01110", "10001", "10001", "01110", "10001", "10001", "01110"),
    "9": ("01110", "10001", "10001", "01111", "00001", "00001", "01110"),
    " ": ("00000",) * GLYPH_HEIGHT,
}

TEMPLATES: Dict[str, str] = {
    "AUTOMAX": "AUTOMAX",
    "HIREME": "HIRE ME",
    "HARDWORK": "HARDWORK",
    "DEVELOPER": "DEV",
    "CODING": "CODING",
    "GITHUB": "GITHUB",
    "OPENSOURCE": "OPEN",
    "JAVASCRIPT": "JS",
    "REACT": "REACT",
    "NODEJS": "NODE",
}

# (minimum, extra) -> minimum + randrange(extra)
_INTENSITY_COUNTS = {
    1: (1, 2),   # 1-2 commits
    2: (3, 2),   # 3-4 commits
    3: (5, 3),   # 5-7 commits
    4: (8, 5),   # 8-12 commits
}


@dataclass(frozen=True)
class PatternCommitDate:
    """One commit needed to light a grid cell."""
    date: datetime
    intensity: int
    week: int  # grid column
    day: int   # grid row, 0 = Sunday

    def to_dict(self) -> Dict:
        return {
            "date": self.date.isoformat(),
            "intensity": self.intensity,
            "week": self.week,
            "day": self.day,
        }


def rendered_width(length: int, spacing: int) -> int:
    if length <= 0:
        return 0
    return length * GLYPH_WIDTH + (length - 1) * spacing


def _unsupported_characters(text: str) -> List[str]:
    seen = []
    for ch in text.upper():
        if ch not in GLYPHS and ch not in seen:
            seen.append(ch)
    return seen


def _check_options(intensity: int, alignment: str, spacing: int) -> None:
    if not isinstance(intensity, int) or not MIN_INTENSITY <= intensity <= MAX_INTENSITY:
        raise CommitValidationError(
            f"Intensity must be between {MIN_INTENSITY} and {MAX_INTENSITY}",
            details={"field": "intensity", "value": intensity},
        )
    if alignment not in ALIGNMENTS:
        raise CommitValidationError(
            f"Alignment must be one of {', '.join(ALIGNMENTS)}",
            details={"field": "alignment", "value": alignment},
        )
    if not isinstance(spacing, int) or not MIN_SPACING <= spacing <= MAX_SPACING:
        raise CommitValidationError(
            f"Spacing must be between {MIN_SPACING} and {MAX_SPACING}",
            details={"field": "spacing", "value": spacing},
        )


def render_text(text: str, intensity: int = 3, alignment: str = "center", spacing: int = 1) -> Grid:
    """
    Lay `text` out on an empty 7x53 grid.

    Raises CommitValidationError for empty text, characters outside
    [A-Z0-9 ], a rendered width over 53 columns, or out-of-range options.
    Nothing is ever truncated.
    """
    _check_options(intensity, alignment, spacing)

    clean = (text or "").upper()
    if not clean.strip():
        raise CommitValidationError("Text cannot be empty", details={"field": "text"})

    unsupported = _unsupported_characters(clean)
    if unsupported:
        raise CommitValidationError(
            "Only letters, numbers, and spaces are supported",
            details={"field": "text", "unsupported": unsupported},
        )

    width = rendered_width(len(clean), spacing)
    if width > GRID_COLUMNS:
        raise CommitValidationError(
            f"Text too long: maximum width is {GRID_COLUMNS} columns, got {width}",
            details={"field": "text", "width": width, "max_width": GRID_COLUMNS},
        )

    if alignment == "center":
        start_col = (GRID_COLUMNS - width) // 2
    elif alignment == "right":
        start_col = GRID_COLUMNS - width
    else:
        start_col = 0

    grid = [[0] * GRID_COLUMNS for _ in range(GRID_ROWS)]
    col = start_col
    for ch in clean:
        glyph = GLYPHS[ch]
        for row in range(GLYPH_HEIGHT):
            for offset, bit in enumerate(glyph[row]):
                if bit == "1":
                    grid[row][col + offset] = intensity
        col += GLYPH_WIDTH + spacing

    return grid


def intensity_to_count(intensity: int, rng: Optional[random.Random] = None) -> int:
    """Number of commits to create for one cell of the given intensity."""
    rng = rng or random
    minimum, extra = _INTENSITY_COUNTS.get(intensity, (1, 1))
    return minimum + rng.randrange(extra)


def window_start(end_day: date) -> date:
    """First Sunday of the 53-week window ending on `end_day`."""
    start = end_day - timedelta(days=GRID_COLUMNS * 7 - 1)
    # date.weekday(): Monday=0 .. Sunday=6
    return start - timedelta(days=(start.weekday() + 1) % 7)


def _as_day(value: Union[date, datetime, None], tz: tzinfo) -> date:
    if value is None:
        return datetime.now(tz).date()
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(tz)
        return value.date()
    return value


def grid_to_dates(
    grid: Sequence[Sequence[int]],
    end_date: Union[date, datetime, None] = None,
    rng: Optional[random.Random] = None,
    tz: tzinfo = timezone.utc,
) -> List[PatternCommitDate]:
    """
    Expand every lit cell into commit timestamps, oldest first.

    Column 0 starts on window_start(end_date), always a Sunday; row 0 is
    Sunday. Each
    timestamp gets a random time of day so the graph does not look machine
    made. The result is sorted because backdated commits must be applied in
    chronological order to keep a linear history.
    """
    rng = rng or random
    start = window_start(_as_day(end_date, tz))

    commits: List[PatternCommitDate] = []
    for week in range(GRID_COLUMNS):
        for day in range(GRID_ROWS):
            level = grid[day][week]
            if level <= 0:
                continue
            cell_day = start + timedelta(days=week * 7 + day)
            for _ in range(intensity_to_count(level, rng)):
                moment = datetime.combine(
                    cell_day,
                    time(
                        FIRST_COMMIT_HOUR + rng.randrange(COMMIT_HOUR_SPAN),
                        rng.randrange(60),
                        rng.randrange(60),
                    ),
                    tzinfo=tz,
                )
                commits.append(PatternCommitDate(date=moment, intensity=level, week=week, day=day))

    commits.sort(key=lambda c: c.date)
    return commits


def validate_pattern_text(text: str) -> Dict:
    """Non-raising check used by the preview UI."""
    text = text or ""
    clean = "".join(ch for ch in text.upper() if ch in GLYPHS)
    errors = []

    if not clean.strip():
        errors.append("Text cannot be empty")
    if len(clean) > MAX_TEXT_LENGTH:
        errors.append(f"Text too long: maximum {MAX_TEXT_LENGTH} characters, got {len(clean)}")
    unsupported = _unsupported_characters(text)
    if unsupported:
        errors.append(f"Unsupported characters: {''.join(unsupported)}")

    return {"valid": not errors, "errors": errors, "clean_text": clean}


def preview_pattern(
    text: str,
    intensity: int = 3,
    alignment: str = "center",
    spacing: int = 1,
    end_date: Union[date, datetime, None] = None,
    rng: Optional[random.Random] = None,
    tz: tzinfo = timezone.utc,
) -> Dict:
    grid = render_text(text, intensity=intensity, alignment=alignment, spacing=spacing)
    dates = grid_to_dates(grid, end_date=end_date, rng=rng, tz=tz)
    return {
        "pattern": grid,
        "commitDates": [d.to_dict() for d in dates],
        "stats": {
            "totalCommits": len(dates),
            "dateRange": {
                "start": dates[0].date.isoformat() if dates else None,
                "end": dates[-1].date.isoformat() if dates else None,
            },
            "text": text.upper(),
            "dimensions": {"width": GRID_COLUMNS, "height": GRID_ROWS},
        },
    }


def list_templates() -> List[Dict]:
    return [
        {
            "id": key,
            "name": key,
            "text": value,
            "preview": render_text(value, intensity=2),
        }
        for key, value in TEMPLATES.items()
    ]
