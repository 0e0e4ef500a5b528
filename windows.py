"""Rolling-window arithmetic: progress through a window and countdown text.

Each window (5h, 7d) is computed from its own reset timestamp; nothing here
derives one window from another.
"""

import math
from datetime import datetime, timedelta

FIVE_HOUR_WINDOW = timedelta(hours=5)
SEVEN_DAY_WINDOW = timedelta(days=7)

# Shown instead of a zero or negative countdown.
WAITING = "Waiting to start"


def remaining_seconds(resets_at: datetime | None, now: datetime) -> float | None:
    if resets_at is None:
        return None
    return (resets_at - now).total_seconds()


def elapsed_percent(resets_at: datetime | None, window: timedelta, now: datetime) -> float:
    """Percentage of ``window`` already elapsed, clamped to 0..100."""
    if resets_at is None:
        return 0.0
    total = window.total_seconds()
    if total <= 0:
        raise ValueError(f"window must be positive, got {window}")
    remaining = (resets_at - now).total_seconds()
    return max(0.0, min(100.0, 100.0 * (total - remaining) / total))


def format_countdown(resets_at: datetime | None, now: datetime) -> str:
    remaining = remaining_seconds(resets_at, now)
    if remaining is None or remaining <= 0:
        return WAITING

    hours = int(remaining // 3600)
    minutes = int((remaining % 3600) // 60)
    seconds = int(remaining % 60)
    if hours > 0:
        return f"{hours}h {minutes:02d}m"
    if minutes > 0:
        return f"{minutes}m {seconds:02d}s"
    return f"{seconds}s"


def format_days(resets_at: datetime | None, now: datetime) -> str | None:
    """Coarse countdown for long windows, e.g. ``"3 days"``."""
    remaining = remaining_seconds(resets_at, now)
    if remaining is None or remaining <= 0:
        return None
    days = math.ceil(remaining / 86400)
    return "1 day" if days == 1 else f"{days} days"


def format_age(seconds: float) -> str:
    minutes = round(seconds / 60)
    if minutes < 1:
        return "just now"
    if minutes == 1:
        return "1 min ago"
    return f"{minutes} min ago"
