"""Severity zones from percentages.

Readings are stored as *used* percent while zones are judged on *remaining*
quota (100 = full, 0 = exhausted). Every usage classification goes through
:func:`remaining_percent` so the inversion happens in exactly one place.
"""

from models import TimeZone, TimeZones, UsageZone, UsageZones


def remaining_percent(used_percent: float) -> float:
    return max(0.0, min(100.0, 100.0 - used_percent))


def classify_remaining(remaining: float, zones: UsageZones) -> UsageZone:
    # Most severe first: lowest remaining quota.
    bounds = (
        (UsageZone.RED, zones.red - zones.orange),
        (UsageZone.ORANGE, zones.red - zones.yellow),
        (UsageZone.YELLOW, zones.red - zones.green),
    )
    for zone, upper in bounds:
        if remaining <= upper:
            return zone
    return UsageZone.GREEN


def classify_usage(used_percent: float, zones: UsageZones) -> UsageZone:
    return classify_remaining(remaining_percent(used_percent), zones)


def classify_time(elapsed: float, zones: TimeZones) -> TimeZone:
    """Zone for elapsed window time; high elapsed means the reset is near."""
    if elapsed < zones.red:
        return TimeZone.RED
    if elapsed < zones.orange:
        return TimeZone.ORANGE
    if elapsed < zones.yellow:
        return TimeZone.YELLOW
    return TimeZone.BLUE
