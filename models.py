from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FailureReason(str, Enum):
    CREDENTIAL_MISSING = "credential_missing"
    TRANSIENT = "transient"  # network, timeout, 5xx
    AUTH_EXPIRED = "auth_expired"
    MALFORMED_RESPONSE = "malformed_response"


class DisplayState(str, Enum):
    NO_CREDENTIALS = "no_credentials"
    AWAITING_FIRST_READING = "awaiting_first_reading"
    LIVE = "live"
    STALE_FALLBACK = "stale_fallback"
    SESSION_NOT_STARTED = "session_not_started"
    SESSION_EXPIRED = "session_expired"


class UsageZone(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    ORANGE = "orange"
    RED = "red"


class TimeZone(str, Enum):
    RED = "red"  # far from reset
    ORANGE = "orange"
    YELLOW = "yellow"
    BLUE = "blue"  # about to reset, informational


class UsageQueryResult(BaseModel):
    """Outcome of one poll attempt against a usage oracle."""

    ok: bool
    used_percent: float | None = None
    resets_at: datetime | None = None
    error_reason: str | None = None
    secondary_used_percent: float | None = None  # 7d window
    secondary_resets_at: datetime | None = None
    observed_at: datetime | None = None  # stamped when the poll is issued

    @classmethod
    def failure(cls, reason: FailureReason, observed_at: datetime | None = None) -> "UsageQueryResult":
        return cls(ok=False, error_reason=reason.value, observed_at=observed_at)

    @property
    def has_reading(self) -> bool:
        return self.ok and self.used_percent is not None


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    used_percent: float = Field(ge=0, le=100)
    resets_at: datetime | None = None
    observed_at: datetime
    secondary_used_percent: float | None = Field(default=None, ge=0, le=100)
    secondary_resets_at: datetime | None = None

    @classmethod
    def from_result(cls, result: UsageQueryResult, observed_at: datetime) -> "Snapshot":
        secondary = result.secondary_used_percent
        return cls(
            used_percent=_clamp(result.used_percent),
            resets_at=result.resets_at,
            observed_at=result.observed_at or observed_at,
            secondary_used_percent=_clamp(secondary) if secondary is not None else None,
            secondary_resets_at=result.secondary_resets_at,
        )


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    last_good: Snapshot
    is_stale: bool = False


class UsageZones(BaseModel):
    """Upper bounds in *used* percent: used < green is green, and so on."""

    green: float = 70
    yellow: float = 85
    orange: float = 95
    red: float = 100

    @model_validator(mode="after")
    def _check_order(self) -> "UsageZones":
        bounds = (self.green, self.yellow, self.orange, self.red)
        if not 0 < self.green < self.yellow < self.orange < self.red:
            raise ValueError(f"usage zones must be strictly increasing, got {bounds}")
        if self.red != 100:
            raise ValueError(f"red usage bound must be 100, got {self.red}")
        return self


class TimeZones(BaseModel):
    """Upper bounds in *elapsed* percent of the window."""

    red: float = 20
    orange: float = 40
    yellow: float = 70
    blue: float = 100

    @model_validator(mode="after")
    def _check_order(self) -> "TimeZones":
        bounds = (self.red, self.orange, self.yellow, self.blue)
        if not 0 < self.red < self.orange < self.yellow < self.blue:
            raise ValueError(f"time zones must be strictly increasing, got {bounds}")
        if self.blue != 100:
            raise ValueError(f"blue time bound must be 100, got {self.blue}")
        return self


class ThresholdConfig(BaseModel):
    usage_zones: UsageZones = Field(default_factory=UsageZones)
    time_zones: TimeZones = Field(default_factory=TimeZones)


class DisplaySnapshot(BaseModel):
    provider_id: str
    display_state: DisplayState
    used_percent: float | None = None
    remaining_percent: float | None = None
    countdown_text: str
    elapsed_percent: float | None = None
    severity_zone: UsageZone | None = None
    time_zone: TimeZone | None = None
    is_stale: bool = False
    stale_age_seconds: int | None = None
    stale_age_text: str | None = None
    weekly_remaining_percent: float | None = None
    weekly_elapsed_percent: float | None = None
    weekly_countdown_text: str | None = None
    error_reason: str | None = None


class ThresholdAlert(BaseModel):
    """Usage crossed one of the provider's alert thresholds in the current window."""

    provider_id: str
    threshold: int
    used_percent: float
    resets_at: datetime | None = None
    fired_at: datetime


class UsageSummary(BaseModel):
    services: list[DisplaySnapshot] = []
    last_refreshed: str | None = None


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, float(value)))
