import logging
from datetime import timedelta
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from db import DB_PATH, STALE_AFTER
from models import ThresholdConfig

log = logging.getLogger(__name__)


class ProviderSettings(BaseModel):
    """Polling cadence, window sizes and zone thresholds for one provider."""

    enabled: bool = True
    initial_delay: float = 5.0  # seconds before the first poll
    poll_interval: float = 120.0
    window_minutes: int = 300
    secondary_window_minutes: int = 10080
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    alert_thresholds: list[int] = Field(default_factory=lambda: [70, 90, 100])  # used percent

    @field_validator("poll_interval", "window_minutes", "secondary_window_minutes")
    @classmethod
    def validate_positive(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive, got {v}")
        return v

    @field_validator("alert_thresholds")
    @classmethod
    def validate_alerts(cls, v: list[int]) -> list[int]:
        for threshold in v:
            if not 0 < threshold <= 100:
                raise ValueError(f"alert threshold must be within 1..100, got {threshold}")
        return sorted(set(v))

    @field_validator("initial_delay")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"initial_delay must not be negative, got {v}")
        return v

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.window_minutes)

    @property
    def secondary_window(self) -> timedelta:
        return timedelta(minutes=self.secondary_window_minutes)


def _default_providers() -> dict[str, ProviderSettings]:
    # Claude's 5h quota moves fast; Codex limits are read from session logs
    # and change more slowly. Initial delays are staggered.
    return {
        "claude": ProviderSettings(initial_delay=5.0, poll_interval=120.0),
        "codex": ProviderSettings(initial_delay=6.0, poll_interval=300.0),
    }


def _deep_merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, BaseModel):
            value = value.model_dump(exclude_unset=True)
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Settings(BaseSettings):
    """Runtime configuration, overridable via ``QUOTA_METER_*`` env vars or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="QUOTA_METER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_path: Path = DB_PATH
    stale_after_seconds: float = STALE_AFTER.total_seconds()
    request_timeout: float = 12.0
    startup_jitter: float = 1.0
    log_level: str = "INFO"
    providers: dict[str, ProviderSettings] = Field(default_factory=_default_providers)

    @field_validator("providers", mode="before")
    @classmethod
    def merge_default_providers(cls, v):
        # Overriding one provider (e.g. QUOTA_METER_PROVIDERS__CLAUDE__POLL_INTERVAL)
        # keeps the other providers and the unset fields of the overridden one.
        if not isinstance(v, dict):
            return v
        merged = {pid: p.model_dump() for pid, p in _default_providers().items()}
        for pid, override in v.items():
            if isinstance(override, ProviderSettings):
                override = override.model_dump(exclude_unset=True)
            if isinstance(override, dict) and pid in merged:
                merged[pid] = _deep_merge(merged[pid], override)
            else:
                merged[pid] = override
        return merged

    @field_validator("stale_after_seconds", "request_timeout")
    @classmethod
    def validate_positive(cls, v: float, info) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive, got {v}")
        return v

    @field_validator("startup_jitter")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"startup_jitter must not be negative, got {v}")
        return v

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.stale_after_seconds)


class SettingsStore:
    """User-owned provider settings; read on every classification, never cached."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._defaults = {
            pid: p.thresholds.model_copy(deep=True)
            for pid, p in self.settings.providers.items()
        }

    def provider_ids(self) -> list[str]:
        return list(self.settings.providers)

    def provider(self, provider_id: str) -> ProviderSettings:
        try:
            return self.settings.providers[provider_id]
        except KeyError:
            raise KeyError(f"Unknown provider: {provider_id}") from None

    def thresholds(self, provider_id: str) -> ThresholdConfig:
        return self.provider(provider_id).thresholds

    def update_thresholds(self, provider_id: str, thresholds: ThresholdConfig) -> None:
        self.provider(provider_id).thresholds = thresholds
        log.info("Thresholds updated for %s", provider_id)

    def reset(self) -> None:
        """Restore every provider's thresholds to their configured defaults."""
        for pid, defaults in self._defaults.items():
            self.settings.providers[pid].thresholds = defaults.model_copy(deep=True)
