"""Shared fixtures for quota-meter tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from config import ProviderSettings, Settings, SettingsStore
from db import SnapshotCache
from engine import UsageEngine
from models import UsageQueryResult

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeSource:
    """Scriptable usage source.

    Returns ``result`` on every query. When ``gate`` is set, queries block
    until it is released; ``token_gate`` does the same for the credential
    check, which reports the token state from when it was called.
    """

    def __init__(self, provider_id: str, result: UsageQueryResult | None = None, token: bool = True):
        self.provider_id = provider_id
        self.result = result or UsageQueryResult(ok=True, used_percent=42.0)
        self.token = token
        self.gate: asyncio.Event | None = None
        self.token_gate: asyncio.Event | None = None
        self.error: Exception | None = None
        self.calls = 0

    async def has_valid_token(self) -> bool:
        present = self.token
        if self.token_gate is not None:
            await self.token_gate.wait()
        return present

    async def query_usage(self) -> UsageQueryResult:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=tmp_path / "usage.db",
        startup_jitter=0,
        request_timeout=1.0,
        providers={
            "claude": ProviderSettings(initial_delay=0.01, poll_interval=60),
            "codex": ProviderSettings(initial_delay=0.02, poll_interval=60),
        },
    )


@pytest.fixture
def settings_store(settings):
    return SettingsStore(settings)


@pytest.fixture
def cache(settings):
    return SnapshotCache(settings.db_path, stale_after=settings.stale_after)


@pytest.fixture
def engine(cache, settings_store, clock):
    engine = UsageEngine(cache, settings_store, clock=clock)
    engine.record_token("claude", True)
    engine.record_token("codex", True)
    return engine
