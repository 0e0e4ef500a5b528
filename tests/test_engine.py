"""Tests for the usage state machine and engine."""

from datetime import timedelta

import pytest

from conftest import NOW
from db import SnapshotCache
from engine import UsageEngine, classify
from models import (
    CacheEntry,
    DisplayState,
    FailureReason,
    Snapshot,
    TimeZone,
    UsageQueryResult,
    UsageZone,
    UsageZones,
    ThresholdConfig,
)
from windows import WAITING


def _ok(used=42.0, resets_in=timedelta(hours=2), observed_at=None, **kwargs) -> UsageQueryResult:
    resets_at = NOW + resets_in if resets_in is not None else None
    return UsageQueryResult(ok=True, used_percent=used, resets_at=resets_at, observed_at=observed_at, **kwargs)


def _failed(observed_at=None) -> UsageQueryResult:
    return UsageQueryResult.failure(FailureReason.TRANSIENT, observed_at=observed_at)


def _entry(used=42.0, resets_in=timedelta(hours=2), age=timedelta(minutes=1), stale=False) -> CacheEntry:
    resets_at = NOW + resets_in if resets_in is not None else None
    snapshot = Snapshot(used_percent=used, resets_at=resets_at, observed_at=NOW - age)
    return CacheEntry(last_good=snapshot, is_stale=stale)


class TestClassify:
    """Precedence of the pure classification."""

    def test_no_token_wins_over_everything(self):
        cls = classify(_entry(), _ok(), NOW, has_token=False)

        assert cls.state == DisplayState.NO_CREDENTIALS
        assert cls.snapshot is None

    def test_live_reading(self):
        cls = classify(_entry(used=10.0), _ok(used=42.0), NOW, has_token=True)

        assert cls.state == DisplayState.LIVE
        assert cls.fresh is True
        assert cls.snapshot.used_percent == 42.0

    def test_failure_falls_back_to_cache(self):
        cls = classify(_entry(used=42.0, age=timedelta(minutes=3)), _failed(), NOW, has_token=True)

        assert cls.state == DisplayState.STALE_FALLBACK
        assert cls.snapshot.used_percent == 42.0
        assert cls.stale_age_seconds == 180

    def test_ok_without_percent_is_not_a_reading(self):
        result = UsageQueryResult(ok=True, used_percent=None)

        assert classify(None, result, NOW, has_token=True).state == DisplayState.AWAITING_FIRST_READING
        assert classify(_entry(), result, NOW, has_token=True).state == DisplayState.STALE_FALLBACK

    def test_first_failure_without_cache_awaits(self):
        cls = classify(None, _failed(), NOW, has_token=True)

        assert cls.state == DisplayState.AWAITING_FIRST_READING

    def test_zero_usage_without_window_not_started(self):
        cls = classify(None, _ok(used=0.0, resets_in=None), NOW, has_token=True)

        assert cls.state == DisplayState.SESSION_NOT_STARTED

    def test_zero_usage_with_past_reset_not_started(self):
        cls = classify(None, _ok(used=0.0, resets_in=-timedelta(minutes=5)), NOW, has_token=True)

        assert cls.state == DisplayState.SESSION_NOT_STARTED

    def test_used_with_past_reset_expired(self):
        cls = classify(None, _ok(used=30.0, resets_in=-timedelta(minutes=5)), NOW, has_token=True)

        assert cls.state == DisplayState.SESSION_EXPIRED

    def test_cached_reading_past_reset_expired(self):
        cls = classify(_entry(used=30.0, resets_in=-timedelta(minutes=1)), _failed(), NOW, has_token=True)

        assert cls.state == DisplayState.SESSION_EXPIRED

    def test_zero_usage_with_running_window_is_live(self):
        cls = classify(None, _ok(used=0.0, resets_in=timedelta(hours=1)), NOW, has_token=True)

        assert cls.state == DisplayState.LIVE


class TestEngineApply:
    def test_live_result_written_to_cache(self, engine, cache):
        display = engine.apply("claude", _ok(used=42.0))

        assert display.display_state == DisplayState.LIVE
        assert display.remaining_percent == 58.0
        assert display.is_stale is False
        assert cache.get("claude", NOW).last_good.used_percent == 42.0

    def test_failure_after_live_keeps_last_reading(self, engine, cache, clock):
        engine.apply("claude", _ok(used=42.0))
        clock.advance(minutes=2)

        display = engine.apply("claude", _failed())

        assert display.display_state == DisplayState.STALE_FALLBACK
        assert display.used_percent == 42.0
        assert display.remaining_percent == 58.0
        assert display.remaining_percent not in (0.0, 100.0)
        assert display.is_stale is True
        assert display.stale_age_seconds == 120
        assert display.stale_age_text == "2 min ago"
        assert display.error_reason == "transient"
        assert cache.get("claude", clock()).is_stale is True

    def test_first_failure_awaits_first_reading(self, engine, cache):
        display = engine.apply("claude", _failed())

        assert display.display_state == DisplayState.AWAITING_FIRST_READING
        assert display.remaining_percent is None
        assert display.countdown_text == WAITING
        assert cache.get("claude", NOW) is None

    def test_auth_expired_shows_like_transient(self, engine):
        engine.apply("claude", _ok(used=42.0))

        display = engine.apply("claude", UsageQueryResult.failure(FailureReason.AUTH_EXPIRED))

        assert display.display_state == DisplayState.STALE_FALLBACK
        assert display.error_reason == "auth_expired"

    def test_missing_token(self, engine):
        engine.apply("claude", _ok(used=42.0))
        engine.record_token("claude", False)

        display = engine.apply("claude", UsageQueryResult.failure(FailureReason.CREDENTIAL_MISSING))

        assert display.display_state == DisplayState.NO_CREDENTIALS
        assert display.used_percent is None

    def test_success_clears_staleness(self, engine, clock):
        engine.apply("claude", _ok(used=42.0))
        clock.advance(minutes=10)
        engine.apply("claude", _failed())
        clock.advance(minutes=1)

        display = engine.apply("claude", _ok(used=50.0))

        assert display.display_state == DisplayState.LIVE
        assert display.is_stale is False
        assert display.stale_age_seconds is None

    def test_out_of_order_result_discarded(self, engine, cache):
        engine.apply("claude", _ok(used=60.0, observed_at=NOW))

        display = engine.apply("claude", _ok(used=20.0, observed_at=NOW - timedelta(seconds=30)))

        assert display.used_percent == 60.0
        assert cache.get("claude", NOW).last_good.used_percent == 60.0

    def test_late_failure_does_not_mark_stale(self, engine, cache):
        engine.apply("claude", _ok(used=60.0, observed_at=NOW))

        engine.apply("claude", _failed(observed_at=NOW - timedelta(seconds=5)))

        assert cache.get("claude", NOW).is_stale is False

    def test_token_signal_recorded_with_result(self, cache, settings_store, clock):
        engine = UsageEngine(cache, settings_store, clock=clock)

        display = engine.apply("claude", _ok(used=42.0), has_token=True)

        assert display.display_state == DisplayState.LIVE

    def test_out_of_order_token_signal_ignored(self, engine):
        engine.apply(
            "claude",
            UsageQueryResult.failure(FailureReason.CREDENTIAL_MISSING, observed_at=NOW),
            has_token=False,
        )

        engine.apply("claude", _ok(used=42.0, observed_at=NOW - timedelta(seconds=30)), has_token=True)

        assert engine.view("claude").display_state == DisplayState.NO_CREDENTIALS

    def test_disabled_provider_discards_result(self, engine, cache):
        engine.set_enabled("claude", False)

        display = engine.apply("claude", _ok(used=42.0))

        assert display.display_state == DisplayState.NO_CREDENTIALS
        assert cache.get("claude", NOW) is None

    def test_display_fields(self, engine, settings_store):
        settings_store.update_thresholds(
            "claude", ThresholdConfig(usage_zones=UsageZones(green=50, yellow=70, orange=80))
        )

        display = engine.apply(
            "claude",
            _ok(
                used=58.0,
                resets_in=timedelta(minutes=90),
                secondary_used_percent=20.0,
                secondary_resets_at=NOW + timedelta(days=2, hours=1),
            ),
        )

        assert display.elapsed_percent == pytest.approx(70.0)
        assert display.remaining_percent == 42.0
        assert display.severity_zone == UsageZone.YELLOW
        assert display.time_zone == TimeZone.BLUE
        assert display.countdown_text == "1h 30m"
        assert display.weekly_remaining_percent == 80.0
        assert display.weekly_countdown_text == "3 days"

    def test_thresholds_read_on_every_call(self, engine, settings_store):
        engine.apply("claude", _ok(used=58.0))
        assert engine.view("claude").severity_zone == UsageZone.GREEN

        settings_store.update_thresholds(
            "claude", ThresholdConfig(usage_zones=UsageZones(green=50, yellow=70, orange=80))
        )

        assert engine.view("claude").severity_zone == UsageZone.YELLOW

    def test_not_started_countdown_is_waiting(self, engine):
        display = engine.apply("claude", _ok(used=0.0, resets_in=None))

        assert display.display_state == DisplayState.SESSION_NOT_STARTED
        assert display.countdown_text == WAITING
        assert display.remaining_percent == 100.0
        assert display.time_zone is None


class TestEngineView:
    def test_startup_with_old_cache_is_stale(self, settings, settings_store, clock):
        SnapshotCache(settings.db_path).put(
            "claude", Snapshot(used_percent=42.0, observed_at=NOW - timedelta(minutes=10),
                               resets_at=NOW + timedelta(hours=1))
        )
        cache = SnapshotCache(settings.db_path, stale_after=settings.stale_after)
        cache.load(now=NOW)
        engine = UsageEngine(cache, settings_store, clock=clock)
        engine.record_token("claude", True)

        display = engine.view("claude")

        assert display.display_state == DisplayState.STALE_FALLBACK
        assert display.is_stale is True
        assert display.stale_age_seconds == 600
        assert display.remaining_percent == 58.0

    def test_live_reading_ages_into_stale(self, engine, clock):
        engine.apply("claude", _ok(used=42.0))
        clock.advance(minutes=4)
        assert engine.view("claude").display_state == DisplayState.LIVE

        clock.advance(minutes=6)
        display = engine.view("claude")

        assert display.display_state == DisplayState.STALE_FALLBACK
        assert display.is_stale is True
        assert display.stale_age_seconds == 600
        assert display.stale_age_text == "10 min ago"
        assert display.remaining_percent == 58.0

    def test_clear_forgets_readings(self, engine, cache):
        engine.apply("claude", _ok(used=42.0))

        engine.clear()

        assert cache.get("claude", NOW) is None
        assert engine.view("claude").display_state == DisplayState.AWAITING_FIRST_READING

    def test_nothing_known(self, engine):
        assert engine.view("claude").display_state == DisplayState.AWAITING_FIRST_READING

    def test_unknown_token_means_no_credentials(self, cache, settings_store, clock):
        engine = UsageEngine(cache, settings_store, clock=clock)

        assert engine.view("claude").display_state == DisplayState.NO_CREDENTIALS


class TestSubscriptions:
    def test_listeners_receive_snapshots(self, engine):
        seen = []
        unsubscribe = engine.subscribe(seen.append)

        engine.apply("claude", _ok(used=42.0))
        unsubscribe()
        engine.apply("claude", _ok(used=50.0))

        assert [d.used_percent for d in seen] == [42.0]

    def test_failing_listener_does_not_break_apply(self, engine):
        def boom(display):
            raise RuntimeError("listener bug")

        engine.subscribe(boom)

        display = engine.apply("claude", _ok(used=42.0))

        assert display.display_state == DisplayState.LIVE


class TestAlerts:
    """Threshold alerts fire once per threshold per window."""

    @pytest.fixture
    def alerts(self, engine):
        fired = []
        engine.subscribe_alerts(fired.append)
        return fired

    def test_upward_crossings_fire_once(self, engine, alerts, clock):
        engine.apply("claude", _ok(used=60.0))
        assert alerts == []

        clock.advance(minutes=1)
        engine.apply("claude", _ok(used=75.0))
        clock.advance(minutes=1)
        engine.apply("claude", _ok(used=80.0))

        assert [a.threshold for a in alerts] == [70]
        assert alerts[0].provider_id == "claude"
        assert alerts[0].used_percent == 75.0

    def test_jump_fires_every_crossed_threshold(self, engine, alerts):
        engine.apply("claude", _ok(used=100.0))

        assert [a.threshold for a in alerts] == [70, 90, 100]

    def test_failures_do_not_fire(self, engine, alerts, clock):
        engine.apply("claude", _ok(used=75.0))
        clock.advance(minutes=1)
        engine.apply("claude", _failed())

        assert [a.threshold for a in alerts] == [70]

    def test_new_window_rearms(self, engine, alerts, clock):
        engine.apply("claude", _ok(used=75.0))

        clock.advance(hours=3)
        engine.apply("claude", _ok(used=72.0, resets_in=timedelta(hours=7)))

        assert [a.threshold for a in alerts] == [70, 70]

    def test_small_reset_drift_is_same_window(self, engine, alerts, clock):
        engine.apply("claude", _ok(used=75.0))

        clock.advance(minutes=1)
        engine.apply("claude", _ok(used=76.0, resets_in=timedelta(hours=2, seconds=2)))

        assert len(alerts) == 1

    def test_thresholds_from_settings(self, engine, alerts, settings_store):
        settings_store.provider("claude").alert_thresholds = [50]

        engine.apply("claude", _ok(used=75.0))

        assert [a.threshold for a in alerts] == [50]

    def test_failing_alert_listener_is_contained(self, engine):
        def boom(alert):
            raise RuntimeError("notifier down")

        engine.subscribe_alerts(boom)

        assert engine.apply("claude", _ok(used=95.0)).display_state == DisplayState.LIVE
