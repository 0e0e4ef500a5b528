"""Usage state machine.

:func:`classify` is a pure function of (cache entry, latest poll result, time,
credential signal). :class:`UsageEngine` owns each provider's cache slot,
applies poll results to it and turns the classification into the
:class:`~models.DisplaySnapshot` that readers consume.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from config import SettingsStore
from db import SnapshotCache
from models import (
    CacheEntry,
    DisplaySnapshot,
    DisplayState,
    Snapshot,
    ThresholdAlert,
    UsageQueryResult,
)
from thresholds import classify_time, classify_usage, remaining_percent
from windows import elapsed_percent, format_age, format_countdown, format_days

log = logging.getLogger(__name__)

Listener = Callable[[DisplaySnapshot], None]
AlertListener = Callable[[ThresholdAlert], None]

# resets_at reported for the same window can drift by a few seconds between polls.
WINDOW_DRIFT = timedelta(minutes=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Classification:
    state: DisplayState
    snapshot: Snapshot | None = None
    fresh: bool = False  # snapshot came from the latest result
    stale_age_seconds: int | None = None


def classify(
    entry: CacheEntry | None,
    result: UsageQueryResult | None,
    now: datetime,
    has_token: bool,
) -> Classification:
    if not has_token:
        return Classification(DisplayState.NO_CREDENTIALS)

    if result is not None and result.has_reading:
        snapshot = Snapshot.from_result(result, observed_at=now)
        return Classification(_session_state(DisplayState.LIVE, snapshot, now), snapshot, fresh=True)

    if entry is not None:
        snapshot = entry.last_good
        age = max(0, int((now - snapshot.observed_at).total_seconds()))
        state = _session_state(DisplayState.STALE_FALLBACK, snapshot, now)
        return Classification(state, snapshot, stale_age_seconds=age)

    return Classification(DisplayState.AWAITING_FIRST_READING)


def _session_state(state: DisplayState, snapshot: Snapshot, now: datetime) -> DisplayState:
    # A 0% reading with no running window is an unstarted session, not a
    # countdown to "0s".
    window_over = snapshot.resets_at is not None and snapshot.resets_at <= now
    if window_over and snapshot.used_percent > 0:
        return DisplayState.SESSION_EXPIRED
    if snapshot.used_percent == 0 and (snapshot.resets_at is None or window_over):
        return DisplayState.SESSION_NOT_STARTED
    return state


class UsageEngine:
    """Single owner of every provider's cache slot."""

    def __init__(
        self,
        cache: SnapshotCache,
        settings_store: SettingsStore,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.cache = cache
        self.settings_store = settings_store
        self.clock = clock
        self._latest: dict[str, UsageQueryResult] = {}
        self._has_token: dict[str, bool] = {}
        self._enabled: set[str] = {
            pid for pid in settings_store.provider_ids()
            if settings_store.provider(pid).enabled
        }
        self._listeners: list[Listener] = []
        self._alert_listeners: list[AlertListener] = []
        # Alert thresholds already fired, and the resets_at of the window they belong to.
        self._fired: dict[str, set[int]] = {}
        self._alert_window: dict[str, datetime | None] = {}

    def is_enabled(self, provider_id: str) -> bool:
        return provider_id in self._enabled

    def set_enabled(self, provider_id: str, enabled: bool) -> None:
        if enabled:
            self._enabled.add(provider_id)
        else:
            self._enabled.discard(provider_id)
            self._latest.pop(provider_id, None)

    def record_token(self, provider_id: str, present: bool) -> None:
        if self._has_token.get(provider_id) != present:
            log.info("Credential signal for %s: %s", provider_id, "present" if present else "absent")
        self._has_token[provider_id] = present

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return _add_listener(self._listeners, listener)

    def subscribe_alerts(self, listener: AlertListener) -> Callable[[], None]:
        """Receive a :class:`~models.ThresholdAlert` once per threshold per window."""
        return _add_listener(self._alert_listeners, listener)

    def clear(self) -> None:
        """Forget every reading, cached or in memory. Credential signals are kept."""
        self.cache.clear()
        self._latest.clear()
        self._fired.clear()
        self._alert_window.clear()

    def apply(
        self,
        provider_id: str,
        result: UsageQueryResult,
        has_token: bool | None = None,
    ) -> DisplaySnapshot:
        """Fold one poll result into the provider's state and cache slot.

        ``has_token`` is the credential signal read by the same poll; it is
        recorded only if the result itself is accepted.
        """
        now = self.clock()
        if result.observed_at is None:
            result = result.model_copy(update={"observed_at": now})

        if not self.is_enabled(provider_id):
            log.debug("Discarding result for disabled provider %s", provider_id)
            return self.view(provider_id)

        latest = self._latest.get(provider_id)
        if latest is not None and result.observed_at < latest.observed_at:
            log.debug(
                "Discarding out-of-order result for %s (observed %s, latest %s)",
                provider_id, result.observed_at, latest.observed_at,
            )
            return self.view(provider_id)

        self._latest[provider_id] = result
        if has_token is not None:
            self.record_token(provider_id, has_token)
        if not result.has_reading:
            log.debug("No reading for %s: %s", provider_id, result.error_reason)

        entry = self.cache.get(provider_id, now)
        cls = classify(entry, result, now, self._has_token.get(provider_id, False))
        if cls.fresh:
            entry = self.cache.put(provider_id, cls.snapshot)
            self._check_alerts(provider_id, cls.snapshot, now)
        elif cls.snapshot is not None:
            self.cache.mark_stale(provider_id)
            entry = self.cache.get(provider_id, now)

        display = self._render(provider_id, cls, entry, result, now)
        self._notify(display)
        return display

    def view(self, provider_id: str) -> DisplaySnapshot:
        now = self.clock()
        if not self.is_enabled(provider_id):
            return self._render(provider_id, classify(None, None, now, False), None, None, now)
        entry = self.cache.get(provider_id, now)
        result = self._latest.get(provider_id)
        current = result
        if result is not None and result.has_reading and now - result.observed_at > self.cache.stale_after:
            # The last good reading has aged out; show it from the cache as stale.
            current = None
        cls = classify(entry, current, now, self._has_token.get(provider_id, False))
        return self._render(provider_id, cls, entry, result, now)

    def _render(
        self,
        provider_id: str,
        cls: Classification,
        entry: CacheEntry | None,
        result: UsageQueryResult | None,
        now: datetime,
    ) -> DisplaySnapshot:
        error_reason = result.error_reason if result is not None else None
        snapshot = cls.snapshot
        if snapshot is None:
            return DisplaySnapshot(
                provider_id=provider_id,
                display_state=cls.state,
                countdown_text=format_countdown(None, now),
                error_reason=error_reason,
            )

        provider = self.settings_store.provider(provider_id)
        thresholds = self.settings_store.thresholds(provider_id)
        elapsed = None
        if snapshot.resets_at is not None:
            elapsed = elapsed_percent(snapshot.resets_at, provider.window, now)

        weekly_remaining = weekly_elapsed = None
        if snapshot.secondary_used_percent is not None:
            weekly_remaining = remaining_percent(snapshot.secondary_used_percent)
            if snapshot.secondary_resets_at is not None:
                weekly_elapsed = elapsed_percent(snapshot.secondary_resets_at, provider.secondary_window, now)

        is_stale = not cls.fresh and entry is not None and entry.is_stale
        return DisplaySnapshot(
            provider_id=provider_id,
            display_state=cls.state,
            used_percent=snapshot.used_percent,
            remaining_percent=remaining_percent(snapshot.used_percent),
            countdown_text=format_countdown(snapshot.resets_at, now),
            elapsed_percent=elapsed,
            severity_zone=classify_usage(snapshot.used_percent, thresholds.usage_zones),
            time_zone=classify_time(elapsed, thresholds.time_zones) if elapsed is not None else None,
            is_stale=is_stale,
            stale_age_seconds=cls.stale_age_seconds if is_stale else None,
            stale_age_text=format_age(cls.stale_age_seconds) if is_stale else None,
            weekly_remaining_percent=weekly_remaining,
            weekly_elapsed_percent=weekly_elapsed,
            weekly_countdown_text=format_days(snapshot.secondary_resets_at, now),
            error_reason=error_reason,
        )

    def _check_alerts(self, provider_id: str, snapshot: Snapshot, now: datetime) -> None:
        fired = self._fired.setdefault(provider_id, set())
        window = self._alert_window.get(provider_id)
        rolled_over = (window is not None and window <= now) or not _same_window(window, snapshot.resets_at)
        if rolled_over and fired:
            log.debug("Window rolled over for %s; re-arming alerts", provider_id)
            fired.clear()
        self._alert_window[provider_id] = snapshot.resets_at

        for threshold in self.settings_store.provider(provider_id).alert_thresholds:
            if snapshot.used_percent < threshold or threshold in fired:
                continue
            fired.add(threshold)
            alert = ThresholdAlert(
                provider_id=provider_id,
                threshold=threshold,
                used_percent=snapshot.used_percent,
                resets_at=snapshot.resets_at,
                fired_at=now,
            )
            log.info("%s usage reached %d%% (%.0f%% used)", provider_id, threshold, snapshot.used_percent)
            for listener in list(self._alert_listeners):
                try:
                    listener(alert)
                except Exception:
                    log.exception("Alert listener failed for %s", provider_id)

    def _notify(self, display: DisplaySnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(display)
            except Exception:
                log.exception("Display listener failed for %s", display.provider_id)


def _add_listener(listeners: list, listener) -> Callable[[], None]:
    listeners.append(listener)

    def unsubscribe() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return unsubscribe


def _same_window(previous: datetime | None, current: datetime | None) -> bool:
    if previous is None or current is None:
        return previous is current
    return abs(current - previous) <= WINDOW_DRIFT
