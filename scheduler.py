import asyncio
import logging
import random

from config import SettingsStore
from engine import UsageEngine
from models import DisplaySnapshot, FailureReason, UsageQueryResult
from sources import UsageSource

log = logging.getLogger(__name__)


class PollScheduler:
    """Per-provider polling on independent timers.

    Each enabled provider gets one timer task in ``_timers``: an initial poll
    after a staggered, jittered delay, then one poll every ``poll_interval``.
    Polls run as their own tasks so a slow oracle never delays the next tick.
    Manual refreshes are one-shot polls on top of the schedule.
    """

    def __init__(
        self,
        engine: UsageEngine,
        sources: dict[str, UsageSource],
        settings_store: SettingsStore,
        request_timeout: float = 12.0,
        startup_jitter: float = 1.0,
    ):
        self.engine = engine
        self.settings_store = settings_store
        self.request_timeout = request_timeout
        self.startup_jitter = startup_jitter
        self._sources = sources
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: dict[str, set[asyncio.Task]] = {}
        self._generation: dict[str, int] = {}

    @property
    def provider_ids(self) -> list[str]:
        return list(self._sources)

    def start(self) -> None:
        for provider_id in self._sources:
            if self.settings_store.provider(provider_id).enabled:
                self.enable(provider_id)
            else:
                self.engine.set_enabled(provider_id, False)

    async def check_credentials(self) -> None:
        """Read every source's credential signal once, ahead of the first poll."""

        async def check(provider_id: str, source: UsageSource) -> None:
            try:
                present = await asyncio.wait_for(source.has_valid_token(), self.request_timeout)
            except asyncio.TimeoutError:
                log.warning("Credential check for %s timed out", provider_id)
                return
            except Exception:
                log.exception("Credential check for %s raised", provider_id)
                return
            self.engine.record_token(provider_id, present)

        await asyncio.gather(*(check(pid, source) for pid, source in self._sources.items()))

    def is_scheduled(self, provider_id: str) -> bool:
        timer = self._timers.get(provider_id)
        return timer is not None and not timer.done()

    def enable(self, provider_id: str) -> None:
        if provider_id not in self._sources:
            raise KeyError(f"Unknown provider: {provider_id}")
        self._cancel(provider_id)
        generation = self._bump(provider_id)
        self.engine.set_enabled(provider_id, True)

        delay = self.settings_store.provider(provider_id).initial_delay
        if self.startup_jitter:
            delay += random.uniform(0, self.startup_jitter)
        self._timers[provider_id] = asyncio.create_task(
            self._run(provider_id, delay, generation), name=f"poll-timer:{provider_id}"
        )
        log.debug("Polling %s: first poll in %.1fs", provider_id, delay)

    def disable(self, provider_id: str) -> None:
        if provider_id not in self._sources:
            raise KeyError(f"Unknown provider: {provider_id}")
        self._bump(provider_id)
        self._cancel(provider_id)
        self.engine.set_enabled(provider_id, False)
        log.info("Polling disabled for %s", provider_id)

    def refresh_now(self, provider_id: str) -> asyncio.Task | None:
        """Poll once right away; the recurring timer is left untouched."""
        if provider_id not in self._sources:
            raise KeyError(f"Unknown provider: {provider_id}")
        if not self.engine.is_enabled(provider_id):
            log.debug("Ignoring refresh for disabled provider %s", provider_id)
            return None
        return self._spawn_poll(provider_id)

    async def refresh_all(self) -> list[DisplaySnapshot]:
        tasks = []
        for provider_id in self._sources:
            task = self.refresh_now(provider_id)
            if task is not None:
                tasks.append(task)
        await asyncio.gather(*tasks, return_exceptions=True)
        return [self.engine.view(provider_id) for provider_id in self._sources]

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        for inflight in self._inflight.values():
            tasks.extend(inflight)
        for provider_id in list(self._sources):
            self._bump(provider_id)
            self._cancel(provider_id)
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, provider_id: str, delay: float, generation: int) -> None:
        await asyncio.sleep(delay)
        while self._generation.get(provider_id) == generation:
            self._spawn_poll(provider_id)
            await asyncio.sleep(self.settings_store.provider(provider_id).poll_interval)

    def _spawn_poll(self, provider_id: str) -> asyncio.Task:
        generation = self._generation.setdefault(provider_id, 0)
        task = asyncio.create_task(
            self._poll(provider_id, generation), name=f"poll:{provider_id}"
        )
        inflight = self._inflight.setdefault(provider_id, set())
        inflight.add(task)
        task.add_done_callback(inflight.discard)
        return task

    async def _poll(self, provider_id: str, generation: int) -> DisplaySnapshot:
        source = self._sources[provider_id]
        observed_at = self.engine.clock()
        has_token = None
        try:
            has_token, result = await asyncio.wait_for(self._query(source), self.request_timeout)
        except asyncio.TimeoutError:
            log.warning("Usage poll for %s timed out after %.0fs", provider_id, self.request_timeout)
            result = UsageQueryResult.failure(FailureReason.TRANSIENT)
        except Exception:
            log.exception("Usage source for %s raised", provider_id)
            result = UsageQueryResult.failure(FailureReason.TRANSIENT)

        if self._generation.get(provider_id) != generation:
            log.debug("Discarding poll result for %s: provider was disabled", provider_id)
            return self.engine.view(provider_id)
        result = result.model_copy(update={"observed_at": observed_at})
        return self.engine.apply(provider_id, result, has_token=has_token)

    async def _query(self, source: UsageSource) -> tuple[bool, UsageQueryResult]:
        if not await source.has_valid_token():
            return False, UsageQueryResult.failure(FailureReason.CREDENTIAL_MISSING)
        return True, await source.query_usage()

    def _bump(self, provider_id: str) -> int:
        self._generation[provider_id] = self._generation.get(provider_id, 0) + 1
        return self._generation[provider_id]

    def _cancel(self, provider_id: str) -> None:
        timer = self._timers.pop(provider_id, None)
        if timer is not None:
            timer.cancel()
        for task in list(self._inflight.get(provider_id, ())):
            task.cancel()
