import asyncio
import logging
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException

from config import Settings, SettingsStore
from db import SnapshotCache
from engine import UsageEngine
from models import DisplaySnapshot, ThresholdAlert, ThresholdConfig, UsageSummary
from scheduler import PollScheduler
from sources import UsageSource, default_sources

log = logging.getLogger(__name__)


def _log_alert(alert: ThresholdAlert) -> None:
    log.warning(
        "%s quota alert: %d%% threshold reached (%.0f%% used)",
        alert.provider_id, alert.threshold, alert.used_percent,
    )


def create_app(
    settings: Settings | None = None,
    sources: dict[str, UsageSource] | None = None,
) -> FastAPI:
    settings = settings or Settings()
    settings_store = SettingsStore(settings)
    cache = SnapshotCache(settings.db_path, stale_after=settings.stale_after)
    engine = UsageEngine(cache, settings_store)
    if sources is None:
        sources = default_sources()
    sources = {pid: s for pid, s in sources.items() if pid in settings.providers}
    scheduler = PollScheduler(
        engine,
        sources,
        settings_store,
        request_timeout=settings.request_timeout,
        startup_jitter=settings.startup_jitter,
    )

    app = FastAPI(title="Quota Meter")
    app.state.engine = engine
    app.state.scheduler = scheduler
    engine.subscribe_alerts(_log_alert)

    def _check_provider(provider_id: str) -> None:
        if provider_id not in sources:
            raise HTTPException(404, f"Unknown provider: {provider_id}")

    def _summary() -> UsageSummary:
        return UsageSummary(
            services=[engine.view(pid) for pid in scheduler.provider_ids],
            last_refreshed=datetime.now(timezone.utc).isoformat(),
        )

    @app.on_event("startup")
    async def startup():
        logging.basicConfig(level=settings.log_level.upper())
        cache.load()
        await scheduler.check_credentials()
        scheduler.start()
        log.info("Polling %s", ", ".join(scheduler.provider_ids) or "no providers")

    @app.on_event("shutdown")
    async def shutdown():
        await scheduler.shutdown()

    @app.get("/api/summary", response_model=UsageSummary)
    async def summary():
        return _summary()

    @app.get("/api/usage/{provider_id}", response_model=DisplaySnapshot)
    async def usage(provider_id: str):
        _check_provider(provider_id)
        return engine.view(provider_id)

    @app.get("/api/refresh", response_model=UsageSummary)
    async def refresh():
        await scheduler.refresh_all()
        return _summary()

    @app.post("/api/refresh/{provider_id}", response_model=DisplaySnapshot)
    async def refresh_provider(provider_id: str):
        _check_provider(provider_id)
        task = scheduler.refresh_now(provider_id)
        if task is None:
            return engine.view(provider_id)
        # Disabling the provider mid-request cancels the poll.
        await asyncio.wait({task})
        if task.cancelled():
            return engine.view(provider_id)
        return task.result()

    @app.post("/api/providers/{provider_id}/enable", response_model=DisplaySnapshot)
    async def enable(provider_id: str):
        _check_provider(provider_id)
        scheduler.enable(provider_id)
        return engine.view(provider_id)

    @app.post("/api/providers/{provider_id}/disable", response_model=DisplaySnapshot)
    async def disable(provider_id: str):
        _check_provider(provider_id)
        scheduler.disable(provider_id)
        return engine.view(provider_id)

    @app.get("/api/providers/{provider_id}/thresholds", response_model=ThresholdConfig)
    async def get_thresholds(provider_id: str):
        _check_provider(provider_id)
        return settings_store.thresholds(provider_id)

    @app.put("/api/providers/{provider_id}/thresholds", response_model=ThresholdConfig)
    async def put_thresholds(provider_id: str, thresholds: ThresholdConfig):
        _check_provider(provider_id)
        settings_store.update_thresholds(provider_id, thresholds)
        return thresholds

    @app.post("/api/reset", response_model=UsageSummary)
    async def reset():
        engine.clear()
        settings_store.reset()
        return _summary()

    return app


app = create_app()
