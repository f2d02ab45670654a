from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .domain.models import OutcomeStatus
from .orchestrator import WeatherFetchOrchestrator
from .settings import AppSettings

LOGGER = logging.getLogger(__name__)

STARTUP_FETCH_JOB_ID = "startup_fetch_job"
WEATHER_REFRESH_JOB_ID = "weather_refresh_job"


async def run_startup_fetch_job(orchestrator: WeatherFetchOrchestrator) -> None:
    try:
        outcome = await orchestrator.fetch_last_search()
    except Exception:  # pragma: no cover
        LOGGER.exception("Startup weather fetch failed")
        return

    if outcome.status is OutcomeStatus.ERROR and outcome.error is not None:
        LOGGER.warning("Startup weather fetch ended with %s: %s", outcome.error.kind.value, outcome.error.message)
        return
    LOGGER.info("Startup weather fetch finished with status '%s'", outcome.status.value)


async def run_weather_refresh_job(orchestrator: WeatherFetchOrchestrator) -> None:
    try:
        outcome = await orchestrator.refresh()
    except Exception:  # pragma: no cover
        LOGGER.exception("Weather refresh job failed")
        return

    if outcome is None:
        return
    LOGGER.info("Weather refresh job finished with status '%s'", outcome.status.value)


def build_scheduler(
    settings: AppSettings,
    orchestrator: WeatherFetchOrchestrator,
    *,
    now: datetime | None = None,
) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=timezone.utc)
    reference = now or datetime.now(timezone.utc)

    if settings.yaml.startup.fetch_last_search:
        scheduler.add_job(
            run_startup_fetch_job,
            "date",
            kwargs={"orchestrator": orchestrator},
            run_date=reference + timedelta(seconds=settings.yaml.startup.delay_seconds),
            id=STARTUP_FETCH_JOB_ID,
            replace_existing=True,
            misfire_grace_time=60,
        )

    interval_minutes = settings.yaml.refresh.interval_minutes
    if interval_minutes > 0:
        scheduler.add_job(
            run_weather_refresh_job,
            "interval",
            kwargs={"orchestrator": orchestrator},
            minutes=interval_minutes,
            id=WEATHER_REFRESH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
        )
    return scheduler
