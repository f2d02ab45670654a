from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

import httpx

from .adapters.weather import OpenWeatherAdapter
from .domain.models import (
    FetchOutcome,
    FetchState,
    LastSearch,
    Preferences,
    TemperatureUnit,
    Theme,
)
from .location.service import LocationResolver, build_location_resolver
from .orchestrator import StateListener, WeatherFetchOrchestrator
from .scheduler import build_scheduler
from .settings import AppSettings, load_settings
from .storage.db import initialize_database
from .storage.preferences import PreferenceStore
from .timers import RetryTimer

LOGGER = logging.getLogger(__name__)

USER_AGENT = "weather-client/0.1"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


class WeatherClientApp:
    """Facade handed to the UI shell."""

    def __init__(
        self,
        *,
        settings: AppSettings,
        store: PreferenceStore,
        orchestrator: WeatherFetchOrchestrator,
        resolver: LocationResolver | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.orchestrator = orchestrator
        self.resolver = resolver

    @property
    def state(self) -> FetchState:
        return self.orchestrator.state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        return self.orchestrator.subscribe(listener)

    def preferences(self) -> Preferences:
        return self.store.load()

    async def search(self, city: str, country_code: str) -> FetchOutcome:
        return await self.orchestrator.search(city, country_code)

    async def use_current_location(self) -> FetchOutcome:
        return await self.orchestrator.fetch_current_location()

    async def retry(self) -> FetchOutcome:
        return await self.orchestrator.retry()

    async def set_unit(self, unit: TemperatureUnit | str) -> FetchOutcome | None:
        resolved = TemperatureUnit(unit)
        self.store.set_unit(resolved)
        active = self.orchestrator.active_query
        if active is None or active.unit is resolved:
            return None
        LOGGER.info("Temperature unit changed to '%s', refetching active query", resolved.value)
        return await self.orchestrator.fetch(active.model_copy(update={"unit": resolved}))

    def set_theme(self, theme: Theme | str) -> None:
        self.store.set_theme(theme)


def build_app(
    settings: AppSettings,
    client: httpx.AsyncClient,
    *,
    timer: RetryTimer | None = None,
) -> WeatherClientApp:
    defaults = settings.yaml.defaults
    store = PreferenceStore(
        settings.db_path,
        default_last_search=LastSearch(city=defaults.city, country=defaults.country),
        default_unit=TemperatureUnit(defaults.unit),
    )
    adapter = OpenWeatherAdapter(
        client=client,
        api_key=settings.api_key,
        base_url=settings.yaml.api.base_url,
        timeout_seconds=settings.yaml.api.request_timeout_seconds,
    )
    resolver = build_location_resolver(settings, client)
    orchestrator = WeatherFetchOrchestrator(
        adapter=adapter,
        store=store,
        timer=timer,
        resolver=resolver,
        max_retries=settings.yaml.retry.max_retries,
        retry_delay_seconds=settings.yaml.retry.delay_seconds,
        include_forecast=settings.yaml.forecast.enabled,
    )
    return WeatherClientApp(settings=settings, store=store, orchestrator=orchestrator, resolver=resolver)


@asynccontextmanager
async def open_app(
    settings: AppSettings | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    start_scheduler: bool = True,
) -> AsyncIterator[WeatherClientApp]:
    settings = settings or load_settings()
    if not settings.api_key:
        LOGGER.warning("WEATHER_API_KEY is not set; upstream requests will be rejected")
    initialize_database(settings.db_path)

    owns_client = client is None
    http_client = client or httpx.AsyncClient(headers={"User-Agent": USER_AGENT})
    application = build_app(settings, http_client)
    scheduler = build_scheduler(settings, application.orchestrator)
    if start_scheduler:
        scheduler.start()

    try:
        yield application
    finally:
        if scheduler.running:
            scheduler.shutdown(wait=False)
        application.orchestrator.cancel_pending()
        if owns_client:
            await http_client.aclose()
