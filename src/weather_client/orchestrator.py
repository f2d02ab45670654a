"""Weather fetch orchestration.

Each call to :meth:`WeatherFetchOrchestrator.fetch` starts a new *generation*.
Only the newest generation may publish state or write preferences; older
sequences notice after every await that they were superseded and return
without side effects. Retries run in an explicit loop:

    idle -> attempting(n) -> succeeded
                          -> retrying(n + 1) -> attempting(n + 1)
                          -> failed
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from pydantic import ValidationError

from .adapters.weather import WeatherAdapter, WeatherAdapterError
from .domain.models import (
    FetchAttempt,
    FetchError,
    FetchErrorKind,
    FetchOutcome,
    FetchPhase,
    FetchState,
    ForecastEntry,
    OutcomeStatus,
    Query,
    TemperatureUnit,
    WeatherPayload,
)
from .location.geolocation import GeolocationError
from .location.service import LocationResolver, NoResultError, UpstreamError
from .storage.preferences import PreferenceKey, PreferenceStore
from .timers import AsyncioRetryTimer, RetryTimer

LOGGER = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 2.0
EMPTY_CITY_MESSAGE = "Please enter a city name"
INVALID_QUERY_MESSAGE = "Please enter a city name of at most 50 characters"
LOCATION_UNAVAILABLE_MESSAGE = "Current location lookup is not configured"

StateListener = Callable[[FetchState], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WeatherFetchOrchestrator:
    def __init__(
        self,
        *,
        adapter: WeatherAdapter,
        store: PreferenceStore,
        timer: RetryTimer | None = None,
        resolver: LocationResolver | None = None,
        max_retries: int = MAX_RETRIES,
        retry_delay_seconds: float = RETRY_DELAY_SECONDS,
        include_forecast: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._adapter = adapter
        self._store = store
        self._timer = timer or AsyncioRetryTimer()
        self._resolver = resolver
        self._max_retries = max_retries
        self._retry_delay_seconds = retry_delay_seconds
        self._include_forecast = include_forecast
        self._clock = clock
        self._generation = 0
        self._last_query: Query | None = None
        self._current_attempt: FetchAttempt | None = None
        self._state = FetchState(max_retries=max_retries)
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> FetchState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def active_query(self) -> Query | None:
        return self._last_query

    @property
    def current_attempt(self) -> FetchAttempt | None:
        return self._current_attempt

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def build_query(
        self,
        city: str,
        country_code: str,
        unit: TemperatureUnit | str | None = None,
    ) -> Query:
        resolved_unit = TemperatureUnit(unit) if unit is not None else self._store.unit()
        return Query(city=city, country_code=country_code, unit=resolved_unit)

    async def search(
        self,
        city: str,
        country_code: str,
        unit: TemperatureUnit | str | None = None,
    ) -> FetchOutcome:
        """Build a query from raw user input and fetch it."""
        try:
            query = self.build_query(city, country_code, unit)
        except ValidationError as exc:
            generation = self._begin()
            LOGGER.info("Rejected weather query for %r: %s", city, exc.errors()[0]["msg"])
            message = INVALID_QUERY_MESSAGE if city.strip() else EMPTY_CITY_MESSAGE
            error = FetchError(kind=FetchErrorKind.VALIDATION, message=message, can_retry=False)
            return self._finish_error(generation, None, error, attempt=0)
        return await self.fetch(query)

    def last_search_query(self) -> Query:
        last_search = self._store.get(PreferenceKey.LAST_SEARCH)
        return self.build_query(last_search.city, last_search.country)

    async def fetch(self, query: Query) -> FetchOutcome:
        generation = self._begin()

        if not query.normalized_city:
            LOGGER.info("Rejected weather query with an empty city")
            error = FetchError(kind=FetchErrorKind.VALIDATION, message=EMPTY_CITY_MESSAGE, can_retry=False)
            return self._finish_error(generation, query, error, attempt=0)
        self._last_query = query

        attempt = 0
        while True:
            self._current_attempt = FetchAttempt(query=query, attempt_number=attempt, started_at=self._clock())
            self._publish(generation, phase=FetchPhase.ATTEMPTING, query=query, attempt=attempt)
            try:
                payload, forecast = await self._run_attempt(query)
            except WeatherAdapterError as exc:
                if not self.is_current(generation):
                    return self._superseded(query, attempt)

                LOGGER.warning(
                    "Weather fetch attempt %s/%s for %s,%s failed (%s): %s",
                    attempt + 1,
                    self._max_retries + 1,
                    query.normalized_city,
                    query.country_code,
                    exc.kind.value,
                    exc,
                )
                if not exc.retryable or attempt >= self._max_retries:
                    error = FetchError(kind=exc.kind, message=str(exc), can_retry=True)
                    return self._finish_error(generation, query, error, attempt=attempt)

                attempt += 1
                self._publish(generation, phase=FetchPhase.RETRYING, query=query, attempt=attempt)
                LOGGER.info("Retrying weather fetch in %.1fs", self._retry_delay_seconds)
                fired = await self._timer.wait(self._retry_delay_seconds)
                if not fired or not self.is_current(generation):
                    return self._superseded(query, attempt - 1)
                continue

            if not self.is_current(generation):
                return self._superseded(query, attempt)
            return self._finish_success(generation, query, payload, forecast, attempt=attempt)

    async def retry(self) -> FetchOutcome:
        """Re-run the most recent query from attempt 0."""
        query = self._last_query or self.last_search_query()
        LOGGER.info("Manual retry for %s,%s", query.normalized_city, query.country_code)
        return await self.fetch(query)

    async def refresh(self) -> FetchOutcome | None:
        if self._state.loading:
            LOGGER.debug("Skipping refresh while a fetch is in progress")
            return None
        query = self._last_query or self.last_search_query()
        return await self.fetch(query)

    async def fetch_last_search(self) -> FetchOutcome:
        return await self.fetch(self.last_search_query())

    async def fetch_current_location(self, unit: TemperatureUnit | str | None = None) -> FetchOutcome:
        generation = self._begin()
        if self._resolver is None:
            error = FetchError(
                kind=FetchErrorKind.GEOLOCATION,
                message=LOCATION_UNAVAILABLE_MESSAGE,
                can_retry=True,
            )
            return self._finish_error(generation, None, error, attempt=0)

        self._publish(generation, phase=FetchPhase.ATTEMPTING, query=None, attempt=0)
        try:
            location = await self._resolver.resolve_current_location()
        except GeolocationError as exc:
            kind = FetchErrorKind.GEOLOCATION
            message = str(exc)
        except NoResultError as exc:
            kind = FetchErrorKind.NO_RESULT
            message = str(exc)
        except UpstreamError as exc:
            kind = FetchErrorKind.UPSTREAM
            message = str(exc)
        else:
            if not self.is_current(generation):
                return self._superseded(None, 0)
            LOGGER.info("Resolved current location to %s, %s", location.city, location.country_code)
            query = self.build_query(location.city[:50], location.country_code, unit)
            return await self.fetch(query)

        if not self.is_current(generation):
            return self._superseded(None, 0)
        LOGGER.warning("Current location lookup failed (%s): %s", kind.value, message)
        error = FetchError(kind=kind, message=message, can_retry=True)
        return self._finish_error(generation, None, error, attempt=0)

    def cancel_pending(self) -> None:
        """Supersede whatever sequence is in flight without starting a new one."""
        self._begin()

    def _begin(self) -> int:
        self._generation += 1
        self._timer.cancel()
        self._current_attempt = None
        return self._generation

    async def _run_attempt(self, query: Query) -> tuple[WeatherPayload, list[ForecastEntry] | None]:
        if not self._include_forecast:
            return await self._adapter.get_current(query), None

        current, forecast = await asyncio.gather(
            self._adapter.get_current(query),
            self._adapter.get_forecast(query),
            return_exceptions=True,
        )
        if isinstance(current, BaseException):
            raise current
        if isinstance(forecast, WeatherAdapterError):
            LOGGER.warning("Forecast request for %s,%s failed: %s", query.normalized_city, query.country_code, forecast)
            return current, None
        if isinstance(forecast, BaseException):
            raise forecast
        return current, forecast

    def _finish_success(
        self,
        generation: int,
        query: Query,
        payload: WeatherPayload,
        forecast: list[ForecastEntry] | None,
        *,
        attempt: int,
    ) -> FetchOutcome:
        self._store.record_search(payload.location.name, payload.location.country_code, timestamp=self._clock())
        self._current_attempt = None
        self._publish(
            generation,
            phase=FetchPhase.SUCCEEDED,
            query=query,
            attempt=0,
            payload=payload,
            forecast=forecast,
        )
        LOGGER.info(
            "Weather fetch for %s,%s succeeded after %s attempt(s)",
            payload.location.name,
            payload.location.country_code,
            attempt + 1,
        )
        return FetchOutcome(
            status=OutcomeStatus.SUCCESS,
            query=query,
            payload=payload,
            forecast=forecast,
            attempts=attempt + 1,
        )

    def _finish_error(
        self,
        generation: int,
        query: Query | None,
        error: FetchError,
        *,
        attempt: int,
    ) -> FetchOutcome:
        self._current_attempt = None
        self._publish(generation, phase=FetchPhase.FAILED, query=query, attempt=attempt, error=error)
        attempts = 0 if error.kind is FetchErrorKind.VALIDATION or query is None else attempt + 1
        return FetchOutcome(status=OutcomeStatus.ERROR, query=query, error=error, attempts=attempts)

    def _superseded(self, query: Query | None, attempt: int) -> FetchOutcome:
        LOGGER.debug("Discarding result of a superseded weather fetch")
        return FetchOutcome(status=OutcomeStatus.SUPERSEDED, query=query, attempts=attempt + 1)

    def _publish(
        self,
        generation: int,
        *,
        phase: FetchPhase,
        query: Query | None,
        attempt: int,
        payload: WeatherPayload | None = None,
        forecast: list[ForecastEntry] | None = None,
        error: FetchError | None = None,
    ) -> None:
        if not self.is_current(generation):
            return
        self._state = FetchState(
            phase=phase,
            generation=generation,
            query=query,
            attempt=attempt,
            max_retries=self._max_retries,
            payload=payload,
            forecast=forecast,
            error=error,
        )
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:  # pragma: no cover
                LOGGER.exception("Fetch state listener failed")
