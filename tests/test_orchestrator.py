from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fakes import (
    InstantRetryTimer,
    ManualRetryTimer,
    ScriptedAdapter,
    forecast_body,
    payload,
    wait_until,
    weather_body,
)

from weather_client.adapters.weather import (
    MalformedResponseError,
    NotFoundError,
    OpenWeatherAdapter,
    RateLimitedError,
    RequestTimeoutError,
    UnauthorizedError,
)
from weather_client.adapters.weather.openweather import parse_forecast_entries
from weather_client.domain.models import (
    FetchErrorKind,
    FetchPhase,
    FetchState,
    LastSearch,
    OutcomeStatus,
    Query,
    TemperatureUnit,
)
from weather_client.location.geolocation import DisabledCoordinateSource, FixedCoordinateSource
from weather_client.location.service import LocationResolver
from weather_client.orchestrator import WeatherFetchOrchestrator
from weather_client.storage.preferences import PreferenceKey, PreferenceStore


def _orchestrator(store: PreferenceStore, adapter, timer=None, **kwargs) -> WeatherFetchOrchestrator:
    return WeatherFetchOrchestrator(
        adapter=adapter,
        store=store,
        timer=timer or InstantRetryTimer(),
        **kwargs,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("city", ["", "   ", "\t\n"])
async def test_blank_city_fails_validation_without_network(store: PreferenceStore, city: str) -> None:
    adapter = ScriptedAdapter({})
    orchestrator = _orchestrator(store, adapter)

    outcome = await orchestrator.fetch(Query(city=city, country_code="IN"))

    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.error is not None
    assert outcome.error.kind is FetchErrorKind.VALIDATION
    assert outcome.error.can_retry is False
    assert outcome.attempts == 0
    assert adapter.calls == []
    assert adapter.forecast_calls == []
    assert orchestrator.state.phase is FetchPhase.FAILED


@pytest.mark.asyncio
async def test_rejected_blank_query_is_not_used_by_retry(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter({"paris": [payload("Paris", "FR")], "mumbai": [payload("Mumbai", "IN")]})
    orchestrator = _orchestrator(store, adapter)

    await orchestrator.fetch(Query(city="Paris", country_code="FR"))
    rejected = await orchestrator.fetch(Query(city="  ", country_code="FR"))
    assert rejected.error is not None and rejected.error.kind is FetchErrorKind.VALIDATION
    assert orchestrator.active_query is not None
    assert orchestrator.active_query.city == "Paris"

    outcome = await orchestrator.retry()

    assert outcome.ok
    assert adapter.calls_for("paris") == 2


@pytest.mark.asyncio
async def test_rejected_blank_query_falls_back_to_last_search(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter({"mumbai": [payload("Mumbai", "IN")]})
    orchestrator = _orchestrator(store, adapter)

    await orchestrator.fetch(Query(city="", country_code="IN"))
    outcome = await orchestrator.refresh()

    assert outcome is not None and outcome.ok
    assert outcome.query is not None
    assert outcome.query.city == "Mumbai"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("city", "message"),
    [
        ("x" * 51, "Please enter a city name of at most 50 characters"),
        (" " * 51, "Please enter a city name"),
    ],
)
async def test_search_normalizes_invalid_input(store: PreferenceStore, city: str, message: str) -> None:
    adapter = ScriptedAdapter({})
    orchestrator = _orchestrator(store, adapter)

    outcome = await orchestrator.search(city, "FR")

    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.error is not None
    assert outcome.error.kind is FetchErrorKind.VALIDATION
    assert outcome.error.message == message
    assert outcome.error.can_retry is False
    assert outcome.attempts == 0
    assert adapter.calls == []
    assert orchestrator.active_query is None


@pytest.mark.asyncio
async def test_search_fetches_valid_input(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter({"paris": [payload("Paris", "FR")]})
    orchestrator = _orchestrator(store, adapter)

    outcome = await orchestrator.search("Paris", "FR", "imperial")

    assert outcome.ok
    assert outcome.query is not None
    assert outcome.query.unit is TemperatureUnit.IMPERIAL


@pytest.mark.asyncio
async def test_success_records_confirmed_location_in_history(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter({"paris": [payload("Paris", "FR")]})
    orchestrator = _orchestrator(store, adapter)

    outcome = await orchestrator.fetch(Query(city="paris", country_code="fr"))

    assert outcome.ok
    assert outcome.attempts == 1
    assert outcome.payload is not None
    assert outcome.payload.location.name == "Paris"
    history = store.history()
    assert [(item.city, item.country_code) for item in history] == [("Paris", "FR")]
    assert store.get(PreferenceKey.LAST_SEARCH) == LastSearch(city="Paris", country="FR")
    assert orchestrator.state.phase is FetchPhase.SUCCEEDED
    assert orchestrator.state.attempt == 0


@pytest.mark.asyncio
async def test_repeat_success_moves_entry_to_front_without_duplicates(store: PreferenceStore) -> None:
    ticks = iter(datetime(2026, 10, 19, tzinfo=timezone.utc) + timedelta(minutes=n) for n in range(100))
    adapter = ScriptedAdapter(
        {
            "paris": [payload("Paris", "FR")],
            "tokyo": [payload("Tokyo", "JP")],
            "lima": [payload("Lima", "PE")],
        }
    )
    orchestrator = _orchestrator(store, adapter, clock=lambda: next(ticks))

    await orchestrator.fetch(Query(city="Paris", country_code="FR"))
    await orchestrator.fetch(Query(city="Tokyo", country_code="JP"))
    await orchestrator.fetch(Query(city="Lima", country_code="PE"))
    await orchestrator.fetch(Query(city="Paris", country_code="FR"))

    assert [(item.city, item.country_code) for item in store.history()] == [
        ("Paris", "FR"),
        ("Lima", "PE"),
        ("Tokyo", "JP"),
    ]


@pytest.mark.asyncio
async def test_history_is_capped_at_five(store: PreferenceStore) -> None:
    ticks = iter(datetime(2026, 10, 19, tzinfo=timezone.utc) + timedelta(minutes=n) for n in range(100))
    cities = ["Oslo", "Rome", "Cairo", "Delhi", "Quito", "Paris"]
    adapter = ScriptedAdapter({city.lower(): [payload(city, "XX")] for city in cities})
    orchestrator = _orchestrator(store, adapter, clock=lambda: next(ticks))

    for city in cities:
        await orchestrator.fetch(Query(city=city, country_code="XX"))

    assert [item.city for item in store.history()] == ["Paris", "Quito", "Delhi", "Cairo", "Rome"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        NotFoundError('City "Atlantis" not found in Greece.'),
        UnauthorizedError("API key is invalid or expired. Please contact support."),
    ],
)
async def test_terminal_errors_are_not_retried(store: PreferenceStore, error) -> None:
    adapter = ScriptedAdapter({"atlantis": [error]})
    timer = InstantRetryTimer()
    orchestrator = _orchestrator(store, adapter, timer=timer)

    outcome = await orchestrator.fetch(Query(city="Atlantis", country_code="GR"))

    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.error is not None
    assert outcome.error.kind is error.kind
    assert outcome.error.can_retry is True
    assert outcome.error.message == str(error)
    assert adapter.calls_for("atlantis") == 1
    assert timer.delays == []
    assert orchestrator.state.attempt == 0
    assert store.history() == []


@pytest.mark.asyncio
async def test_not_found_through_http_names_city_and_country(store: PreferenceStore) -> None:
    weather_requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/weather"):
            weather_requests.append(request)
        return httpx.Response(404, json={"cod": "404", "message": "city not found"})

    timer = InstantRetryTimer()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OpenWeatherAdapter(client=client, api_key="k", base_url="https://weather.test")
        orchestrator = _orchestrator(store, adapter, timer=timer)
        outcome = await orchestrator.fetch(Query(city="Gotham", country_code="US"))

    assert outcome.error is not None
    assert outcome.error.kind is FetchErrorKind.NOT_FOUND
    assert '"Gotham"' in outcome.error.message
    assert "United States" in outcome.error.message
    assert len(weather_requests) == 1
    assert timer.delays == []
    assert orchestrator.state.attempt == 0


@pytest.mark.asyncio
async def test_decoding_error_through_http_is_normalized(store: PreferenceStore) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.DecodingError("bad gzip", request=request)

    timer = InstantRetryTimer()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OpenWeatherAdapter(client=client, api_key="k", base_url="https://weather.test")
        orchestrator = _orchestrator(store, adapter, timer=timer, include_forecast=False)
        outcome = await orchestrator.fetch(Query(city="Paris", country_code="FR"))

    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.error is not None
    assert outcome.error.kind is FetchErrorKind.UNKNOWN
    assert outcome.error.can_retry is True
    assert outcome.attempts == 4
    assert timer.delays == [2.0, 2.0, 2.0]


@pytest.mark.asyncio
async def test_rate_limited_is_retried_three_times_then_surfaced(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter({"paris": [RateLimitedError("Too many requests. Please try again later.")]})
    timer = InstantRetryTimer()
    orchestrator = _orchestrator(store, adapter, timer=timer)
    attempts_seen: list[tuple[FetchPhase, int]] = []
    orchestrator.subscribe(lambda state: attempts_seen.append((state.phase, state.attempt)))

    outcome = await orchestrator.fetch(Query(city="Paris", country_code="FR"))

    assert adapter.calls_for("paris") == 4
    assert timer.delays == [2.0, 2.0, 2.0]
    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.attempts == 4
    assert outcome.error is not None
    assert outcome.error.kind is FetchErrorKind.RATE_LIMITED
    assert outcome.error.can_retry is True
    assert outcome.error.message == "Too many requests. Please try again later."
    assert attempts_seen == [
        (FetchPhase.ATTEMPTING, 0),
        (FetchPhase.RETRYING, 1),
        (FetchPhase.ATTEMPTING, 1),
        (FetchPhase.RETRYING, 2),
        (FetchPhase.ATTEMPTING, 2),
        (FetchPhase.RETRYING, 3),
        (FetchPhase.ATTEMPTING, 3),
        (FetchPhase.FAILED, 3),
    ]
    assert store.history() == []


@pytest.mark.asyncio
async def test_transient_failure_then_success(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter(
        {
            "paris": [
                RequestTimeoutError("Request timed out."),
                MalformedResponseError("Invalid weather data received"),
                payload("Paris", "FR"),
            ]
        }
    )
    timer = InstantRetryTimer()
    orchestrator = _orchestrator(store, adapter, timer=timer)

    outcome = await orchestrator.fetch(Query(city="Paris", country_code="FR"))

    assert outcome.ok
    assert outcome.attempts == 3
    assert timer.delays == [2.0, 2.0]
    assert orchestrator.state.attempt == 0
    assert len(store.history()) == 1


@pytest.mark.asyncio
async def test_last_message_is_reported_after_exhausting_retries(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter(
        {
            "paris": [
                RateLimitedError("Too many requests."),
                RateLimitedError("Too many requests."),
                RequestTimeoutError("Request timed out."),
                MalformedResponseError("Invalid weather data received"),
            ]
        }
    )
    orchestrator = _orchestrator(store, adapter)

    outcome = await orchestrator.fetch(Query(city="Paris", country_code="FR"))

    assert outcome.error is not None
    assert outcome.error.kind is FetchErrorKind.MALFORMED
    assert outcome.error.message == "Invalid weather data received"


@pytest.mark.asyncio
async def test_manual_retry_starts_again_from_attempt_zero(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter(
        {
            "paris": [
                RateLimitedError("Too many requests."),
                RateLimitedError("Too many requests."),
                RateLimitedError("Too many requests."),
                RateLimitedError("Too many requests."),
                payload("Paris", "FR"),
            ]
        }
    )
    orchestrator = _orchestrator(store, adapter, max_retries=3)
    failed = await orchestrator.fetch(Query(city="Paris", country_code="FR"))
    assert failed.error is not None and failed.error.can_retry

    states: list[FetchState] = []
    orchestrator.subscribe(states.append)
    outcome = await orchestrator.retry()

    assert outcome.ok
    assert outcome.attempts == 1
    assert states[0].phase is FetchPhase.ATTEMPTING
    assert states[0].attempt == 0


@pytest.mark.asyncio
async def test_superseded_sequence_does_not_mutate_state(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter(
        {
            "atlantis": [RateLimitedError("Too many requests."), payload("Atlantis", "GR")],
            "paris": [payload("Paris", "FR")],
        }
    )
    timer = ManualRetryTimer()
    orchestrator = _orchestrator(store, adapter, timer=timer)

    first = asyncio.create_task(orchestrator.fetch(Query(city="Atlantis", country_code="GR")))
    await wait_until(lambda: timer.pending)

    second = await orchestrator.fetch(Query(city="Paris", country_code="FR"))
    first_outcome = await first

    assert second.ok
    assert first_outcome.status is OutcomeStatus.SUPERSEDED
    assert adapter.calls_for("atlantis") == 1
    assert [item.city for item in store.history()] == ["Paris"]
    assert orchestrator.state.phase is FetchPhase.SUCCEEDED
    assert orchestrator.state.query == Query(city="Paris", country_code="FR")


@pytest.mark.asyncio
async def test_late_firing_retry_of_superseded_sequence_is_discarded(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter(
        {
            "atlantis": [RateLimitedError("Too many requests."), payload("Atlantis", "GR")],
            "paris": [RateLimitedError("Too many requests."), payload("Paris", "FR")],
        }
    )
    timer = ManualRetryTimer(honor_cancel=False)
    orchestrator = _orchestrator(store, adapter, timer=timer)
    published: list[FetchState] = []
    orchestrator.subscribe(published.append)

    first = asyncio.create_task(orchestrator.fetch(Query(city="Atlantis", country_code="GR")))
    await wait_until(lambda: len(timer.delays) == 1)
    second = asyncio.create_task(orchestrator.fetch(Query(city="Paris", country_code="FR")))
    await wait_until(lambda: len(timer.delays) == 2)

    published.clear()
    timer.fire()
    first_outcome, second_outcome = await asyncio.gather(first, second)

    assert first_outcome.status is OutcomeStatus.SUPERSEDED
    assert second_outcome.ok
    assert adapter.calls_for("atlantis") == 1
    assert [item.city for item in store.history()] == ["Paris"]
    assert all(state.query is None or state.query.city == "Paris" for state in published)
    assert orchestrator.state.payload is not None
    assert orchestrator.state.payload.location.name == "Paris"


@pytest.mark.asyncio
async def test_in_flight_response_after_supersession_is_discarded(store: PreferenceStore) -> None:
    release = asyncio.Event()

    class SlowAdapter(ScriptedAdapter):
        async def get_current(self, query: Query):
            if query.city == "Slowtown":
                self.calls.append(query)
                await release.wait()
                return payload("Slowtown", "US")
            return await super().get_current(query)

    adapter = SlowAdapter({"paris": [payload("Paris", "FR")]})
    orchestrator = _orchestrator(store, adapter)

    first = asyncio.create_task(orchestrator.fetch(Query(city="Slowtown", country_code="US")))
    await wait_until(lambda: adapter.calls_for("slowtown") == 1)
    second = await orchestrator.fetch(Query(city="Paris", country_code="FR"))
    release.set()
    first_outcome = await first

    assert second.ok
    assert first_outcome.status is OutcomeStatus.SUPERSEDED
    assert [item.city for item in store.history()] == ["Paris"]
    assert orchestrator.state.query is not None
    assert orchestrator.state.query.city == "Paris"


@pytest.mark.asyncio
async def test_forecast_is_fetched_alongside_current_conditions(store: PreferenceStore) -> None:
    forecast = parse_forecast_entries(forecast_body())
    adapter = ScriptedAdapter({"paris": [payload("Paris", "FR")]}, forecast=forecast)
    orchestrator = _orchestrator(store, adapter)

    outcome = await orchestrator.fetch(Query(city="Paris", country_code="FR"))

    assert outcome.forecast == forecast
    assert len(adapter.forecast_calls) == 1
    assert orchestrator.state.forecast == forecast


@pytest.mark.asyncio
async def test_forecast_failure_does_not_fail_the_fetch(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter(
        {"paris": [payload("Paris", "FR")]},
        forecast=MalformedResponseError("Invalid forecast data received"),
    )
    timer = InstantRetryTimer()
    orchestrator = _orchestrator(store, adapter, timer=timer)

    outcome = await orchestrator.fetch(Query(city="Paris", country_code="FR"))

    assert outcome.ok
    assert outcome.forecast is None
    assert timer.delays == []


@pytest.mark.asyncio
async def test_forecast_can_be_disabled(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter({"paris": [payload("Paris", "FR")]})
    orchestrator = _orchestrator(store, adapter, include_forecast=False)

    outcome = await orchestrator.fetch(Query(city="Paris", country_code="FR"))

    assert outcome.ok
    assert outcome.forecast is None
    assert adapter.forecast_calls == []


def test_build_query_reads_unit_preference(store: PreferenceStore) -> None:
    store.set_unit(TemperatureUnit.IMPERIAL)
    orchestrator = _orchestrator(store, ScriptedAdapter({}))

    query = orchestrator.build_query("Paris", "FR")

    assert query.unit is TemperatureUnit.IMPERIAL
    assert orchestrator.build_query("Paris", "FR", "metric").unit is TemperatureUnit.METRIC


@pytest.mark.asyncio
async def test_fetch_last_search_uses_persisted_query(store: PreferenceStore) -> None:
    store.set(PreferenceKey.LAST_SEARCH, LastSearch(city="Tokyo", country="JP"))
    adapter = ScriptedAdapter({"tokyo": [payload("Tokyo", "JP")]})
    orchestrator = _orchestrator(store, adapter)

    outcome = await orchestrator.fetch_last_search()

    assert outcome.ok
    assert adapter.calls[0].city == "Tokyo"
    assert adapter.calls[0].country_code == "JP"


@pytest.mark.asyncio
async def test_fetch_last_search_defaults_to_mumbai(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter({"mumbai": [payload("Mumbai", "IN")]})
    orchestrator = _orchestrator(store, adapter)

    await orchestrator.fetch_last_search()

    assert (adapter.calls[0].city, adapter.calls[0].country_code) == ("Mumbai", "IN")


@pytest.mark.asyncio
async def test_refresh_is_skipped_while_loading(store: PreferenceStore) -> None:
    adapter = ScriptedAdapter({"paris": [RateLimitedError("Too many requests."), payload("Paris", "FR")]})
    timer = ManualRetryTimer()
    orchestrator = _orchestrator(store, adapter, timer=timer)

    first = asyncio.create_task(orchestrator.fetch(Query(city="Paris", country_code="FR")))
    await wait_until(lambda: timer.pending)

    assert orchestrator.state.loading
    assert orchestrator.state.attempt_label == "Attempt 2 of 4"
    assert await orchestrator.refresh() is None

    timer.fire()
    assert (await first).ok


@pytest.mark.asyncio
async def test_current_location_resolves_city_and_fetches(store: PreferenceStore) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/geo/1.0/reverse":
            return httpx.Response(200, json=[{"name": "Paris", "country": "FR", "state": "Ile-de-France"}])
        if request.url.path == "/data/2.5/weather":
            assert request.url.params["q"] == "Paris,FR"
            return httpx.Response(200, json=weather_body("Paris", "FR"))
        return httpx.Response(200, json=forecast_body())

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        resolver = LocationResolver(
            source=FixedCoordinateSource(latitude=48.8566, longitude=2.3522),
            client=client,
            api_key="k",
            base_url="https://weather.test",
        )
        adapter = OpenWeatherAdapter(client=client, api_key="k", base_url="https://weather.test")
        orchestrator = _orchestrator(store, adapter, resolver=resolver)
        outcome = await orchestrator.fetch_current_location()

    assert outcome.ok
    assert outcome.query == Query(city="Paris", country_code="FR")
    assert [item.city for item in store.history()] == ["Paris"]


@pytest.mark.asyncio
async def test_current_location_failure_is_normalized(store: PreferenceStore) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))) as client:
        resolver = LocationResolver(
            source=DisabledCoordinateSource(),
            client=client,
            api_key="k",
            base_url="https://weather.test",
        )
        adapter = ScriptedAdapter({})
        orchestrator = _orchestrator(store, adapter, resolver=resolver)
        outcome = await orchestrator.fetch_current_location()

    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.error is not None
    assert outcome.error.kind is FetchErrorKind.GEOLOCATION
    assert outcome.error.message == "Location access denied by user."
    assert outcome.error.can_retry is True
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_current_location_without_resolver(store: PreferenceStore) -> None:
    orchestrator = _orchestrator(store, ScriptedAdapter({}))

    outcome = await orchestrator.fetch_current_location()

    assert outcome.error is not None
    assert outcome.error.kind is FetchErrorKind.GEOLOCATION
