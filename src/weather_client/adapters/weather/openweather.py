from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from ...domain.countries import country_display_name
from ...domain.models import ForecastEntry, Query, WeatherPayload
from .base import (
    MalformedResponseError,
    NotFoundError,
    RateLimitedError,
    RequestTimeoutError,
    UnauthorizedError,
    UnknownUpstreamError,
)

LOGGER = logging.getLogger(__name__)

OPENWEATHER_BASE_URL = "https://api.openweathermap.org"
CURRENT_WEATHER_PATH = "/data/2.5/weather"
FORECAST_PATH = "/data/2.5/forecast"
DEFAULT_TIMEOUT_SECONDS = 10.0

INVALID_WEATHER_MESSAGE = "Invalid weather data received"
INVALID_FORECAST_MESSAGE = "Invalid forecast data received"


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_weather_payload(data: Any) -> WeatherPayload:
    if not isinstance(data, dict):
        raise MalformedResponseError(INVALID_WEATHER_MESSAGE)

    main = data.get("main")
    weather = data.get("weather")
    if not isinstance(main, dict) or not isinstance(weather, list) or not weather:
        raise MalformedResponseError(INVALID_WEATHER_MESSAGE)
    condition = weather[0]
    if not isinstance(condition, dict):
        raise MalformedResponseError(INVALID_WEATHER_MESSAGE)

    sys_data = _as_dict(data.get("sys"))
    wind = _as_dict(data.get("wind"))
    try:
        return WeatherPayload.model_validate(
            {
                "location": {"name": data.get("name"), "country_code": sys_data.get("country")},
                "temperature": {
                    "current": main.get("temp"),
                    "feels_like": main.get("feels_like"),
                    "minimum": main.get("temp_min"),
                    "maximum": main.get("temp_max"),
                },
                "condition": {
                    "main": condition.get("main"),
                    "description": condition.get("description") or "",
                    "raw": str(condition.get("main") or ""),
                },
                "sun": {
                    "sunrise_epoch": sys_data.get("sunrise"),
                    "sunset_epoch": sys_data.get("sunset"),
                },
                "utc_offset_seconds": data.get("timezone"),
                "humidity": main.get("humidity"),
                "wind_speed": wind.get("speed"),
                "observed_at_epoch": data.get("dt"),
            }
        )
    except ValidationError as exc:
        raise MalformedResponseError(INVALID_WEATHER_MESSAGE) from exc


def parse_forecast_entries(data: Any) -> list[ForecastEntry]:
    items = _as_dict(data).get("list")
    if not isinstance(items, list):
        raise MalformedResponseError(INVALID_FORECAST_MESSAGE)

    entries: list[ForecastEntry] = []
    for item in items:
        if not isinstance(item, dict):
            raise MalformedResponseError(INVALID_FORECAST_MESSAGE)
        main = _as_dict(item.get("main"))
        weather = item.get("weather")
        if not isinstance(weather, list) or not weather or not isinstance(weather[0], dict):
            raise MalformedResponseError(INVALID_FORECAST_MESSAGE)
        try:
            entries.append(
                ForecastEntry(
                    dt=item.get("dt"),
                    temp_max=main.get("temp_max"),
                    temp_min=main.get("temp_min"),
                    condition=weather[0].get("main"),
                )
            )
        except ValidationError as exc:
            raise MalformedResponseError(INVALID_FORECAST_MESSAGE) from exc
    return entries


def raise_for_weather_status(response: httpx.Response, query: Query) -> None:
    status = response.status_code
    if response.is_success:
        return
    if status == 404:
        raise NotFoundError(
            f'City "{query.city}" not found in {country_display_name(query.country_code)}. '
            "Please check the spelling and try again."
        )
    if status == 401:
        raise UnauthorizedError("API key is invalid or expired. Please contact support.")
    if status == 429:
        raise RateLimitedError("Too many requests. Please try again later.")
    raise UnknownUpstreamError(f"Error: {response.reason_phrase or status}")


class OpenWeatherAdapter:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        api_key: str,
        base_url: str = OPENWEATHER_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    async def get_current(self, query: Query) -> WeatherPayload:
        data = await self._get_json(CURRENT_WEATHER_PATH, query)
        payload = parse_weather_payload(data)
        LOGGER.debug(
            "Parsed current weather for %s, %s: %s %s",
            payload.location.name,
            payload.location.country_code,
            payload.temperature.current,
            payload.condition.main.value,
        )
        return payload

    async def get_forecast(self, query: Query) -> list[ForecastEntry]:
        data = await self._get_json(FORECAST_PATH, query)
        return parse_forecast_entries(data)

    async def _get_json(self, path: str, query: Query) -> Any:
        params = {
            "q": f"{query.normalized_city},{query.country_code}",
            "units": query.unit.value,
            "appid": self._api_key,
        }
        url = f"{self._base_url}{path}"
        LOGGER.info("Requesting %s for %s,%s", path, query.normalized_city, query.country_code)
        try:
            response = await self._client.get(url, params=params, timeout=self._timeout_seconds)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError("Request timed out. Please check your connection and try again.") from exc
        except httpx.TransportError as exc:
            raise RequestTimeoutError(f"Connection failed: {exc}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise UnknownUpstreamError(f"Request failed: {exc}") from exc

        LOGGER.debug("Response status for %s: %s", path, response.status_code)
        raise_for_weather_status(response, query)

        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(INVALID_WEATHER_MESSAGE) from exc
