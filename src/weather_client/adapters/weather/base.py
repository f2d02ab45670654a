from __future__ import annotations

from typing import Protocol

from ...domain.models import FetchErrorKind, ForecastEntry, Query, WeatherPayload


class WeatherAdapterError(RuntimeError):
    """Raised when a weather provider request cannot be completed."""

    kind: FetchErrorKind = FetchErrorKind.UNKNOWN
    retryable: bool = True


class NotFoundError(WeatherAdapterError):
    kind = FetchErrorKind.NOT_FOUND
    retryable = False


class UnauthorizedError(WeatherAdapterError):
    kind = FetchErrorKind.UNAUTHORIZED
    retryable = False


class RateLimitedError(WeatherAdapterError):
    kind = FetchErrorKind.RATE_LIMITED


class RequestTimeoutError(WeatherAdapterError):
    kind = FetchErrorKind.TIMEOUT


class MalformedResponseError(WeatherAdapterError):
    kind = FetchErrorKind.MALFORMED


class UnknownUpstreamError(WeatherAdapterError):
    kind = FetchErrorKind.UNKNOWN


class WeatherAdapter(Protocol):
    async def get_current(self, query: Query) -> WeatherPayload:
        """Fetch and validate current conditions for the query."""

    async def get_forecast(self, query: Query) -> list[ForecastEntry]:
        """Fetch the timestamped forecast entries for the query."""
