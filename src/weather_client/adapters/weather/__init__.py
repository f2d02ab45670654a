from .base import (
    MalformedResponseError,
    NotFoundError,
    RateLimitedError,
    RequestTimeoutError,
    UnauthorizedError,
    UnknownUpstreamError,
    WeatherAdapter,
    WeatherAdapterError,
)
from .openweather import OpenWeatherAdapter

__all__ = [
    "MalformedResponseError",
    "NotFoundError",
    "OpenWeatherAdapter",
    "RateLimitedError",
    "RequestTimeoutError",
    "UnauthorizedError",
    "UnknownUpstreamError",
    "WeatherAdapter",
    "WeatherAdapterError",
]
