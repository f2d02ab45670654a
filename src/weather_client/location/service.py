from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import httpx

from ..domain.models import Coordinate, ResolvedLocation
from ..settings import AppSettings
from .geolocation import (
    CoordinateSource,
    DisabledCoordinateSource,
    FixedCoordinateSource,
    GeolocationError,
    GeolocationReason,
    IpCoordinateSource,
    LocationResolutionError,
)

LOGGER = logging.getLogger(__name__)

REVERSE_GEOCODE_PATH = "/geo/1.0/reverse"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_FIX_AGE_SECONDS = 300


class NoResultError(LocationResolutionError):
    """Raised when reverse geocoding returns no place for a coordinate."""


class UpstreamError(LocationResolutionError):
    """Raised when the reverse geocoding endpoint fails."""


class LocationResolver:
    def __init__(
        self,
        *,
        source: CoordinateSource,
        client: httpx.AsyncClient,
        api_key: str,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_fix_age_seconds: float = DEFAULT_MAX_FIX_AGE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._max_fix_age_seconds = max_fix_age_seconds
        self._clock = clock
        self._cached_fix: tuple[float, Coordinate] | None = None

    async def get_current_coordinate(self) -> Coordinate:
        if self._cached_fix is not None:
            fixed_at, coordinate = self._cached_fix
            if self._clock() - fixed_at <= self._max_fix_age_seconds:
                LOGGER.debug("Using cached location fix (%.4f, %.4f)", coordinate.latitude, coordinate.longitude)
                return coordinate

        try:
            coordinate = await asyncio.wait_for(self._source.locate(), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise GeolocationError(GeolocationReason.TIMED_OUT) from exc

        self._cached_fix = (self._clock(), coordinate)
        LOGGER.info("Acquired location fix (%.4f, %.4f)", coordinate.latitude, coordinate.longitude)
        return coordinate

    async def resolve_city_from_coordinate(self, lat: float, lon: float) -> ResolvedLocation:
        params = {
            "lat": f"{lat:.5f}",
            "lon": f"{lon:.5f}",
            "limit": 1,
            "appid": self._api_key,
        }
        try:
            response = await self._client.get(
                f"{self._base_url}{REVERSE_GEOCODE_PATH}",
                params=params,
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Reverse geocoding failed: {exc}") from exc

        if not response.is_success:
            raise UpstreamError(
                f"Reverse geocoding failed: Failed to get city from coordinates (HTTP {response.status_code})"
            )

        try:
            results = response.json()
        except ValueError as exc:
            raise UpstreamError("Reverse geocoding failed: response was not valid JSON") from exc

        if not isinstance(results, list):
            raise UpstreamError("Reverse geocoding failed: unexpected response shape")
        if not results:
            raise NoResultError("Reverse geocoding failed: No city found for these coordinates")

        first = results[0]
        if not isinstance(first, dict):
            raise UpstreamError("Reverse geocoding failed: unexpected response shape")
        city = str(first.get("name") or "").strip()
        country_code = str(first.get("country") or "").strip()
        if not city or not country_code:
            raise NoResultError("Reverse geocoding failed: No city found for these coordinates")

        state = first.get("state")
        return ResolvedLocation(
            city=city,
            country_code=country_code,
            state=state if isinstance(state, str) and state.strip() else None,
        )

    async def resolve_current_location(self) -> ResolvedLocation:
        coordinate = await self.get_current_coordinate()
        return await self.resolve_city_from_coordinate(coordinate.latitude, coordinate.longitude)


def build_coordinate_source(settings: AppSettings, client: httpx.AsyncClient) -> CoordinateSource:
    location = settings.yaml.location
    if location.mode == "disabled":
        return DisabledCoordinateSource()
    if location.mode == "fixed":
        if location.latitude is None or location.longitude is None:
            raise ValueError("fixed location mode requires latitude and longitude")
        return FixedCoordinateSource(latitude=location.latitude, longitude=location.longitude)
    return IpCoordinateSource(
        client=client,
        url=location.ip_lookup_url,
        timeout_seconds=location.timeout_seconds,
    )


def build_location_resolver(settings: AppSettings, client: httpx.AsyncClient) -> LocationResolver:
    return LocationResolver(
        source=build_coordinate_source(settings, client),
        client=client,
        api_key=settings.api_key,
        base_url=settings.yaml.api.base_url,
        timeout_seconds=settings.yaml.location.timeout_seconds,
        max_fix_age_seconds=settings.yaml.location.max_fix_age_seconds,
    )
