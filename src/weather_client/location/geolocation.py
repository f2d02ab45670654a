from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Protocol

import httpx

from ..domain.models import Coordinate

LOGGER = logging.getLogger(__name__)

IP_GEOLOCATION_URL = "https://ipapi.co/json/"
DEFAULT_TIMEOUT_SECONDS = 10.0


class LocationResolutionError(RuntimeError):
    """Raised when the current location cannot be determined."""


class GeolocationReason(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    UNAVAILABLE = "unavailable"
    TIMED_OUT = "timed_out"
    UNKNOWN = "unknown"


GEOLOCATION_MESSAGES = {
    GeolocationReason.PERMISSION_DENIED: "Location access denied by user.",
    GeolocationReason.UNAVAILABLE: "Location information is unavailable.",
    GeolocationReason.TIMED_OUT: "Location request timed out.",
    GeolocationReason.UNKNOWN: "An unknown error occurred while retrieving location.",
}


class GeolocationError(LocationResolutionError):
    def __init__(self, reason: GeolocationReason, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or GEOLOCATION_MESSAGES[reason])


class CoordinateSource(Protocol):
    async def locate(self) -> Coordinate:
        """Return the host's current coordinate or raise GeolocationError."""


def _coerce_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class DisabledCoordinateSource:
    async def locate(self) -> Coordinate:
        raise GeolocationError(GeolocationReason.PERMISSION_DENIED)


class FixedCoordinateSource:
    def __init__(self, *, latitude: float, longitude: float, accuracy_meters: float | None = None) -> None:
        self._coordinate = Coordinate(
            latitude=latitude,
            longitude=longitude,
            accuracy_meters=accuracy_meters,
        )

    async def locate(self) -> Coordinate:
        return self._coordinate


class IpCoordinateSource:
    """Approximates the host position from its public IP address."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        url: str = IP_GEOLOCATION_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._url = url
        self._timeout_seconds = timeout_seconds

    async def locate(self) -> Coordinate:
        try:
            response = await self._client.get(self._url, timeout=self._timeout_seconds)
        except httpx.TimeoutException as exc:
            raise GeolocationError(GeolocationReason.TIMED_OUT) from exc
        except httpx.TransportError as exc:
            raise GeolocationError(GeolocationReason.UNAVAILABLE) from exc

        if response.status_code in (401, 403):
            raise GeolocationError(GeolocationReason.PERMISSION_DENIED)
        if not response.is_success:
            LOGGER.warning("IP geolocation lookup failed with HTTP %s", response.status_code)
            raise GeolocationError(GeolocationReason.UNAVAILABLE)

        try:
            payload = response.json()
        except ValueError as exc:
            raise GeolocationError(GeolocationReason.UNKNOWN) from exc
        if not isinstance(payload, dict) or payload.get("error"):
            raise GeolocationError(GeolocationReason.UNAVAILABLE)

        lat = _coerce_float(payload.get("latitude"))
        lon = _coerce_float(payload.get("longitude"))
        if lat is None or lon is None:
            raise GeolocationError(GeolocationReason.UNAVAILABLE)
        return Coordinate(latitude=lat, longitude=lon, accuracy_meters=None)
