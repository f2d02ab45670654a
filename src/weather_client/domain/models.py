from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TemperatureUnit(str, Enum):
    METRIC = "metric"
    IMPERIAL = "imperial"


class Theme(str, Enum):
    LIGHT = "light"
    DARK = "dark"


class WeatherCondition(str, Enum):
    CLEAR = "Clear"
    RAIN = "Rain"
    DRIZZLE = "Drizzle"
    SNOW = "Snow"
    CLOUDS = "Clouds"
    THUNDERSTORM = "Thunderstorm"
    MIST = "Mist"
    FOG = "Fog"
    HAZE = "Haze"
    OTHER = "Other"

    @classmethod
    def from_upstream(cls, value: Any) -> WeatherCondition:
        if isinstance(value, WeatherCondition):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        return cls.OTHER


class Query(BaseModel):
    """A single user request for weather at a city; never mutated once issued."""

    model_config = ConfigDict(frozen=True)

    city: str = Field(max_length=50)
    country_code: str
    unit: TemperatureUnit = TemperatureUnit.METRIC

    @property
    def normalized_city(self) -> str:
        return self.city.strip()


class WeatherLocation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    country_code: str


class Temperature(BaseModel):
    model_config = ConfigDict(extra="ignore")

    current: float
    feels_like: float
    minimum: float | None = None
    maximum: float | None = None


class Condition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    main: WeatherCondition
    description: str = ""
    raw: str = ""

    @field_validator("main", mode="before")
    @classmethod
    def coerce_condition(cls, value: Any) -> WeatherCondition:
        if value is None or not str(value).strip():
            raise ValueError("weather condition is required")
        return WeatherCondition.from_upstream(value)


class SunTimes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sunrise_epoch: int
    sunset_epoch: int


class WeatherPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    location: WeatherLocation
    temperature: Temperature
    condition: Condition
    sun: SunTimes
    utc_offset_seconds: int
    humidity: float
    wind_speed: float
    observed_at_epoch: int | None = None


class ForecastEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    dt: int
    temp_max: float
    temp_min: float
    condition: WeatherCondition

    @field_validator("condition", mode="before")
    @classmethod
    def coerce_condition(cls, value: Any) -> WeatherCondition:
        if value is None or not str(value).strip():
            raise ValueError("weather condition is required")
        return WeatherCondition.from_upstream(value)


class SearchHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    city: str
    country_code: str
    timestamp: datetime

    @field_validator("city", "country_code")
    @classmethod
    def validate_non_empty_text(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("search history text fields must not be empty")
        return text

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def key(self) -> tuple[str, str]:
        return self.city.casefold(), self.country_code.upper()


class LastSearch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    city: str
    country: str


class Preferences(BaseModel):
    last_search: LastSearch
    unit: TemperatureUnit
    theme: Theme
    history: list[SearchHistoryEntry] = Field(default_factory=list)


class Coordinate(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy_meters: float | None = None


class ResolvedLocation(BaseModel):
    city: str
    country_code: str
    state: str | None = None


class FetchAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: Query
    attempt_number: int = Field(ge=0)
    started_at: datetime


class FetchErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    MALFORMED = "malformed"
    UNKNOWN = "unknown"
    GEOLOCATION = "geolocation"
    NO_RESULT = "no_result"
    UPSTREAM = "upstream"


class FetchError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: FetchErrorKind
    message: str
    can_retry: bool


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SUPERSEDED = "superseded"


class FetchOutcome(BaseModel):
    status: OutcomeStatus
    query: Query | None = None
    payload: WeatherPayload | None = None
    forecast: list[ForecastEntry] | None = None
    error: FetchError | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS


class FetchPhase(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FetchState(BaseModel):
    """Snapshot published to the presentation layer after every transition."""

    phase: FetchPhase = FetchPhase.IDLE
    generation: int = 0
    query: Query | None = None
    attempt: int = 0
    max_retries: int = 0
    payload: WeatherPayload | None = None
    forecast: list[ForecastEntry] | None = None
    error: FetchError | None = None

    @property
    def loading(self) -> bool:
        return self.phase in (FetchPhase.ATTEMPTING, FetchPhase.RETRYING)

    @property
    def attempt_label(self) -> str | None:
        if self.attempt == 0:
            return None
        return f"Attempt {self.attempt + 1} of {self.max_retries + 1}"
