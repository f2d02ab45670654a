from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _validate_http_url(value: str, *, field_name: str) -> str:
    text = value.strip().rstrip("/")
    parsed = urlparse(text)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"{field_name} must be an absolute http(s) URL")
    return text


class ApiSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    base_url: str = "https://api.openweathermap.org"
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, value: str) -> str:
        return _validate_http_url(value, field_name="api.base_url")


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    max_retries: int = Field(default=3, ge=0, le=10)
    delay_seconds: float = Field(default=2.0, ge=0, le=60)


class ForecastSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True


class StartupSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    fetch_last_search: bool = True
    delay_seconds: float = Field(default=1.0, ge=0, le=60)


class RefreshSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    interval_minutes: int = Field(default=0, ge=0, le=240)


class LocationSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mode: Literal["auto", "fixed", "disabled"] = "auto"
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    ip_lookup_url: str = "https://ipapi.co/json/"
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    max_fix_age_seconds: int = Field(default=300, ge=0, le=86400)

    @field_validator("ip_lookup_url")
    @classmethod
    def validate_ip_lookup_url(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("location.ip_lookup_url must be an absolute http(s) URL")
        return value.strip()

    @model_validator(mode="after")
    def validate_fixed_coordinates(self) -> LocationSettings:
        if self.mode == "fixed" and (self.latitude is None or self.longitude is None):
            raise ValueError("location.latitude and location.longitude are required when mode is 'fixed'")
        return self


class DefaultsSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    city: str = "Mumbai"
    country: str = "IN"
    unit: Literal["metric", "imperial"] = "metric"

    @field_validator("city")
    @classmethod
    def validate_city(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("defaults.city must not be empty")
        if len(text) > 50:
            raise ValueError("defaults.city must be at most 50 characters")
        return text

    @field_validator("country")
    @classmethod
    def validate_country(cls, value: str) -> str:
        text = value.strip().upper()
        if len(text) != 2 or not text.isalpha():
            raise ValueError("defaults.country must be a two-letter country code")
        return text


class WeatherYamlSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    api: ApiSettings = Field(default_factory=ApiSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    forecast: ForecastSettings = Field(default_factory=ForecastSettings)
    startup: StartupSettings = Field(default_factory=StartupSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    location: LocationSettings = Field(default_factory=LocationSettings)
    defaults: DefaultsSettings = Field(default_factory=DefaultsSettings)


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    weather_env: Literal["dev", "test", "prod"] = "dev"
    weather_api_key: str = ""
    weather_config_path: Path = Path("config/weather.yaml")
    weather_db_path: Path = Path("data/weather.db")
    weather_log_level: str = "INFO"

    @field_validator("weather_log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value}")
        return level


class AppSettings(BaseModel):
    env: EnvSettings
    yaml: WeatherYamlSettings
    project_root: Path
    config_path: Path
    db_path: Path

    @property
    def api_key(self) -> str:
        return self.env.weather_api_key


def _resolve_project_path(path: Path) -> Path:
    if path.is_absolute():
        return path
    return (PROJECT_ROOT / path).resolve()


def _load_yaml_settings(path: Path) -> WeatherYamlSettings:
    if not path.exists():
        raise FileNotFoundError(f"Weather config file not found: {path}")

    raw_config = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Weather config must be a YAML mapping/object at the top level")
    return WeatherYamlSettings.model_validate(raw_config)


@lru_cache(maxsize=1)
def load_settings() -> AppSettings:
    env = EnvSettings()
    config_path = _resolve_project_path(env.weather_config_path)
    db_path = _resolve_project_path(env.weather_db_path)
    yaml_settings = _load_yaml_settings(config_path)
    return AppSettings(
        env=env,
        yaml=yaml_settings,
        project_root=PROJECT_ROOT,
        config_path=config_path,
        db_path=db_path,
    )
