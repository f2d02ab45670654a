from __future__ import annotations

from pathlib import Path

import pytest

from weather_client.settings import AppSettings, EnvSettings, WeatherYamlSettings
from weather_client.storage.preferences import PreferenceStore


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "weather.db"


@pytest.fixture
def store(db_path: Path) -> PreferenceStore:
    return PreferenceStore(db_path)


@pytest.fixture
def settings(tmp_path: Path, db_path: Path) -> AppSettings:
    yaml_settings = WeatherYamlSettings.model_validate(
        {
            "api": {"base_url": "https://weather.test"},
            "location": {"mode": "fixed", "latitude": 48.8566, "longitude": 2.3522},
        }
    )
    return AppSettings(
        env=EnvSettings(_env_file=None, weather_api_key="test-key"),
        yaml=yaml_settings,
        project_root=tmp_path,
        config_path=tmp_path / "weather.yaml",
        db_path=db_path,
    )
