from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from ..domain.models import (
    LastSearch,
    Preferences,
    SearchHistoryEntry,
    TemperatureUnit,
    Theme,
)
from .db import open_db, read_value, write_value

LOGGER = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 5
DEFAULT_LAST_SEARCH = LastSearch(city="Mumbai", country="IN")


class PreferenceKey(str, Enum):
    SEARCH_HISTORY = "search_history"
    DARK_MODE = "dark_mode"
    TEMPERATURE_UNIT = "temperature_unit"
    LAST_SEARCH = "last_search"


@dataclass(frozen=True, slots=True)
class _KeySpec:
    adapter: TypeAdapter[Any]
    default: Callable[[], Any]
    normalize: Callable[[Any], Any] | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def add_history_entry(
    history: list[SearchHistoryEntry],
    entry: SearchHistoryEntry,
    *,
    limit: int = MAX_HISTORY_ENTRIES,
) -> list[SearchHistoryEntry]:
    """Put ``entry`` first, drop older entries for the same place and cap the list."""
    remaining = [item for item in history if item.key() != entry.key()]
    return [entry, *remaining][:limit]


def normalize_history(history: list[SearchHistoryEntry]) -> list[SearchHistoryEntry]:
    ordered = sorted(history, key=lambda item: item.timestamp, reverse=True)
    seen: set[tuple[str, str]] = set()
    normalized: list[SearchHistoryEntry] = []
    for item in ordered:
        if item.key() in seen:
            continue
        seen.add(item.key())
        normalized.append(item)
    return normalized[:MAX_HISTORY_ENTRIES]


class PreferenceStore:
    def __init__(
        self,
        db_path: Path,
        *,
        default_last_search: LastSearch = DEFAULT_LAST_SEARCH,
        default_unit: TemperatureUnit = TemperatureUnit.METRIC,
    ) -> None:
        self._db_path = Path(db_path)
        self._specs: dict[PreferenceKey, _KeySpec] = {
            PreferenceKey.SEARCH_HISTORY: _KeySpec(
                adapter=TypeAdapter(list[SearchHistoryEntry]),
                default=list,
                normalize=normalize_history,
            ),
            PreferenceKey.DARK_MODE: _KeySpec(
                adapter=TypeAdapter(bool),
                default=lambda: False,
            ),
            PreferenceKey.TEMPERATURE_UNIT: _KeySpec(
                adapter=TypeAdapter(TemperatureUnit),
                default=lambda: default_unit,
            ),
            PreferenceKey.LAST_SEARCH: _KeySpec(
                adapter=TypeAdapter(LastSearch),
                default=lambda: default_last_search.model_copy(),
            ),
        }

    @property
    def db_path(self) -> Path:
        return self._db_path

    def default(self, key: PreferenceKey | str) -> Any:
        return self._specs[PreferenceKey(key)].default()

    def get(self, key: PreferenceKey | str) -> Any:
        preference_key = PreferenceKey(key)
        spec = self._specs[preference_key]
        try:
            raw_json = self._read_raw(preference_key)
        except (sqlite3.Error, OSError) as exc:
            LOGGER.warning("Failed to read preference '%s': %s", preference_key.value, exc)
            return spec.default()

        if raw_json is None:
            return spec.default()

        try:
            value = spec.adapter.validate_python(json.loads(raw_json))
        except (json.JSONDecodeError, ValidationError) as exc:
            LOGGER.warning("Stored preference '%s' is corrupt, using default: %s", preference_key.value, exc)
            return spec.default()

        if spec.normalize is not None:
            value = spec.normalize(value)
        return value

    def set(self, key: PreferenceKey | str, value: Any) -> None:
        preference_key = PreferenceKey(key)
        spec = self._specs[preference_key]
        try:
            validated = spec.adapter.validate_python(value)
            payload_json = json.dumps(
                spec.adapter.dump_python(validated, mode="json"),
                ensure_ascii=True,
                separators=(",", ":"),
            )
        except (ValidationError, PydanticSerializationError, TypeError, ValueError) as exc:
            LOGGER.warning("Refusing to store invalid preference '%s': %s", preference_key.value, exc)
            return

        try:
            with open_db(self._db_path) as connection:
                write_value(connection, preference_key.value, payload_json, _utc_now().isoformat())
        except (sqlite3.Error, OSError) as exc:
            LOGGER.warning("Failed to write preference '%s': %s", preference_key.value, exc)
            return
        LOGGER.debug("Stored preference '%s'", preference_key.value)

    def _read_raw(self, key: PreferenceKey) -> str | None:
        with open_db(self._db_path) as connection:
            return read_value(connection, key.value)

    def load(self) -> Preferences:
        return Preferences(
            last_search=self.get(PreferenceKey.LAST_SEARCH),
            unit=self.get(PreferenceKey.TEMPERATURE_UNIT),
            theme=self.theme(),
            history=self.get(PreferenceKey.SEARCH_HISTORY),
        )

    def unit(self) -> TemperatureUnit:
        return self.get(PreferenceKey.TEMPERATURE_UNIT)

    def set_unit(self, unit: TemperatureUnit | str) -> None:
        self.set(PreferenceKey.TEMPERATURE_UNIT, unit)

    def theme(self) -> Theme:
        return Theme.DARK if self.get(PreferenceKey.DARK_MODE) else Theme.LIGHT

    def set_theme(self, theme: Theme | str) -> None:
        self.set(PreferenceKey.DARK_MODE, Theme(theme) is Theme.DARK)

    def history(self) -> list[SearchHistoryEntry]:
        return self.get(PreferenceKey.SEARCH_HISTORY)

    def record_search(
        self,
        city: str,
        country_code: str,
        *,
        timestamp: datetime | None = None,
    ) -> list[SearchHistoryEntry]:
        try:
            entry = SearchHistoryEntry(
                city=city,
                country_code=country_code,
                timestamp=timestamp or _utc_now(),
            )
        except ValidationError as exc:
            LOGGER.warning("Not recording search for %r, %r: %s", city, country_code, exc)
            return self.history()
        history = add_history_entry(self.history(), entry)
        self.set(PreferenceKey.SEARCH_HISTORY, history)
        self.set(PreferenceKey.LAST_SEARCH, LastSearch(city=entry.city, country=entry.country_code))
        return history
