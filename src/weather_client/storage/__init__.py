from .db import initialize_database
from .preferences import (
    MAX_HISTORY_ENTRIES,
    PreferenceKey,
    PreferenceStore,
    add_history_entry,
    normalize_history,
)

__all__ = [
    "MAX_HISTORY_ENTRIES",
    "PreferenceKey",
    "PreferenceStore",
    "add_history_entry",
    "initialize_database",
    "normalize_history",
]
