"""Process-level services: settings and telemetry."""

from .settings import Settings, SettingsStore, get_settings, reset_settings_cache
from .telemetry import emit, register_event_listener

__all__ = [
    "Settings",
    "SettingsStore",
    "get_settings",
    "reset_settings_cache",
    "emit",
    "register_event_listener",
]
