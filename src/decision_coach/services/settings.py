"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

__all__ = [
    "Settings",
    "SettingsStore",
    "get_settings",
    "reset_settings_cache",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".decision_coach"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_PATH_ENV = "DECISION_COACH_SETTINGS_PATH"
_SETTINGS_VERSION = 1
_TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


def _parse_int(raw: str) -> int:
    return int(raw, 10)


# (environment variable, settings field, parser)
_ENV_OVERRIDES: tuple[tuple[str, str, Callable[[str], Any]], ...] = (
    ("DECISION_COACH_API_KEY", "api_key", str),
    ("DECISION_COACH_BASE_URL", "base_url", str),
    ("DECISION_COACH_MODEL", "model", str),
    ("DECISION_COACH_ORGANIZATION", "organization", str),
    ("DECISION_COACH_PROMPT_VERSION", "prompt_version", str),
    ("DECISION_COACH_KNOWLEDGE_VERSION", "knowledge_version", str),
    ("DECISION_COACH_LOG_LEVEL", "log_level", str),
    ("DECISION_COACH_CONTEXT_ENABLED", "context_enabled", _parse_bool),
    ("DECISION_COACH_PRODUCTION", "production", _parse_bool),
    ("DECISION_COACH_RESPONSE_CACHE", "response_cache_enabled", _parse_bool),
    ("DECISION_COACH_DEBUG_LOGGING", "debug_logging", _parse_bool),
    ("DECISION_COACH_REQUEST_TIMEOUT", "request_timeout", float),
    ("DECISION_COACH_ACK_TIMEOUT", "ack_timeout_seconds", float),
    ("DECISION_COACH_FULL_TIMEOUT", "full_timeout_seconds", float),
    ("DECISION_COACH_TOOL_TIMEOUT", "tool_timeout_seconds", float),
    ("DECISION_COACH_TURN_BUDGET", "turn_budget_seconds", float),
    ("DECISION_COACH_IDEMPOTENCY_TTL", "idempotency_ttl_seconds", float),
    ("DECISION_COACH_MAX_RETRIES", "max_retries", _parse_int),
    ("DECISION_COACH_RESPONSE_CACHE_ENTRIES", "response_cache_entries", _parse_int),
    ("DECISION_COACH_IDEMPOTENCY_MAX_ENTRIES", "idempotency_max_entries", _parse_int),
)
_SECRET_FIELDS = frozenset({"api_key"})


@dataclass(slots=True)
class Settings:
    """User-facing configuration for the decision coach service."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    request_timeout: float = 60.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    ack_timeout_seconds: float = 5.0
    full_timeout_seconds: float = 30.0
    tool_timeout_seconds: float = 20.0
    turn_budget_seconds: float = 45.0
    prompt_version: str = "v1"
    knowledge_version: str | None = None
    context_enabled: bool = True
    production: bool = False
    response_cache_enabled: bool = True
    response_cache_entries: int = 128
    idempotency_ttl_seconds: float = 600.0
    idempotency_max_entries: int = 1_000
    log_level: str = "INFO"
    debug_logging: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _default_settings_path()

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI and environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if payload.get("version") not in (None, _SETTINGS_VERSION):
                LOGGER.info(
                    "Settings file %s has version %s; expected %s",
                    self._path,
                    payload.get("version"),
                    _SETTINGS_VERSION,
                )

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        settings = self._apply_env_overrides(settings)
        LOGGER.debug(
            "Loaded settings from %s (model=%s, api_key=%s)",
            self._path,
            settings.model,
            redact_secret(settings.api_key) or "<unset>",
        )
        return settings

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes. Secrets are never written."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        for name in _SECRET_FIELDS:
            data.pop(name, None)
        data["version"] = _SETTINGS_VERSION
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged_metadata = dict(settings.metadata or {})
            merged_metadata.update(metadata_override)
            filtered["metadata"] = merged_metadata
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name, parse in _ENV_OVERRIDES:
            raw = os.environ.get(env_name)
            if raw is None:
                continue
            try:
                overrides[field_name] = parse(raw)
            except ValueError as exc:
                LOGGER.warning("Ignoring environment override %s=%r: %s", env_name, raw, exc)
        return self._apply_overrides(settings, overrides, source="environment")


_CACHED_SETTINGS: Settings | None = None


def get_settings(*, store: SettingsStore | None = None) -> Settings:
    """Return the process-wide settings, loading them on first use."""

    global _CACHED_SETTINGS
    if _CACHED_SETTINGS is None:
        _CACHED_SETTINGS = (store or SettingsStore()).load()
    return _CACHED_SETTINGS


def reset_settings_cache() -> None:
    """Forget the cached process settings (test hook)."""

    global _CACHED_SETTINGS
    _CACHED_SETTINGS = None


def redact_secret(value: str | None) -> str:
    """Return a log-safe rendering of ``value`` keeping only the last four characters."""

    if not value:
        return ""
    if len(value) <= 4:
        return "*" * len(value)
    return "*" * (len(value) - 4) + value[-4:]


def _default_settings_path() -> Path:
    override = os.environ.get(_SETTINGS_PATH_ENV)
    return Path(override).expanduser() if override else _DEFAULT_SETTINGS_PATH


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - _SECRET_FIELDS
    return {key: value for key, value in payload.items() if key in allowed}
