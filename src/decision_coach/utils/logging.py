"""Structured logging helpers for the decision coach service."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, MutableMapping

__all__ = [
    "setup_logging",
    "get_logger",
    "get_log_path",
    "resolve_level",
    "TurnLogAdapter",
    "bind_turn",
]

_DEFAULT_LOG_DIR = Path.home() / ".decision_coach" / "logs"
_LOG_FILE_NAME = "decision_coach.log"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int | str = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    file_output: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path | None:
    """Configure root logging for the service process.

    A rotating file handler is attached unless ``file_output`` is disabled, plus an
    optional console handler. Repeated calls are no-ops unless ``force`` is set.
    Returns the log file path, or ``None`` when only console output is active.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force:
        return _LOG_PATH

    numeric_level = resolve_level(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []
    log_path: Path | None = None
    if file_output:
        target_dir = _resolve_log_dir(log_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        log_path = target_dir / _LOG_FILE_NAME
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if console or not handlers:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(numeric_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_logger(name: str) -> logging.Logger:
    """Return a module-specific logger."""

    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def resolve_level(level: int | str | None) -> int:
    """Translate a level name such as ``"debug"`` into its numeric value."""

    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    candidate = logging.getLevelName(str(level).strip().upper())
    if isinstance(candidate, int):
        return candidate
    return logging.INFO


class TurnLogAdapter(logging.LoggerAdapter):
    """Prefix log records with the turn identifier they belong to."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        turn_id = (self.extra or {}).get("turn_id") or "-"
        return f"[turn {turn_id}] {msg}", kwargs


def bind_turn(logger: logging.Logger, turn_id: str | None) -> TurnLogAdapter:
    return TurnLogAdapter(logger, {"turn_id": turn_id})


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("DECISION_COACH_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
