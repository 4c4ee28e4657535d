"""Tests for the logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from decision_coach.utils import logging as logging_utils


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_writes_to_rotating_file(tmp_path: Path) -> None:
    path = logging_utils.setup_logging("debug", log_dir=tmp_path, console=False, force=True)

    assert path == tmp_path / "decision_coach.log"
    assert logging_utils.get_log_path() == path
    assert logging.getLogger().level == logging.DEBUG
    assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in logging.getLogger().handlers)


def test_setup_logging_console_only(tmp_path: Path) -> None:
    path = logging_utils.setup_logging(logging.WARNING, log_dir=tmp_path, file_output=False, force=True)

    assert path is None
    assert not (tmp_path / "decision_coach.log").exists()
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_is_idempotent_without_force(tmp_path: Path) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)
    second = logging_utils.setup_logging(log_dir=tmp_path / "other", console=False)

    assert second == first


@pytest.mark.parametrize(
    ("level", "expected"),
    [(None, logging.INFO), (logging.ERROR, logging.ERROR), ("warning", logging.WARNING), ("nonsense", logging.INFO)],
)
def test_resolve_level(level, expected) -> None:
    assert logging_utils.resolve_level(level) == expected


def test_bind_turn_prefixes_messages(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging_utils.get_logger("decision_coach.test")
    adapter = logging_utils.bind_turn(logger, "abc123")

    with caplog.at_level(logging.INFO, logger="decision_coach.test"):
        adapter.info("classified as %s", "chat")

    assert "[turn abc123] classified as chat" in caplog.text
