"""Pytest fixtures for drydock tests."""

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset CLI logging options, structlog, and root handlers around each test."""
    import drydock.cli.helpers as cli_helpers

    cli_helpers.reset_logging_state()
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    cli_helpers.reset_logging_state()
    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)


@pytest.fixture(autouse=True)
def drydock_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point DRYDOCK_HOME at a per-test directory so nothing touches ~/.drydock."""
    home = tmp_path / "drydock-home"
    monkeypatch.setenv("DRYDOCK_HOME", str(home))
    for var in (
        "DRYDOCK_MAX_PARALLEL",
        "DRYDOCK_POLL_INTERVAL",
        "DRYDOCK_WATCH_LABEL",
        "DRYDOCK_TEMPLATE",
        "DRYDOCK_BASE_BRANCH",
        "DRYDOCK_JOB_ID",
        "DRYDOCK_ISSUE",
    ):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A directory that looks like a git working copy."""
    path = tmp_path / "widgets"
    (path / ".git").mkdir(parents=True)
    return path
