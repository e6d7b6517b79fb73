"""Shared utilities for drydock CLI commands.

Global logging options (``--log-level``, ``--log-file``, ``--log-format``)
are collected by the app callback into one module-level config and applied
once per invocation.  Long-running commands (``daemon start``, the hidden
fleet loops) reconfigure logging for themselves afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import typer
from rich.console import Console

from drydock.core.logging import configure_logging, get_logger
from drydock.exceptions import ConfigError, DrydockError

_logger = get_logger("cli")


# ─── Logging configuration ────────────────────────────────────────────


@dataclass
class CliLoggingConfig:
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: Path | None = None
    format: Literal["json", "console", "both"] = "console"
    configured: bool = False


_log_config = CliLoggingConfig()


def get_log_level() -> str:
    return _log_config.level


def set_log_level(level: str) -> None:
    _log_config.level = level.upper()  # type: ignore[assignment]


def get_log_file() -> Path | None:
    return _log_config.file


def set_log_file(path: Path | None) -> None:
    _log_config.file = path


def set_log_format(fmt: str) -> None:
    _log_config.format = fmt  # type: ignore[assignment]


def configure_global_logging(console: Console) -> None:
    """Apply the global logging options once.

    Raises:
        typer.Exit: The options are inconsistent (``both`` without a file).
    """
    if _log_config.configured:
        return
    try:
        configure_logging(
            level=_log_config.level,
            format=_log_config.format,
            file_path=_log_config.file,
        )
        _log_config.configured = True
    except (ValueError, AttributeError) as e:
        console.print(f"[red]Logging configuration error:[/red] {e}")
        raise typer.Exit(1) from None


def reset_logging_state() -> None:
    """Forget the applied configuration (tests)."""
    global _log_config
    _log_config = CliLoggingConfig()


# ─── Error exits ──────────────────────────────────────────────────────


def exit_with_error(console: Console, error: DrydockError | str, code: int = 1) -> None:
    """Print ``error`` and exit; config errors get their own prefix."""
    prefix = "Configuration error" if isinstance(error, ConfigError) else "Error"
    console.print(f"[red]{prefix}:[/red] {error}")
    raise typer.Exit(code)


__all__ = [
    "CliLoggingConfig",
    "configure_global_logging",
    "exit_with_error",
    "get_log_file",
    "get_log_level",
    "reset_logging_state",
    "set_log_file",
    "set_log_format",
    "set_log_level",
]
