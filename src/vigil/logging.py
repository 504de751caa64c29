"""Centralized logging for vigil.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Core console functions (log, info, warn, error) using Rich markup
3. Domain-specific helpers for the CLI and the status watcher
4. Structlog configuration for the daemon (configure)

Console output goes to stderr so that ``vigil monitor`` keeps stdout for its
JSON lines. The daemon's structured events go to a JSON Lines file.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from vigil.config import Config
    from vigil.protocol import Status

_console = Console(stderr=True, highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    AWAKE = "[bright_yellow]☀[/]"
    IDLE = "[dim]☾[/]"
    CONNECTED = "[green]⬤[/]"
    DISCONNECTED = "[red]⬤[/]"


_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def already_running(detail: str = "") -> None:
    """Log daemon already running error."""
    suffix = f" [dim]({detail})[/]" if detail else ""
    error(f"Another daemon already running{suffix}", Icon.FAIL)


def no_inhibitor(detail: str) -> None:
    error(f"No usable inhibit mechanism: {detail}", Icon.FAIL)


def daemon_unreachable(detail: str) -> None:
    """Log that the daemon could not be reached."""
    error(f"Daemon unreachable: {detail}", Icon.DISCONNECTED)


def daemon_error(detail: str) -> None:
    """Log an error reply from the daemon."""
    error(f"Daemon refused request: {detail}", Icon.FAIL)


def update_sent(update: str) -> None:
    info(f"Sent [cyan]{update}[/]", Icon.OK)


def status_line(status: Status, remaining: str) -> None:
    """Log a one-shot status."""
    mode = f" [dim]via {status.mode}[/]" if status.mode else ""
    if status.active:
        info(f"Awake for [bold]{remaining}[/]{mode}", Icon.AWAKE)
    else:
        info(f"Idle{mode}", Icon.IDLE)


def monitor_connected(path: str) -> None:
    info(f"Watching [cyan]{path}[/]", Icon.CONNECTED)


def monitor_disconnected(detail: str, retry_delay: float) -> None:
    """Log watcher lost the daemon and will retry."""
    warn(f"Lost daemon ({detail}), retrying in {retry_delay:g}s", Icon.DISCONNECTED)


def config_invalid(path: str, detail: str) -> None:
    error(f"Invalid config [cyan]{path}[/]: {detail}", Icon.FAIL)


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config) -> None:
    """Configure structlog with dual output: console + JSON file.

    Console output uses human-readable format with colors.
    File output uses JSON Lines format for machine parsing.

    Args:
        config: Application config with paths and rotation sizes
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)

    # Clear any existing handlers
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("daemon"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            structlog.processors.add_log_level,
            _add_source("daemon"),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Human-readable stream on stderr alongside the file
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
                structlog.processors.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(console_handler)
