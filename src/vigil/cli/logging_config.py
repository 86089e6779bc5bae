"""
Logging configuration for the Vigil CLI.

By default structlog is configured to show only warnings and errors so
command output is not buried in ledger and tool events.
"""

from __future__ import annotations

import logging
import sys

import structlog

_quiet_mode: bool = False


def configure_cli_logging(verbose: bool = False) -> None:
    """
    Configure logging for CLI usage.

    Args:
        verbose: If True, show all debug/info logs. If False, show only warnings/errors.
    """
    global _quiet_mode
    _quiet_mode = not verbose

    log_level = logging.DEBUG if verbose else logging.WARNING

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        stream=sys.stderr,
    )

    for logger_name in [
        "vigil",
        "vigil.agent",
        "vigil.core",
        "vigil.tools",
        "vigil.config",
    ]:
        logging.getLogger(logger_name).setLevel(log_level)

    # Silence noisy third-party loggers
    for logger_name in ["httpx", "httpcore", "anthropic", "asyncio"]:
        logging.getLogger(logger_name).setLevel(logging.ERROR)

    if verbose:
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.UnicodeDecoder(),
                structlog.dev.ConsoleRenderer(colors=True),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )
    else:
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_log_level,
                structlog.processors.UnicodeDecoder(),
                _quiet_renderer,
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )


def _quiet_renderer(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> str:
    """
    Render warnings and errors as one short line.

    Info and debug events are dropped by the level filter before they get here.
    """
    level = event_dict.pop("level", method_name)
    event = event_dict.pop("event", "")
    context = " ".join(f"{key}={value}" for key, value in event_dict.items() if not key.startswith("_"))
    return f"[{level.upper()}] {event} {context}".rstrip()


def is_quiet_mode() -> bool:
    """Check if quiet mode is enabled."""
    return _quiet_mode
