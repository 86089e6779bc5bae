"""
Environment setup and validation for Vigil.

This module handles discovery of the external network tools the adapters
drive, environment validation, and structured logging setup.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from vigil.config.settings import VigilSettings

logger = structlog.get_logger(__name__)


@dataclass
class SecurityTool:
    """Represents an external tool binary."""

    name: str
    path: Path | None
    version: str | None = None
    available: bool = False
    description: str = ""


SECURITY_TOOLS: dict[str, str] = {
    "nmap": "Network exploration and port scanning",
    "dig": "DNS lookup utility",
    "whois": "WHOIS lookup",
}

# Flag that makes each tool print its version, and the stream it uses.
_VERSION_FLAGS: dict[str, tuple[str, str]] = {
    "nmap": ("--version", "stdout"),
    "dig": ("-v", "stderr"),
}


def _configured_binary(tool_name: str, settings: VigilSettings | None) -> str:
    if settings is None:
        return tool_name
    return getattr(settings.tools, f"{tool_name}_path", tool_name)


def discover_security_tools(settings: VigilSettings | None = None) -> dict[str, SecurityTool]:
    """
    Discover the external tools Vigil adapters need.

    Args:
        settings: Optional settings providing custom binary paths.

    Returns:
        Dictionary mapping tool names to SecurityTool objects.
    """
    discovered: dict[str, SecurityTool] = {}

    for tool_name, description in SECURITY_TOOLS.items():
        tool_path = shutil.which(_configured_binary(tool_name, settings))

        if tool_path:
            version = _get_tool_version(tool_name, tool_path)
            discovered[tool_name] = SecurityTool(
                name=tool_name,
                path=Path(tool_path),
                version=version,
                available=True,
                description=description,
            )
            logger.debug("discovered_security_tool", tool=tool_name, path=tool_path, version=version)
        else:
            discovered[tool_name] = SecurityTool(
                name=tool_name,
                path=None,
                available=False,
                description=description,
            )
            logger.debug("security_tool_not_found", tool=tool_name)

    available_count = sum(1 for t in discovered.values() if t.available)
    logger.info(
        "security_tools_discovery_complete",
        total=len(SECURITY_TOOLS),
        available=available_count,
        missing=len(SECURITY_TOOLS) - available_count,
    )

    return discovered


def _get_tool_version(tool_name: str, tool_path: str) -> str | None:
    """Return the first line of the tool's version banner, if it has one."""
    flag = _VERSION_FLAGS.get(tool_name)
    if flag is None:
        return None

    version_flag, stream = flag
    try:
        completed = subprocess.run(
            [tool_path, version_flag],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("tool_version_check_failed", tool=tool_name, error=str(e))
        return None

    output = completed.stdout if stream == "stdout" else completed.stderr
    for line in output.splitlines():
        if line.strip():
            return line.strip()
    return None


def validate_environment(settings: VigilSettings) -> tuple[bool, list[str]]:
    """
    Validate the runtime environment for Vigil.

    Checks:
    - Required tool binaries are on PATH
    - Ledger directory is writable

    A missing API key is reported separately by the CLI because the
    tool-execution path works without one.

    Args:
        settings: Vigil configuration settings.

    Returns:
        Tuple of (is_valid, list of error messages).
    """
    errors: list[str] = []

    discovered = discover_security_tools(settings)
    for name, tool in discovered.items():
        if not tool.available:
            errors.append(f"Required tool '{name}' not found in PATH")

    ledger_dir = settings.storage.ledger_dir
    try:
        ledger_dir.mkdir(parents=True, exist_ok=True)
        probe = ledger_dir / ".vigil_write_test"
        probe.touch()
        probe.unlink()
    except OSError as e:
        errors.append(f"Ledger directory not writable: {e}")

    if errors:
        logger.warning("environment_validation_failed", errors=errors)

    return not errors, errors


def setup_logging(settings: VigilSettings) -> None:
    """
    Configure structured logging for Vigil.

    Args:
        settings: Vigil configuration settings.
    """
    log_level = getattr(logging, settings.output.log_level)
    use_console = log_level == logging.DEBUG or not settings.output.json_logs

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if use_console else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
