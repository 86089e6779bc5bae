"""
Centralized error handling for Vigil tools.

This module provides the decorator every adapter's ``execute`` is
wrapped in. Exceptions become failed ToolOutcome values so a tool run
can always be moved to a terminal state; cancellation still propagates.
"""

from __future__ import annotations

import asyncio
import functools
import traceback
from typing import Any, Callable, TypeVar

import structlog
from pydantic import ValidationError as PydanticValidationError

from vigil.core.runner import CommandError, CommandTimeout, OutputLimitExceeded, SpawnFailure
from vigil.tools.base import ToolOutcome
from vigil.utils.validation import ValidationError

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class ToolError(Exception):
    """
    Structured failure raised from inside a tool adapter.

    Use this for non-zero exits and unparseable output so the failed
    outcome keeps the command lines that were run.
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        commands: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.commands = commands or []
        self.metadata = metadata or {}

    def to_outcome(self) -> ToolOutcome:
        """Convert to a failed ToolOutcome."""
        metadata = dict(self.metadata)
        if self.error_code:
            metadata["error_code"] = self.error_code
        return ToolOutcome.failure(self.message, commands=list(self.commands), metadata=metadata)


def handle_tool_error(
    tool_name: str | None = None,
    log_traceback: bool = False,
) -> Callable[[F], F]:
    """
    Decorator for consistent error handling in tool execute methods.

    Wraps async tool execute methods to:
    - Catch all exceptions except cancellation
    - Log errors consistently
    - Return a failed ToolOutcome instead of raising

    Args:
        tool_name: Override tool name for logging. If None, uses ``self.name``.
        log_traceback: Include full traceback in logs for unexpected errors.

    Usage:
        class MyTool(BaseTool):
            @handle_tool_error()
            async def execute(self, args):
                ...
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> ToolOutcome:
            name = tool_name
            if name is None and args:
                owner = args[0]
                name = getattr(getattr(owner, "name", None), "value", None) or owner.__class__.__name__

            try:
                result = await func(*args, **kwargs)

                if not isinstance(result, ToolOutcome):
                    logger.warning(
                        f"{name}_invalid_return",
                        message="Tool did not return ToolOutcome",
                        return_type=type(result).__name__,
                    )
                    return ToolOutcome.failure(f"{name} returned an invalid result")

                return result

            except asyncio.CancelledError:
                raise

            except ToolError as e:
                logger.warning(f"{name}_failed", error=e.message, error_code=e.error_code)
                return e.to_outcome()

            except CommandTimeout as e:
                logger.warning(f"{name}_timeout", error=str(e), pid=e.pid)
                return ToolOutcome.failure(
                    f"Timed out after {e.timeout:g}s",
                    commands=[e.command_line],
                    metadata={"error_code": "timeout"},
                )

            except OutputLimitExceeded as e:
                logger.warning(f"{name}_output_limit", error=str(e), limit=e.limit)
                return ToolOutcome.failure(
                    f"Output exceeded {e.limit} bytes",
                    commands=[e.command_line],
                    metadata={"error_code": "output_limit"},
                )

            except SpawnFailure as e:
                logger.warning(f"{name}_spawn_failed", error=str(e))
                return ToolOutcome.failure(
                    str(e),
                    commands=[e.command_line],
                    metadata={"error_code": "spawn_failure"},
                )

            except CommandError as e:
                logger.warning(f"{name}_command_error", error=str(e))
                return ToolOutcome.failure(str(e), commands=[e.command_line])

            except (ValidationError, PydanticValidationError) as e:
                logger.warning(f"{name}_invalid_arguments", error=str(e))
                return ToolOutcome.failure(
                    f"Invalid arguments: {e}",
                    metadata={"error_code": "invalid_arguments"},
                )

            except Exception as e:
                log_kwargs: dict[str, Any] = {
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
                if log_traceback:
                    log_kwargs["traceback"] = traceback.format_exc()

                logger.error(f"{name}_error", **log_kwargs)

                return ToolOutcome.failure(
                    f"Tool execution failed: {e}",
                    metadata={"exception": type(e).__name__},
                )

        return wrapper  # type: ignore

    return decorator
