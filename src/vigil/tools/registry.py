"""
Tool registry for Vigil.

This module provides tool registration, argument validation and
execution by name. Validation failures and unknown names are policy
violations raised before any process is spawned; execution itself never
raises except on cancellation.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Mapping

import structlog
from pydantic import ValidationError as PydanticValidationError

from vigil.core.runner import CommandRunner
from vigil.core.scope import PolicyViolation, TargetPolicy
from vigil.tools.base import BaseTool, ToolArguments, ToolDefinition, ToolName, ToolOutcome
from vigil.tools.dns import DnsLookupTool
from vigil.tools.domain_intel import DomainIntelTool
from vigil.tools.scan import NmapScanTool
from vigil.tools.subdomains import SubdomainEnumTool
from vigil.tools.whois import WhoisTool
from vigil.utils.validation import ValidationError

if TYPE_CHECKING:
    from vigil.config.settings import VigilSettings

logger = structlog.get_logger(__name__)


class UnsupportedToolError(PolicyViolation):
    """Raised when a tool name is not one the pipeline can run."""

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Unsupported tool: {tool_name!r}")


class InvalidToolArguments(PolicyViolation):
    """Raised when arguments fail a tool's validation."""

    def __init__(self, tool_name: str, detail: str) -> None:
        self.tool_name = tool_name
        self.detail = detail
        super().__init__(f"Invalid arguments for {tool_name}: {detail}")


def _format_validation_error(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "arguments"
        parts.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolRegistry:
    """Holds the tool adapters and routes executions to them."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        """Register a tool adapter under its name."""
        name = tool.name.value
        if name in self._tools:
            logger.warning("tool_already_registered", name=name)
        self._tools[name] = tool
        logger.debug("tool_registered", name=name, category=tool.category.value)

    def get_tool(self, name: str | ToolName) -> BaseTool | None:
        """Get a tool by name."""
        return self._tools.get(getattr(name, "value", name))

    def get_tool_names(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self) -> list[ToolDefinition]:
        return [tool.get_definition() for tool in self._tools.values()]

    def require(self, name: str | ToolName) -> BaseTool:
        """
        Get a tool by name.

        Raises:
            UnsupportedToolError: If no such tool is registered.
        """
        tool = self.get_tool(name)
        if tool is None:
            logger.warning("unsupported_tool_requested", tool=str(getattr(name, "value", name)))
            raise UnsupportedToolError(str(getattr(name, "value", name)))
        return tool

    def prepare(self, name: str | ToolName, arguments: Mapping[str, Any] | None) -> ToolArguments:
        """
        Validate arguments for a tool.

        Returns:
            The validated argument model.

        Raises:
            UnsupportedToolError: If the tool is unknown.
            InvalidToolArguments: If the arguments are rejected.
        """
        tool = self.require(name)
        if arguments is not None and not isinstance(arguments, Mapping):
            raise InvalidToolArguments(tool.name.value, "arguments must be an object")

        try:
            return tool.validate_arguments(arguments or {})
        except PydanticValidationError as e:
            detail = _format_validation_error(e)
        except ValidationError as e:
            detail = str(e)

        logger.warning("invalid_tool_arguments", tool=tool.name.value, detail=detail)
        raise InvalidToolArguments(tool.name.value, detail)

    async def execute(self, name: str | ToolName, arguments: Mapping[str, Any] | ToolArguments) -> ToolOutcome:
        """
        Execute a tool by name.

        Raises:
            UnsupportedToolError: If the tool is unknown.
            InvalidToolArguments: If the arguments are rejected.
        """
        tool = self.require(name)
        if isinstance(arguments, ToolArguments):
            args = arguments
        else:
            args = self.prepare(name, arguments)

        start_time = time.perf_counter()
        logger.debug("executing_tool", name=tool.name.value, arguments=args.to_arguments())
        outcome = await tool.execute(args)
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        if outcome.execution_time_ms is None:
            outcome.execution_time_ms = elapsed_ms

        logger.info(
            "tool_execution_complete",
            name=tool.name.value,
            success=outcome.success,
            execution_time_ms=round(elapsed_ms, 1),
        )
        return outcome


def create_default_registry(
    settings: VigilSettings,
    runner: CommandRunner | None = None,
    target_policy: TargetPolicy | None = None,
) -> ToolRegistry:
    """Build a registry with every supported tool."""
    runner = runner or CommandRunner.from_config(settings.runner)
    target_policy = target_policy or TargetPolicy.from_config(settings.scope)
    config = settings.tools

    dns = DnsLookupTool(runner, config)
    whois = WhoisTool(runner, config)
    subdomains = SubdomainEnumTool(runner, config, dns)

    registry = ToolRegistry()
    registry.register(NmapScanTool(runner, config, target_policy))
    registry.register(dns)
    registry.register(whois)
    registry.register(subdomains)
    registry.register(DomainIntelTool(runner, config, dns, whois, subdomains))

    logger.info("registry_initialized", tools=registry.get_tool_names())
    return registry
