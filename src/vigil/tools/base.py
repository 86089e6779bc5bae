"""
Base tool interface for Vigil.

This module provides the abstract base class and types shared by the
tool adapters. Each adapter declares a pydantic model for its arguments,
builds a fixed argument vector from it, runs the command through the
CommandRunner and returns a ToolOutcome. Adapters never raise past
``execute``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Mapping

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from vigil.core.risk import RiskLevel

if TYPE_CHECKING:
    from vigil.config.settings import ToolConfig
    from vigil.core.runner import CommandResult, CommandRunner


class ToolName(str, Enum):
    """Tools the pipeline can invoke."""

    NMAP = "nmap"
    DNS_LOOKUP = "dns_lookup"
    WHOIS = "whois"
    SUBDOMAIN_ENUM = "subdomain_enum"
    DOMAIN_INTEL = "domain_intel"


class ToolCategory(str, Enum):
    """Categories of tools available in Vigil."""

    SCANNING = "scanning"
    RECONNAISSANCE = "reconnaissance"


class ToolArguments(BaseModel):
    """
    Base class for validated tool arguments.

    Field names are snake_case; camelCase aliases are accepted as well.
    Unknown keys are rejected.
    """

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        str_strip_whitespace=False,
    )

    def to_arguments(self) -> dict[str, Any]:
        """Return the canonical JSON form stored on a ToolRun."""
        return self.model_dump(mode="json", exclude_none=True)


@dataclass
class ToolOutcome:
    """Result from a tool adapter."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    risk_level_hint: RiskLevel | None = None
    commands: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    # Execution metrics
    execution_time_ms: float | None = None

    @classmethod
    def ok(cls, data: dict[str, Any], **kwargs: Any) -> ToolOutcome:
        return cls(success=True, data=data, **kwargs)

    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> ToolOutcome:
        return cls(success=False, error=error, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "risk_level_hint": self.risk_level_hint.value if self.risk_level_hint else None,
            "commands": list(self.commands),
            "metadata": dict(self.metadata),
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass
class ToolDefinition:
    """Tool description handed to the planner prompt."""

    name: str
    description: str
    input_schema: dict[str, Any]
    category: ToolCategory

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class BaseTool(ABC):
    """
    Abstract base class for all tool adapters.

    Subclasses set ``name``, ``description`` and ``args_model`` and
    implement ``execute``.
    """

    name: ClassVar[ToolName]
    description: ClassVar[str]
    args_model: ClassVar[type[ToolArguments]]
    category: ClassVar[ToolCategory] = ToolCategory.RECONNAISSANCE

    def __init__(self, runner: CommandRunner, config: ToolConfig) -> None:
        self.runner = runner
        self.config = config

    def validate_arguments(self, arguments: Mapping[str, Any] | ToolArguments) -> ToolArguments:
        """
        Validate raw arguments against the tool's model.

        Raises:
            pydantic.ValidationError: If the arguments are invalid.
        """
        if isinstance(arguments, self.args_model):
            return arguments
        if isinstance(arguments, ToolArguments):
            arguments = arguments.to_arguments()
        return self.args_model.model_validate(dict(arguments))

    @abstractmethod
    async def execute(self, args: ToolArguments) -> ToolOutcome:
        """Run the tool with validated arguments."""
        ...

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition used in prompts."""
        return ToolDefinition(
            name=self.name.value,
            description=self.description,
            input_schema=self.args_model.model_json_schema(by_alias=False),
            category=self.category,
        )

    @staticmethod
    def first_line(text: str, default: str = "") -> str:
        for line in text.splitlines():
            if line.strip():
                return line.strip()
        return default

    def command_failed(self, result: CommandResult) -> str:
        """Error message for a non-zero exit."""
        detail = self.first_line(result.stderr) or self.first_line(result.stdout, "no output")
        return f"{result.command[0]} exited with code {result.exit_code}: {detail}"
