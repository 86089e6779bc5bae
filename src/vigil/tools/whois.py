"""
WHOIS adapter.

Keeps the raw registry response next to the parsed ``key: value``
mapping, since registries format their records differently.
"""

from __future__ import annotations

import structlog
from pydantic import Field, field_validator

from vigil.core.risk import RiskLevel
from vigil.tools.base import BaseTool, ToolArguments, ToolName, ToolOutcome
from vigil.utils.error_handling import ToolError, handle_tool_error
from vigil.utils.parsing import WhoisParser
from vigil.utils.validation import normalize_domain

logger = structlog.get_logger(__name__)


class WhoisArguments(ToolArguments):
    """Arguments for a WHOIS lookup."""

    domain: str = Field(min_length=1, max_length=253, description="Domain to look up")

    @field_validator("domain")
    @classmethod
    def check_domain(cls, v: str) -> str:
        return normalize_domain(v)


class WhoisTool(BaseTool):
    """Query registration data for a domain."""

    name = ToolName.WHOIS
    description = "Look up domain registration data (registrar, dates, name servers)."
    args_model = WhoisArguments

    @handle_tool_error()
    async def execute(self, args: ToolArguments) -> ToolOutcome:
        args = self.validate_arguments(args)
        assert isinstance(args, WhoisArguments)

        result = await self.runner.run(
            self.config.whois_path,
            [args.domain],
            timeout=self.config.whois_timeout,
        )

        # Some whois clients exit 1 on "no match" while still printing the reply.
        if result.exit_code != 0 and not result.stdout.strip():
            raise ToolError(
                self.command_failed(result),
                error_code="whois_failure",
                commands=[result.command_line],
            )

        parsed = WhoisParser.parse(result.stdout)
        logger.info("whois_complete", domain=args.domain, fields=len(parsed))

        return ToolOutcome.ok(
            {
                "domain": args.domain,
                "raw": result.stdout,
                "parsed": parsed,
            },
            commands=[result.command_line],
            risk_level_hint=RiskLevel.LOW,
            execution_time_ms=result.duration_ms,
        )
