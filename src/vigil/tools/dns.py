"""
DNS lookup adapter.

Runs a single ``dig +short`` query for one record type. A name that does
not resolve yields an empty record list, not an error.
"""

from __future__ import annotations

from typing import Literal

import structlog
from pydantic import Field, field_validator

from vigil.core.risk import RiskLevel
from vigil.core.runner import CommandResult
from vigil.tools.base import BaseTool, ToolArguments, ToolName, ToolOutcome
from vigil.utils.error_handling import ToolError, handle_tool_error
from vigil.utils.parsing import DigParser
from vigil.utils.validation import normalize_domain

logger = structlog.get_logger(__name__)

RecordType = Literal["A", "AAAA", "CNAME", "MX", "NS", "TXT", "SOA", "PTR"]


class DnsLookupArguments(ToolArguments):
    """Arguments for a DNS lookup."""

    domain: str = Field(min_length=1, max_length=253, description="Domain name to resolve")
    record_type: RecordType = Field(default="A", description="DNS record type")

    @field_validator("domain")
    @classmethod
    def check_domain(cls, v: str) -> str:
        return normalize_domain(v)

    @field_validator("record_type", mode="before")
    @classmethod
    def upper_record_type(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v


class DnsLookupTool(BaseTool):
    """Resolve one record type for a domain with dig."""

    name = ToolName.DNS_LOOKUP
    description = (
        "Resolve DNS records for a domain (A, AAAA, CNAME, MX, NS, TXT, SOA, PTR). "
        "Read-only query through the system resolver."
    )
    args_model = DnsLookupArguments

    async def lookup(self, domain: str, record_type: str = "A") -> tuple[list[str], CommandResult]:
        """
        Run one query.

        Returns:
            The answer values and the raw command result.

        Raises:
            ToolError: If dig exits non-zero.
            CommandError: If dig cannot be run to completion.
        """
        timeout = self.config.dns_timeout
        argv = [
            "+short",
            f"+time={max(1, int(timeout) - 1)}",
            "+tries=1",
            domain,
            record_type,
        ]
        result = await self.runner.run(self.config.dig_path, argv, timeout=timeout)
        if result.exit_code != 0:
            raise ToolError(
                self.command_failed(result),
                error_code="dns_failure",
                commands=[result.command_line],
            )
        return DigParser.parse_short(result.stdout), result

    @handle_tool_error()
    async def execute(self, args: ToolArguments) -> ToolOutcome:
        args = self.validate_arguments(args)
        assert isinstance(args, DnsLookupArguments)

        records, result = await self.lookup(args.domain, args.record_type)
        logger.info(
            "dns_lookup_complete",
            domain=args.domain,
            record_type=args.record_type,
            records=len(records),
        )
        return ToolOutcome.ok(
            {
                "domain": args.domain,
                "record_type": args.record_type,
                "records": records,
            },
            commands=[result.command_line],
            risk_level_hint=RiskLevel.LOW,
            execution_time_ms=result.duration_ms,
        )
