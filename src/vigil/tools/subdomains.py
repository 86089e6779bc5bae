"""
Passive subdomain enumeration.

Tries a fixed list of common prefixes with one DNS query each and keeps
the names that resolve. Only DNS queries are made; no connection is
opened to any discovered host.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import Field, field_validator

from vigil.core.risk import RiskLevel
from vigil.core.runner import CommandError
from vigil.tools.base import BaseTool, ToolArguments, ToolName, ToolOutcome
from vigil.utils.error_handling import ToolError, handle_tool_error
from vigil.utils.validation import normalize_domain

if TYPE_CHECKING:
    from vigil.config.settings import ToolConfig
    from vigil.core.runner import CommandRunner
    from vigil.tools.dns import DnsLookupTool

logger = structlog.get_logger(__name__)


class SubdomainArguments(ToolArguments):
    """Arguments for passive subdomain enumeration."""

    domain: str = Field(min_length=1, max_length=253, description="Parent domain")

    @field_validator("domain")
    @classmethod
    def check_domain(cls, v: str) -> str:
        return normalize_domain(v)


class SubdomainEnumTool(BaseTool):
    """Find common subdomains using DNS lookups only."""

    name = ToolName.SUBDOMAIN_ENUM
    description = (
        "Passively enumerate common subdomains (www, mail, api, ...) of a domain "
        "using DNS lookups only."
    )
    args_model = SubdomainArguments

    def __init__(self, runner: CommandRunner, config: ToolConfig, dns: DnsLookupTool) -> None:
        super().__init__(runner, config)
        self.dns = dns

    async def enumerate(self, domain: str) -> tuple[list[dict[str, Any]], list[str], int]:
        """
        Query every candidate prefix.

        Returns:
            Tuple of (found subdomains, commands run, failed lookups).
        """
        semaphore = asyncio.Semaphore(self.config.subdomain_concurrency)
        candidates = [f"{prefix}.{domain}" for prefix in self.config.subdomain_candidates]

        async def probe(name: str) -> tuple[str, list[str] | None, str | None]:
            async with semaphore:
                try:
                    records, result = await self.dns.lookup(name, "A")
                except ToolError as e:
                    logger.debug("subdomain_lookup_failed", subdomain=name, error=e.message)
                    return name, None, e.commands[0] if e.commands else None
                except CommandError as e:
                    logger.debug("subdomain_lookup_failed", subdomain=name, error=str(e))
                    return name, None, e.command_line
                return name, records, result.command_line

        results = await asyncio.gather(*(probe(name) for name in candidates))

        found: list[dict[str, Any]] = []
        commands: list[str] = []
        failures = 0
        for name, records, command in results:
            if command:
                commands.append(command)
            if records is None:
                failures += 1
            elif records:
                found.append({"subdomain": name, "records": records})

        return found, commands, failures

    @handle_tool_error()
    async def execute(self, args: ToolArguments) -> ToolOutcome:
        args = self.validate_arguments(args)
        assert isinstance(args, SubdomainArguments)

        found, commands, failures = await self.enumerate(args.domain)
        checked = len(self.config.subdomain_candidates)

        if checked and failures == checked:
            raise ToolError(
                f"All {checked} DNS lookups failed for {args.domain}",
                error_code="dns_failure",
                commands=commands,
            )

        logger.info(
            "subdomain_enum_complete",
            domain=args.domain,
            checked=checked,
            found=len(found),
            failed=failures,
        )

        return ToolOutcome.ok(
            {
                "domain": args.domain,
                "subdomains": found,
                "method": "passive_dns",
                "checked": checked,
                "failed_lookups": failures,
            },
            commands=commands,
            risk_level_hint=RiskLevel.LOW,
        )
