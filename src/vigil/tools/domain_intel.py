"""
Domain intelligence: DNS, WHOIS and subdomains in one run.

Each requested section runs through its own adapter. A section that
fails is reported as ``{"error": ...}`` inside the result; the run only
fails when every requested section failed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import Field, field_validator, model_validator

from vigil.core.risk import RiskLevel
from vigil.tools.base import BaseTool, ToolArguments, ToolName, ToolOutcome
from vigil.tools.dns import DnsLookupArguments
from vigil.tools.subdomains import SubdomainArguments
from vigil.tools.whois import WhoisArguments
from vigil.utils.error_handling import ToolError, handle_tool_error
from vigil.utils.validation import normalize_domain

if TYPE_CHECKING:
    from vigil.config.settings import ToolConfig
    from vigil.core.runner import CommandRunner
    from vigil.tools.dns import DnsLookupTool
    from vigil.tools.subdomains import SubdomainEnumTool
    from vigil.tools.whois import WhoisTool

logger = structlog.get_logger(__name__)


class DomainIntelArguments(ToolArguments):
    """Arguments for a domain intelligence run."""

    domain: str = Field(min_length=1, max_length=253, description="Domain to investigate")
    include_dns: bool = Field(default=True, alias="includeDNS", description="Resolve A records")
    include_whois: bool = Field(default=False, description="Fetch WHOIS data")
    include_subdomains: bool = Field(default=False, description="Enumerate common subdomains")

    @field_validator("domain")
    @classmethod
    def check_domain(cls, v: str) -> str:
        return normalize_domain(v)

    @model_validator(mode="after")
    def check_sections(self) -> DomainIntelArguments:
        if not (self.include_dns or self.include_whois or self.include_subdomains):
            raise ValueError("at least one of include_dns, include_whois, include_subdomains must be set")
        return self


class DomainIntelTool(BaseTool):
    """Composite domain reconnaissance."""

    name = ToolName.DOMAIN_INTEL
    description = (
        "Gather passive intelligence on a domain: DNS A records, optionally WHOIS "
        "registration data and common subdomains."
    )
    args_model = DomainIntelArguments

    def __init__(
        self,
        runner: CommandRunner,
        config: ToolConfig,
        dns: DnsLookupTool,
        whois: WhoisTool,
        subdomains: SubdomainEnumTool,
    ) -> None:
        super().__init__(runner, config)
        self.dns = dns
        self.whois = whois
        self.subdomains = subdomains

    @handle_tool_error()
    async def execute(self, args: ToolArguments) -> ToolOutcome:
        args = self.validate_arguments(args)
        assert isinstance(args, DomainIntelArguments)

        sections: list[tuple[str, BaseTool, ToolArguments]] = []
        if args.include_dns:
            sections.append(("dns", self.dns, DnsLookupArguments(domain=args.domain, record_type="A")))
        if args.include_whois:
            sections.append(("whois", self.whois, WhoisArguments(domain=args.domain)))
        if args.include_subdomains:
            sections.append(("subdomains", self.subdomains, SubdomainArguments(domain=args.domain)))

        data: dict[str, Any] = {
            "domain": args.domain,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        commands: list[str] = []
        errors: dict[str, str] = {}

        for key, tool, section_args in sections:
            outcome = await tool.execute(section_args)
            commands.extend(outcome.commands)
            if outcome.success:
                data[key] = outcome.data
            else:
                errors[key] = outcome.error or f"{key} lookup failed"
                data[key] = {"error": errors[key]}

        if len(errors) == len(sections):
            raise ToolError(
                "; ".join(f"{k}: {v}" for k, v in errors.items()),
                error_code="all_sections_failed",
                commands=commands,
            )

        logger.info(
            "domain_intel_complete",
            domain=args.domain,
            sections=[key for key, _, _ in sections],
            failed_sections=sorted(errors),
        )

        return ToolOutcome.ok(
            data,
            commands=commands,
            risk_level_hint=RiskLevel.LOW,
            metadata={"failed_sections": sorted(errors)} if errors else {},
        )
