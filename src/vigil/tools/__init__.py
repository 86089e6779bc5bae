"""
Vigil tool adapters.

Tools:
- nmap: network scan of allow-listed targets
- dns_lookup: single record-type DNS query
- whois: registration lookup
- subdomain_enum: passive, DNS-only subdomain discovery
- domain_intel: DNS, WHOIS and subdomains in one run

Adapters are built and looked up through ``vigil.tools.registry``.
"""

from vigil.tools.base import (
    BaseTool,
    ToolArguments,
    ToolCategory,
    ToolDefinition,
    ToolName,
    ToolOutcome,
)

__all__ = [
    "BaseTool",
    "ToolArguments",
    "ToolCategory",
    "ToolDefinition",
    "ToolName",
    "ToolOutcome",
]
