"""
Tool-call extraction from tool-execution messages.

Keyword heuristics over the message text, guided by the entities the
classifier found. The calls produced here are proposals only; every one
of them still passes argument validation, risk assessment and the
target policy in the approval gate.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from vigil.tools.base import ToolName
from vigil.utils.validation import DNS_RECORD_TYPES, validate_domain, validate_ip, validate_ip_network

if TYPE_CHECKING:
    from vigil.agent.intent import IntentEntities

_IPV4_RE = re.compile(r"(?<![\w.])(\d{1,3}(?:\.\d{1,3}){3}(?:/\d{1,2})?)(?!\.?\w)")
_LOCALHOST_RE = re.compile(r"\blocalhost\b", re.IGNORECASE)
_DOMAIN_RE = re.compile(r"\b((?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63})\b", re.IGNORECASE)
_PORTS_RE = re.compile(r"\bports?\s+(\d+(?:\s*[-,]\s*\d+)*)", re.IGNORECASE)
_RECORD_PHRASE_RE = re.compile(r"\b(AAAA|CNAME|MX|NS|TXT|SOA|PTR|A)\s+records?\b", re.IGNORECASE)
_RECORD_TOKEN_RE = re.compile(r"\b(AAAA|CNAME|MX|NS|TXT|SOA|PTR)\b")

SCAN_KEYWORDS = ("nmap", "scan", "port")
DNS_KEYWORDS = ("dns", "dig", "resolve", "record")

# Checked in order; the first keyword found wins.
SCAN_TYPE_KEYWORDS: list[tuple[str, str]] = [
    ("service", "service"),
    ("version", "service"),
    ("syn", "syn"),
    ("stealth", "syn"),
    ("udp", "udp"),
    ("ping", "ping"),
    ("alive", "ping"),
    ("discover", "ping"),
]


@dataclass
class ToolCall:
    """A proposed tool invocation."""

    tool_name: str
    arguments: dict[str, Any]
    requires_approval: bool = False
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "arguments": dict(self.arguments),
            "requires_approval": self.requires_approval,
            "description": self.description,
        }


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for value in values:
        key = value.lower()
        if key not in seen:
            seen.add(key)
            result.append(value)
    return result


def _has_word(text: str, words: tuple[str, ...]) -> bool:
    return any(re.search(rf"\b{re.escape(word)}", text) for word in words)


@dataclass
class ToolCallExtractor:
    """
    Turns a message plus classifier entities into tool calls.

    Args:
        max_calls: Upper bound on calls produced for a single message.
    """

    max_calls: int = 5

    def extract(self, message: str, entities: IntentEntities | None = None) -> list[ToolCall]:
        lower = message.lower()
        tools = {t.lower() for t in (entities.tools if entities else [])}

        calls: list[ToolCall] = []
        if _has_word(lower, SCAN_KEYWORDS) or ToolName.NMAP.value in tools:
            calls.extend(self._scan_calls(message, lower, entities))

        wants_whois = "whois" in lower or ToolName.WHOIS.value in tools
        wants_subdomains = "subdomain" in lower or ToolName.SUBDOMAIN_ENUM.value in tools
        wants_dns = _has_word(lower, DNS_KEYWORDS) or ToolName.DNS_LOOKUP.value in tools
        wants_domain = (
            wants_whois
            or wants_subdomains
            or ToolName.DOMAIN_INTEL.value in tools
            or ("domain" in lower and not wants_dns)
        )

        if wants_domain or wants_dns:
            domains = self._domains(message, entities)
            if wants_domain:
                for domain in domains:
                    calls.append(
                        ToolCall(
                            tool_name=ToolName.DOMAIN_INTEL.value,
                            arguments={
                                "domain": domain,
                                "include_dns": True,
                                "include_whois": wants_whois,
                                "include_subdomains": wants_subdomains,
                            },
                            description=f"Gather intelligence on {domain}",
                        )
                    )
            else:
                record_type = self._record_type(message)
                for domain in domains:
                    calls.append(
                        ToolCall(
                            tool_name=ToolName.DNS_LOOKUP.value,
                            arguments={"domain": domain, "record_type": record_type},
                            description=f"Look up {record_type} records for {domain}",
                        )
                    )

        return calls[: self.max_calls]

    def _targets(self, message: str, entities: IntentEntities | None) -> list[str]:
        # Classifier targets are kept as-is so the gate can reject them with a reason.
        targets = [t.strip() for t in entities.targets if t.strip()] if entities else []
        for candidate in _IPV4_RE.findall(message):
            if validate_ip(candidate)[0] or validate_ip_network(candidate)[0]:
                targets.append(candidate)
        if _LOCALHOST_RE.search(message):
            targets.append("localhost")
        return _unique(targets)

    def _scan_calls(self, message: str, lower: str, entities: IntentEntities | None) -> list[ToolCall]:
        scan_type = "tcp"
        for keyword, value in SCAN_TYPE_KEYWORDS:
            if re.search(rf"\b{keyword}", lower):
                scan_type = value
                break

        ports = None
        match = _PORTS_RE.search(message)
        if match and scan_type != "ping":
            ports = re.sub(r"\s+", "", match.group(1))

        calls = []
        for target in self._targets(message, entities):
            arguments: dict[str, Any] = {"target": target, "scan_type": scan_type}
            if ports:
                arguments["ports"] = ports
            calls.append(
                ToolCall(
                    tool_name=ToolName.NMAP.value,
                    arguments=arguments,
                    description=f"Scan {target} using {scan_type} scan",
                )
            )
        return calls

    def _domains(self, message: str, entities: IntentEntities | None) -> list[str]:
        candidates = list(entities.domains) if entities else []
        if entities:
            candidates.extend(t for t in entities.targets if validate_domain(t)[0])
        candidates.extend(_DOMAIN_RE.findall(message))
        return _unique([c.lower().rstrip(".") for c in candidates if validate_domain(c)[0]])

    def _record_type(self, message: str) -> str:
        match = _RECORD_PHRASE_RE.search(message) or _RECORD_TOKEN_RE.search(message)
        if match and match.group(1).upper() in DNS_RECORD_TYPES:
            return match.group(1).upper()
        return "A"
