"""
Output parsing utilities for Vigil.

This module provides parsers for extracting structured data from
nmap, dig and whois output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any
from xml.etree import ElementTree

import structlog

logger = structlog.get_logger(__name__)


class OutputParseError(ValueError):
    """Raised when tool output cannot be parsed."""

    pass


@dataclass
class ParsedPort:
    """Parsed port information."""

    port: int
    protocol: str
    state: str
    service: str | None = None
    version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol,
            "port": self.port,
            "state": self.state,
            "service": self.service,
        }


@dataclass
class ParsedHost:
    """Parsed host information."""

    ip: str
    hostname: str | None = None
    state: str = "unknown"
    ports: list[ParsedPort] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "hostname": self.hostname,
            "status": self.state,
            "ports": [p.to_dict() for p in self.ports],
        }


class NmapParser:
    """Parser for nmap XML output."""

    @staticmethod
    def parse_xml(xml_content: str) -> list[ParsedHost]:
        """
        Parse nmap XML output.

        Args:
            xml_content: Nmap XML output string (``-oX -``).

        Returns:
            List of parsed hosts. Empty when nmap found no hosts.

        Raises:
            OutputParseError: If the document is not nmap XML.
        """
        try:
            root = ElementTree.fromstring(xml_content)
        except ElementTree.ParseError as e:
            logger.error("nmap_xml_parse_error", error=str(e))
            raise OutputParseError(f"Could not parse nmap XML: {e}") from e

        if root.tag != "nmaprun":
            raise OutputParseError(f"Unexpected root element: {root.tag}")

        hosts: list[ParsedHost] = []
        for host_elem in root.findall("host"):
            addr_elem = host_elem.find("address")
            if addr_elem is None:
                continue

            hostname_elem = host_elem.find("hostnames/hostname")
            status_elem = host_elem.find("status")

            host = ParsedHost(
                ip=addr_elem.get("addr", ""),
                hostname=hostname_elem.get("name") if hostname_elem is not None else None,
                state=status_elem.get("state", "unknown") if status_elem is not None else "unknown",
            )

            for port_elem in host_elem.findall("ports/port"):
                try:
                    port_id = int(port_elem.get("portid", ""))
                except ValueError:
                    logger.debug("nmap_port_without_id", host=host.ip)
                    continue

                state_elem = port_elem.find("state")
                service_elem = port_elem.find("service")

                host.ports.append(
                    ParsedPort(
                        port=port_id,
                        protocol=port_elem.get("protocol", "tcp"),
                        state=state_elem.get("state", "unknown") if state_elem is not None else "unknown",
                        service=service_elem.get("name") if service_elem is not None else None,
                        version=service_elem.get("version") if service_elem is not None else None,
                    )
                )

            hosts.append(host)

        return hosts

    @staticmethod
    def summarize(hosts: list[ParsedHost]) -> dict[str, Any]:
        """
        Flatten parsed hosts into the scan result shape.

        ``status`` is ``up`` when any host answered, ``down`` otherwise.
        ``services`` lists open ports that reported a service name.
        """
        ports = [p for h in hosts for p in h.ports]
        status = "up" if any(h.state == "up" for h in hosts) else "down"
        services = [
            {"port": p.port, "protocol": p.protocol, "service": p.service, "version": p.version}
            for p in ports
            if p.state == "open" and p.service
        ]
        return {
            "status": status,
            "ports": [p.to_dict() for p in ports],
            "services": services,
            "hosts": [h.to_dict() for h in hosts],
        }


class DigParser:
    """Parser for ``dig +short`` output."""

    @staticmethod
    def parse_short(output: str) -> list[str]:
        """
        Return one value per answer line.

        Comment lines (``;;``) are skipped. No answer is an empty list.
        """
        records: list[str] = []
        for line in output.splitlines():
            line = line.strip()
            if not line or line.startswith(";"):
                continue
            records.append(line)
        return records


class WhoisParser:
    """Parser for line-oriented WHOIS responses."""

    _LINE_RE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9 /&()._-]{0,80}?)\s*:\s*(.*?)\s*$")

    @classmethod
    def parse(cls, raw: str) -> dict[str, Any]:
        """
        Parse ``key: value`` lines into a mapping.

        Keys are lower-cased. Repeated keys (name servers, statuses)
        collect into a list. Lines without a value, comments and URLs
        are skipped.
        """
        parsed: dict[str, Any] = {}
        for line in raw.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith(("%", "#", ">>>")):
                continue

            match = cls._LINE_RE.match(stripped)
            if not match:
                continue

            key = match.group(1).strip().lower()
            value = match.group(2)
            if not value or key in ("http", "https"):
                continue

            existing = parsed.get(key)
            if existing is None:
                parsed[key] = value
            elif isinstance(existing, list):
                if value not in existing:
                    existing.append(value)
            elif existing != value:
                parsed[key] = [existing, value]

        return parsed
