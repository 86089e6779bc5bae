"""
Input validation utilities for Vigil.

This module provides validation functions for targets, domains and
port specifications before they reach an argument vector.
"""

from __future__ import annotations

import ipaddress
import re

import structlog

logger = structlog.get_logger(__name__)

# RFC 1123 compliant hostname pattern
_HOSTNAME_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
)
_PORT_TOKEN_RE = re.compile(r"^(\d{1,5})(?:-(\d{1,5}))?$")

DNS_RECORD_TYPES: tuple[str, ...] = ("A", "AAAA", "CNAME", "MX", "NS", "TXT", "SOA", "PTR")


class ValidationError(Exception):
    """Raised when validation fails."""

    pass


def validate_ip(ip: str) -> tuple[bool, str | None]:
    """
    Validate an IP address.

    Args:
        ip: IP address string.

    Returns:
        Tuple of (is_valid, error_message).
    """
    try:
        ipaddress.ip_address(ip)
        return True, None
    except ValueError:
        return False, f"Invalid IP address: {ip}"


def validate_ip_network(network: str) -> tuple[bool, str | None]:
    """
    Validate a CIDR network notation.

    Args:
        network: Network in CIDR notation (e.g., 192.168.1.0/24).

    Returns:
        Tuple of (is_valid, error_message).
    """
    if "/" not in network:
        return False, f"Invalid network: {network}"
    try:
        ipaddress.ip_network(network, strict=False)
        return True, None
    except ValueError:
        return False, f"Invalid network: {network}"


def validate_hostname(hostname: str) -> tuple[bool, str | None]:
    """
    Validate a hostname.

    Args:
        hostname: Hostname string.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if len(hostname) > 253:
        return False, "Hostname too long (max 253 characters)"

    if _HOSTNAME_RE.fullmatch(hostname):
        return True, None

    return False, f"Invalid hostname: {hostname}"


def validate_domain(domain: str) -> tuple[bool, str | None]:
    """
    Validate a registrable domain name for DNS and WHOIS lookups.

    A domain must be a hostname with at least one dot and must not be
    an IP literal. A single trailing dot is accepted.
    """
    candidate = domain[:-1] if domain.endswith(".") else domain
    if not candidate or candidate.startswith("-"):
        return False, f"Invalid domain: {domain}"

    valid, _ = validate_ip(candidate)
    if valid:
        return False, f"Expected a domain name, got an IP address: {domain}"

    valid, error = validate_hostname(candidate)
    if not valid:
        return False, error

    if "." not in candidate:
        return False, f"Domain must contain at least one dot: {domain}"

    return True, None


def validate_port(port: int | str) -> tuple[bool, str | None]:
    """
    Validate a port number.

    Args:
        port: Port number.

    Returns:
        Tuple of (is_valid, error_message).
    """
    try:
        port_num = int(port)
        if 1 <= port_num <= 65535:
            return True, None
        return False, f"Port must be between 1 and 65535: {port}"
    except (ValueError, TypeError):
        return False, f"Invalid port number: {port}"


def parse_port_spec(spec: str) -> list[int]:
    """
    Expand a port specification such as ``"22,80,8000-8010"``.

    Args:
        spec: Comma separated ports and ``start-end`` ranges.

    Returns:
        Sorted list of unique ports.

    Raises:
        ValidationError: If any token is malformed or out of range.
    """
    if not spec or not spec.strip():
        raise ValidationError("Port specification is empty")

    ports: set[int] = set()
    for raw in spec.split(","):
        token = raw.strip()
        match = _PORT_TOKEN_RE.match(token)
        if not match:
            raise ValidationError(f"Invalid port token: {token!r}")

        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) else start
        for value in (start, end):
            valid, error = validate_port(value)
            if not valid:
                raise ValidationError(error or f"Invalid port: {value}")
        if start > end:
            raise ValidationError(f"Invalid range: start must not exceed end ({token})")

        ports.update(range(start, end + 1))

    return sorted(ports)


def format_port_spec(ports: list[int]) -> str:
    """Collapse a sorted port list back into compact ``a,b,c-d`` form."""
    parts: list[str] = []
    start = prev = None
    for port in ports:
        if start is None:
            start = prev = port
        elif port == prev + 1:
            prev = port
        else:
            parts.append(str(start) if start == prev else f"{start}-{prev}")
            start = prev = port
    if start is not None:
        parts.append(str(start) if start == prev else f"{start}-{prev}")
    return ",".join(parts)


def validate_target(target: str) -> tuple[str, str | None]:
    """
    Validate and classify a scan target.

    Args:
        target: Target string (IP, CIDR block or hostname).

    Returns:
        Tuple of (target_type, error_message).
        Target types: "ip", "network", "hostname", "unknown"
    """
    valid, _ = validate_ip(target)
    if valid:
        return "ip", None

    valid, _ = validate_ip_network(target)
    if valid:
        return "network", None

    valid, _ = validate_hostname(target)
    if valid:
        return "hostname", None

    return "unknown", f"Could not determine target type: {target}"


def normalize_domain(domain: str) -> str:
    """
    Validate a domain and return it lower-cased without a trailing dot.

    Raises:
        ValueError: If the domain is invalid.
    """
    valid, error = validate_domain(domain)
    if not valid:
        raise ValueError(error)
    return domain.lower().rstrip(".")
