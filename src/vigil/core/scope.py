"""
Target policy for Vigil.

This module decides whether a scan or probe target lies inside the
allow-listed address space. Checks are pure: hostnames are never
resolved, so an attacker-controlled DNS record cannot widen the scope.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from vigil.config.settings import ScopeConfig

logger = structlog.get_logger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

DEFAULT_ALLOWED_HOSTS: tuple[str, ...] = ("localhost", "127.0.0.1")
DEFAULT_ALLOWED_NETWORKS: tuple[str, ...] = ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")


class PolicyViolation(Exception):
    """Raised when a request is refused before anything is executed."""

    pass


class TargetPolicyViolation(PolicyViolation):
    """Raised when a target is outside the allowed address space."""

    def __init__(self, target: str, reason: str | None = None) -> None:
        self.target = target
        self.reason = reason or "target is not in an allowed network"
        super().__init__(f"Target not allowed: {target!r} ({self.reason})")


def parse_network_target(target: str) -> IPNetwork | None:
    """
    Parse an IP literal or CIDR block into a network.

    A single address becomes a one-address network. Returns None for
    anything that is not an IP literal or CIDR block (including hostnames).
    """
    try:
        if "/" in target:
            return ipaddress.ip_network(target, strict=False)
        address = ipaddress.ip_address(target)
    except ValueError:
        return None
    return ipaddress.ip_network(address)


@dataclass
class TargetPolicy:
    """Allow-list of scannable hosts and networks."""

    allowed_hosts: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_HOSTS))
    allowed_networks: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_NETWORKS))

    def __post_init__(self) -> None:
        self._hosts = {h.lower() for h in self.allowed_hosts}
        self._networks: list[IPNetwork] = [
            ipaddress.ip_network(n, strict=False) for n in self.allowed_networks
        ]

    @classmethod
    def from_config(cls, config: ScopeConfig) -> TargetPolicy:
        """Build a policy from the scope section of the settings."""
        return cls(
            allowed_hosts=list(config.allowed_hosts),
            allowed_networks=list(config.allowed_networks),
        )

    def explain(self, target: Any) -> tuple[bool, str | None]:
        """
        Check a target against the allow-list.

        Returns:
            Tuple of (is_allowed, reason_if_not)
        """
        if not isinstance(target, str) or not target:
            return False, "target must be a non-empty string"

        if target != target.strip() or any(c.isspace() for c in target):
            return False, "target contains whitespace"

        if target.lower() in self._hosts:
            return True, None

        network = parse_network_target(target)
        if network is None:
            return False, "only IP literals, CIDR blocks and allow-listed hosts may be targeted"

        for allowed in self._networks:
            if network.version == allowed.version and network.subnet_of(allowed):  # type: ignore[arg-type]
                return True, None

        if network.num_addresses > 1:
            return False, f"{network} is not wholly inside an allowed network"
        return False, f"{network.network_address} is not in an allowed network"

    def is_allowed(self, target: Any) -> bool:
        """Return True if the target may be scanned or probed."""
        allowed, _ = self.explain(target)
        return allowed

    def check(self, target: Any) -> None:
        """
        Enforce the policy.

        Raises:
            TargetPolicyViolation: If the target is not allowed.
        """
        allowed, reason = self.explain(target)
        if not allowed:
            logger.warning("target_policy_violation", target=str(target), reason=reason)
            raise TargetPolicyViolation(str(target), reason)

    def describe(self) -> dict[str, Any]:
        """Return the allow-list for display."""
        return {
            "allowed_hosts": sorted(self._hosts),
            "allowed_networks": [str(n) for n in self._networks],
        }


# Global target policy instance
_target_policy: TargetPolicy | None = None


def get_target_policy() -> TargetPolicy:
    """Get the global target policy, built from settings on first use."""
    global _target_policy
    if _target_policy is None:
        from vigil.config import get_settings

        _target_policy = TargetPolicy.from_config(get_settings().scope)
    return _target_policy


def configure_target_policy(policy: TargetPolicy | None) -> TargetPolicy | None:
    """Replace the global target policy. Passing None resets it."""
    global _target_policy
    _target_policy = policy
    return _target_policy


def is_target_allowed(target: Any) -> bool:
    """Quick allow-list check using the global policy."""
    return get_target_policy().is_allowed(target)
