"""
Risk assessment for tool invocations.

RiskAssessor maps a tool name and its arguments to a risk tier using
the RiskPolicy from settings. It is deterministic and holds no mutable
state, so one instance can serve any number of concurrent requests.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Mapping

import structlog

from vigil.core.scope import TargetPolicy, parse_network_target
from vigil.utils.validation import ValidationError, parse_port_spec

if TYPE_CHECKING:
    from vigil.config.settings import RiskPolicy

logger = structlog.get_logger(__name__)


class RiskLevel(str, Enum):
    """Risk tiers, ordered from least to most dangerous."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @classmethod
    def highest(cls, levels: Iterable[RiskLevel | str]) -> RiskLevel:
        """Return the most severe tier, LOW for an empty iterable."""
        result = cls.LOW
        for level in levels:
            level = cls(level)
            if level.rank > result.rank:
                result = level
        return result


_RANKS = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


def _lookup(arguments: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in arguments:
            return arguments[key]
    return None


class RiskAssessor:
    """
    Computes the risk tier of a tool invocation.

    Rules, in order:
    - unknown tools get ``policy.unknown_tool``
    - a ``target`` outside the target policy gets ``policy.out_of_policy``
      regardless of every other argument
    - otherwise the highest of the tool's base tier, the scan-type tier,
      and escalations for wide explicit port lists and multi-host targets
    """

    def __init__(self, policy: RiskPolicy, target_policy: TargetPolicy) -> None:
        self.policy = policy
        self.target_policy = target_policy

    def assess(self, tool_name: str, arguments: Mapping[str, Any] | None = None) -> RiskLevel:
        """Return the risk tier for one invocation."""
        arguments = arguments or {}
        name = getattr(tool_name, "value", tool_name)

        if name not in self.policy.tool_tiers:
            logger.info("risk_unknown_tool", tool=name)
            return RiskLevel(self.policy.unknown_tool)

        target = _lookup(arguments, "target")
        if target is not None and not self.target_policy.is_allowed(target):
            logger.info("risk_out_of_policy_target", tool=name, target=str(target))
            return RiskLevel(self.policy.out_of_policy)

        levels: list[RiskLevel] = [RiskLevel(self.policy.tool_tiers[name])]

        scan_type = _lookup(arguments, "scan_type", "scanType")
        if scan_type is not None:
            scan_type = getattr(scan_type, "value", scan_type)
            tier = self.policy.scan_type_tiers.get(str(scan_type))
            levels.append(RiskLevel(tier) if tier else RiskLevel(self.policy.unknown_tool))

        ports = _lookup(arguments, "ports")
        if ports:
            if isinstance(ports, (list, tuple)):
                ports = ",".join(str(p) for p in ports)
            try:
                count = len(parse_port_spec(str(ports)))
            except ValidationError:
                count = self.policy.wide_port_threshold
            if count >= self.policy.wide_port_threshold:
                levels.append(RiskLevel.MEDIUM)

        if isinstance(target, str):
            network = parse_network_target(target)
            if network is not None and network.num_addresses > 1:
                levels.append(RiskLevel(self.policy.multi_host_tier))

        return RiskLevel.highest(levels)

    def requires_approval(self, level: RiskLevel | str) -> bool:
        """Return True when the tier always needs a human decision."""
        return RiskLevel(level).value in self.policy.approval_tiers
