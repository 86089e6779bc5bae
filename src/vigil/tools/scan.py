"""
Network scan adapter (nmap).

The argument vector is built here and nowhere else. Polite timing, a
packet-rate ceiling, a single retry and a per-host timeout are always
added, and callers can only choose from a fixed set of scan types.
Targets outside the target policy are refused before anything runs.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

import structlog
from pydantic import Field, field_validator

from vigil.core.risk import RiskLevel
from vigil.core.scope import parse_network_target
from vigil.tools.base import BaseTool, ToolArguments, ToolCategory, ToolName, ToolOutcome
from vigil.utils.error_handling import ToolError, handle_tool_error
from vigil.utils.parsing import NmapParser, OutputParseError
from vigil.utils.validation import (
    ValidationError,
    format_port_spec,
    parse_port_spec,
    validate_target,
)

if TYPE_CHECKING:
    from vigil.config.settings import ToolConfig
    from vigil.core.runner import CommandRunner
    from vigil.core.scope import TargetPolicy

logger = structlog.get_logger(__name__)


class ScanType(str, Enum):
    """Supported scan techniques."""

    PING = "ping"
    TCP = "tcp"
    SYN = "syn"
    UDP = "udp"
    SERVICE = "service"


SCAN_TYPE_FLAGS: dict[ScanType, list[str]] = {
    ScanType.PING: ["-sn"],
    ScanType.TCP: ["-sT"],
    ScanType.SYN: ["-sS"],
    ScanType.UDP: ["-sU"],
    ScanType.SERVICE: ["-sV"],
}

SCAN_TYPE_HINTS: dict[ScanType, RiskLevel] = {
    ScanType.PING: RiskLevel.LOW,
    ScanType.TCP: RiskLevel.LOW,
    ScanType.SYN: RiskLevel.MEDIUM,
    ScanType.UDP: RiskLevel.MEDIUM,
    ScanType.SERVICE: RiskLevel.MEDIUM,
}


class ScanArguments(ToolArguments):
    """Arguments for a network scan."""

    target: str = Field(min_length=1, max_length=253, description="IP, CIDR block or allow-listed host")
    scan_type: ScanType = Field(default=ScanType.TCP, description="Scan technique")
    ports: str | None = Field(
        default=None,
        description="Ports such as '22,80,443' or '8000-8100'; top ports when omitted",
    )

    @field_validator("target")
    @classmethod
    def check_target(cls, v: str) -> str:
        kind, error = validate_target(v)
        if kind == "unknown":
            raise ValueError(error)
        return v

    @field_validator("scan_type", mode="before")
    @classmethod
    def lower_scan_type(cls, v: object) -> object:
        return v.lower() if isinstance(v, str) else v

    @field_validator("ports", mode="before")
    @classmethod
    def normalize_ports(cls, v: object) -> object:
        if v is None or v == "":
            return None
        if isinstance(v, int):
            v = str(v)
        if isinstance(v, (list, tuple)):
            v = ",".join(str(p) for p in v)
        if not isinstance(v, str):
            raise ValueError("ports must be a string, an integer or a list of integers")
        try:
            return format_port_spec(parse_port_spec(v))
        except ValidationError as e:
            raise ValueError(str(e)) from e


class NmapScanTool(BaseTool):
    """Scan hosts inside the allowed address space with nmap."""

    name = ToolName.NMAP
    description = (
        "Scan an allow-listed host or private network (loopback, 10/8, 172.16/12, 192.168/16) "
        "for open ports. scan_type is one of ping, tcp, syn, udp, service."
    )
    args_model = ScanArguments
    category = ToolCategory.SCANNING

    def __init__(self, runner: CommandRunner, config: ToolConfig, target_policy: TargetPolicy) -> None:
        super().__init__(runner, config)
        self.target_policy = target_policy

    def validate_arguments(self, arguments: Mapping[str, Any] | ToolArguments) -> ToolArguments:
        """
        Validate arguments and apply the scan budget.

        Raises:
            pydantic.ValidationError: If the arguments are malformed.
            ValidationError: If the port list or target range is over budget.
        """
        args = super().validate_arguments(arguments)
        assert isinstance(args, ScanArguments)

        if args.ports:
            count = len(parse_port_spec(args.ports))
            if count > self.config.scan_max_ports:
                raise ValidationError(
                    f"{count} ports requested; at most {self.config.scan_max_ports} may be scanned at once"
                )

        network = parse_network_target(args.target)
        if network is not None and network.num_addresses > self.config.scan_max_targets:
            raise ValidationError(
                f"{args.target} covers {network.num_addresses} addresses; "
                f"at most {self.config.scan_max_targets} may be scanned at once"
            )

        return args

    def build_args(self, args: ScanArguments) -> list[str]:
        """Build the nmap argument vector."""
        host_timeout = max(1, int(self.config.scan_timeout) - 2)
        argv = [
            *SCAN_TYPE_FLAGS[args.scan_type],
            "-n",
            "-T2",
            "--max-rate",
            str(self.config.scan_max_rate),
            "--max-retries",
            "1",
            "--host-timeout",
            f"{host_timeout}s",
        ]

        if args.scan_type is not ScanType.PING:
            if args.ports:
                argv += ["-p", args.ports]
            else:
                argv += ["--top-ports", str(self.config.scan_top_ports)]

        argv += ["-oX", "-", args.target]
        return argv

    @handle_tool_error()
    async def execute(self, args: ToolArguments) -> ToolOutcome:
        args = self.validate_arguments(args)
        assert isinstance(args, ScanArguments)

        allowed, reason = self.target_policy.explain(args.target)
        if not allowed:
            logger.warning("scan_target_rejected", target=args.target, reason=reason)
            return ToolOutcome.failure(
                f"Target not allowed: {args.target} ({reason})",
                risk_level_hint=RiskLevel.HIGH,
                metadata={"error_code": "target_not_allowed"},
            )

        result = await self.runner.run(
            self.config.nmap_path,
            self.build_args(args),
            timeout=self.config.scan_timeout,
        )
        if result.exit_code != 0:
            raise ToolError(
                self.command_failed(result),
                error_code="scan_failed",
                commands=[result.command_line],
            )

        try:
            hosts = NmapParser.parse_xml(result.stdout)
        except OutputParseError as e:
            raise ToolError(str(e), error_code="parse_failure", commands=[result.command_line]) from e

        data: dict[str, Any] = {
            "target": args.target,
            "scan_type": args.scan_type.value,
            **NmapParser.summarize(hosts),
        }

        logger.info(
            "scan_complete",
            target=args.target,
            scan_type=args.scan_type.value,
            status=data["status"],
            ports=len(data["ports"]),
        )

        return ToolOutcome.ok(
            data,
            commands=[result.command_line],
            risk_level_hint=SCAN_TYPE_HINTS[args.scan_type],
            execution_time_ms=result.duration_ms,
        )
