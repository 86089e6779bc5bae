"""
Vigil configuration settings using Pydantic.

This module provides type-safe configuration management with validation,
environment variable support, and nested configuration structures.
Risk thresholds and the target allow-list are policy data and live here
rather than in the code that applies them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

RiskTier = Literal["low", "medium", "high"]

DEFAULT_SUBDOMAIN_CANDIDATES: list[str] = [
    "www",
    "mail",
    "ftp",
    "admin",
    "test",
    "dev",
    "staging",
    "api",
    "blog",
    "shop",
    "support",
    "portal",
    "secure",
    "vpn",
]


class ModelConfig(BaseModel):
    """Claude model configuration for the completion provider."""

    name: str = Field(
        default="claude-sonnet-4-20250514",
        description="Claude model used for classification, planning and chat",
    )
    max_tokens: int = Field(
        default=1024,
        ge=1,
        le=64000,
        description="Default maximum tokens in a response",
    )
    timeout: float = Field(
        default=60.0,
        ge=1.0,
        le=600.0,
        description="HTTP request timeout in seconds",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts for transient API failures",
    )


class RunnerConfig(BaseModel):
    """Limits applied to every spawned process."""

    default_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600.0,
        description="Wall-clock limit when the caller gives none",
    )
    max_output_bytes: int = Field(
        default=1024 * 1024,
        ge=1024,
        description="Maximum captured stdout before the process is killed",
    )
    chunk_size: int = Field(
        default=4096,
        ge=64,
        le=1024 * 1024,
        description="Read size used when draining process pipes",
    )
    kill_grace_seconds: float = Field(
        default=0.1,
        ge=0.0,
        le=0.25,
        description="Time between SIGTERM and SIGKILL",
    )


class ToolConfig(BaseModel):
    """Tool adapter configuration."""

    nmap_path: str = Field(default="nmap", description="nmap executable")
    dig_path: str = Field(default="dig", description="dig executable")
    whois_path: str = Field(default="whois", description="whois executable")

    scan_timeout: float = Field(default=30.0, gt=0, description="nmap timeout in seconds")
    dns_timeout: float = Field(default=5.0, gt=0, description="dig timeout in seconds")
    whois_timeout: float = Field(default=10.0, gt=0, description="whois timeout in seconds")

    scan_max_rate: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Packets per second ceiling passed to nmap",
    )
    scan_top_ports: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Number of common ports scanned when none are given",
    )
    scan_max_ports: int = Field(
        default=1024,
        ge=1,
        le=65535,
        description="Maximum number of explicit ports in one scan",
    )
    scan_max_targets: int = Field(
        default=256,
        ge=1,
        le=65536,
        description="Maximum number of addresses a CIDR target may cover",
    )
    subdomain_candidates: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SUBDOMAIN_CANDIDATES),
        description="Prefixes tried during passive subdomain enumeration",
    )
    subdomain_concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Concurrent DNS lookups during enumeration",
    )


class ScopeConfig(BaseModel):
    """Address space that scans and probes may touch."""

    allowed_hosts: list[str] = Field(
        default_factory=lambda: ["localhost", "127.0.0.1"],
        description="Exact hostnames or addresses always in scope",
    )
    allowed_networks: list[str] = Field(
        default_factory=lambda: ["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"],
        description="Networks whose addresses are in scope",
    )


class RiskPolicy(BaseModel):
    """
    Risk tiers used by the risk assessor.

    Tool base tiers apply first; scan types, wide port lists and
    multi-host targets may raise the tier. An out-of-policy target
    always yields ``out_of_policy``.
    """

    tool_tiers: dict[str, RiskTier] = Field(
        default_factory=lambda: {
            "nmap": "low",
            "dns_lookup": "low",
            "whois": "low",
            "subdomain_enum": "low",
            "domain_intel": "low",
        },
    )
    scan_type_tiers: dict[str, RiskTier] = Field(
        default_factory=lambda: {
            "ping": "low",
            "tcp": "low",
            "syn": "medium",
            "udp": "medium",
            "service": "medium",
        },
    )
    wide_port_threshold: int = Field(
        default=100,
        ge=1,
        description="Explicit port count at which a scan is raised to medium",
    )
    multi_host_tier: RiskTier = Field(
        default="medium",
        description="Tier for targets covering more than one address",
    )
    out_of_policy: RiskTier = "high"
    unknown_tool: RiskTier = "high"
    approval_tiers: list[RiskTier] = Field(
        default_factory=lambda: ["high"],
        description="Tiers that always require human approval",
    )


class AgentConfig(BaseModel):
    """Intent classification, planning and chat behaviour."""

    history_turns: int = Field(default=5, ge=0, le=50)
    classifier_temperature: float = Field(default=0.3, ge=0.0, le=1.0)
    planner_temperature: float = Field(default=0.4, ge=0.0, le=1.0)
    chat_temperature: float = Field(default=0.8, ge=0.0, le=1.0)
    classifier_max_tokens: int = Field(default=512, ge=1)
    planner_max_tokens: int = Field(default=2048, ge=1)
    chat_max_tokens: int = Field(default=512, ge=1)
    completion_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for one completion call including retries",
    )
    rag_top_k: int = Field(default=5, ge=1, le=50)


class StorageConfig(BaseModel):
    """Tool-run ledger storage."""

    ledger_dir: Path = Field(
        default=Path.home() / ".vigil" / "runs",
        description="Directory holding one JSON file per tool run",
    )


class OutputConfig(BaseModel):
    """Output and logging configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(
        default=True,
        description="Render logs as JSON unless the level is DEBUG",
    )


class VigilSettings(BaseSettings):
    """
    Main Vigil configuration.

    Settings are loaded from environment variables with the VIGIL_ prefix,
    or from a .env file in the current directory. Nested values use a
    double underscore, e.g. ``VIGIL_TOOLS__SCAN_TIMEOUT=20``.
    """

    model_config = SettingsConfigDict(
        env_prefix="VIGIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    anthropic_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("VIGIL_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
        description="Anthropic API key used by the completion provider",
    )

    model: ModelConfig = Field(default_factory=ModelConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    tools: ToolConfig = Field(default_factory=ToolConfig)
    scope: ScopeConfig = Field(default_factory=ScopeConfig)
    risk: RiskPolicy = Field(default_factory=RiskPolicy)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)

    @field_validator("anthropic_api_key", mode="before")
    @classmethod
    def empty_key_is_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def get_api_key(self) -> str | None:
        """Get the Anthropic API key as a string if configured."""
        if self.anthropic_api_key:
            return self.anthropic_api_key.get_secret_value()
        return None
