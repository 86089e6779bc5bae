"""
Vigil configuration module.

This module provides centralized configuration management, environment
validation, and settings handling.
"""

from vigil.config.environment import (
    SecurityTool,
    discover_security_tools,
    setup_logging,
    validate_environment,
)
from vigil.config.manager import (
    ConfigManager,
    ConfigurationError,
    get_config_manager,
    get_settings,
)
from vigil.config.settings import (
    AgentConfig,
    ModelConfig,
    OutputConfig,
    RiskPolicy,
    RunnerConfig,
    ScopeConfig,
    StorageConfig,
    ToolConfig,
    VigilSettings,
)

__all__ = [
    "AgentConfig",
    "ConfigManager",
    "ConfigurationError",
    "ModelConfig",
    "OutputConfig",
    "RiskPolicy",
    "RunnerConfig",
    "ScopeConfig",
    "SecurityTool",
    "StorageConfig",
    "ToolConfig",
    "VigilSettings",
    "discover_security_tools",
    "get_config_manager",
    "get_settings",
    "setup_logging",
    "validate_environment",
]
