"""
Centralized configuration manager for Vigil.

This module provides a singleton configuration manager that handles
loading, caching, and providing access to all configuration settings.
"""

from __future__ import annotations

from functools import lru_cache
from threading import Lock

import structlog

from vigil.config.environment import setup_logging
from vigil.config.settings import VigilSettings

logger = structlog.get_logger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class ConfigManager:
    """
    Centralized configuration manager.

    Provides a singleton pattern for accessing configuration throughout
    the application. Settings are loaded lazily on first access.
    """

    _instance: ConfigManager | None = None
    _lock: Lock = Lock()

    def __new__(cls) -> ConfigManager:
        """Ensure singleton pattern."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return

        self._settings: VigilSettings | None = None
        self._initialized = True

    @property
    def settings(self) -> VigilSettings:
        """Get the current settings, loading them from the environment if needed."""
        if self._settings is None:
            return self.load_settings()
        return self._settings

    def load_settings(self, configure_logging: bool = True, **overrides: object) -> VigilSettings:
        """
        Load settings from the environment.

        Args:
            configure_logging: Apply the logging section of the settings.
            **overrides: Override specific settings.

        Returns:
            Loaded VigilSettings object.

        Raises:
            ConfigurationError: If the settings fail validation.
        """
        try:
            settings = VigilSettings(**overrides)
        except Exception as e:
            raise ConfigurationError(f"Failed to load settings: {e}") from e

        self._settings = settings

        if configure_logging:
            setup_logging(settings)

        logger.info(
            "settings_loaded",
            model=settings.model.name,
            ledger_dir=str(settings.storage.ledger_dir),
            allowed_networks=settings.scope.allowed_networks,
        )
        return settings

    def use_settings(self, settings: VigilSettings) -> None:
        """Install an already-built settings object."""
        self._settings = settings

    def reset(self) -> None:
        """Reset the configuration manager state."""
        self._settings = None
        logger.debug("config_manager_reset")


@lru_cache(maxsize=1)
def get_config_manager() -> ConfigManager:
    """
    Get the singleton ConfigManager instance.

    Returns:
        The ConfigManager singleton.
    """
    return ConfigManager()


def get_settings() -> VigilSettings:
    """
    Convenience function to get current settings.

    Returns:
        Current VigilSettings.

    Raises:
        ConfigurationError: If settings cannot be loaded.
    """
    return get_config_manager().settings
