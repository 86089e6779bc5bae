"""
Unit tests for configuration (config/).
"""

import pytest
from pydantic import ValidationError

from vigil.config import (
    ConfigManager,
    ConfigurationError,
    RiskPolicy,
    VigilSettings,
    get_config_manager,
    validate_environment,
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("ANTHROPIC_API_KEY", "VIGIL_ANTHROPIC_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


@pytest.fixture
def manager():
    manager = get_config_manager()
    manager.reset()
    yield manager
    manager.reset()


class TestVigilSettings:
    """Tests for VigilSettings."""

    def test_defaults(self, clean_env):
        settings = VigilSettings()

        assert settings.get_api_key() is None
        assert settings.scope.allowed_networks == ["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"]
        assert settings.risk.approval_tiers == ["high"]
        assert settings.tools.scan_timeout == 30.0

    def test_api_key_aliases(self, clean_env):
        clean_env.setenv("ANTHROPIC_API_KEY", "sk-plain")
        assert VigilSettings().get_api_key() == "sk-plain"

        clean_env.setenv("VIGIL_ANTHROPIC_API_KEY", "sk-vigil")
        assert VigilSettings().get_api_key() == "sk-vigil"

    def test_blank_api_key_is_none(self, clean_env):
        clean_env.setenv("ANTHROPIC_API_KEY", "  ")
        assert VigilSettings().get_api_key() is None

    def test_api_key_not_in_repr(self, clean_env):
        clean_env.setenv("ANTHROPIC_API_KEY", "sk-secret")
        assert "sk-secret" not in repr(VigilSettings())

    def test_nested_environment(self, clean_env):
        clean_env.setenv("VIGIL_TOOLS__SCAN_TIMEOUT", "12.5")
        clean_env.setenv("VIGIL_AGENT__HISTORY_TURNS", "3")

        settings = VigilSettings()

        assert settings.tools.scan_timeout == 12.5
        assert settings.agent.history_turns == 3

    def test_dotenv_file(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("VIGIL_OUTPUT__LOG_LEVEL=DEBUG\n")
        assert VigilSettings().output.log_level == "DEBUG"

    @pytest.mark.parametrize(
        ("key", "value"),
        [
            ("VIGIL_TOOLS__SCAN_MAX_RATE", "5000"),
            ("VIGIL_TOOLS__SCAN_TIMEOUT", "0"),
            ("VIGIL_OUTPUT__LOG_LEVEL", "LOUD"),
            ("VIGIL_RUNNER__KILL_GRACE_SECONDS", "2"),
        ],
    )
    def test_invalid_values(self, clean_env, key, value):
        clean_env.setenv(key, value)
        with pytest.raises(ValidationError):
            VigilSettings()

    def test_risk_tiers_validated(self):
        with pytest.raises(ValidationError):
            RiskPolicy(scan_type_tiers={"ping": "critical"})


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_singleton(self, manager):
        assert ConfigManager() is manager
        assert get_config_manager() is manager

    def test_load_settings_with_overrides(self, clean_env, manager, tmp_path):
        settings = manager.load_settings(configure_logging=False, storage={"ledger_dir": tmp_path / "runs"})

        assert manager.settings is settings
        assert settings.storage.ledger_dir == tmp_path / "runs"

    def test_invalid_overrides(self, clean_env, manager):
        with pytest.raises(ConfigurationError):
            manager.load_settings(configure_logging=False, agent={"history_turns": -1})

    def test_use_settings(self, clean_env, manager):
        settings = VigilSettings()
        manager.use_settings(settings)
        assert manager.settings is settings


class TestValidateEnvironment:
    """Tests for validate_environment."""

    def test_missing_binaries_reported(self, clean_env, tmp_path):
        settings = VigilSettings(
            tools={"nmap_path": "definitely-not-nmap", "dig_path": "no-dig-here", "whois_path": "no-whois"},
            storage={"ledger_dir": tmp_path / "runs"},
        )

        valid, errors = validate_environment(settings)

        assert not valid
        assert any("'nmap'" in e for e in errors)
        assert (tmp_path / "runs").is_dir()
