"""Tests for configuration settings and billing policy loading."""

import logging
from pathlib import Path

import pytest
import structlog

from fieldbill.config import configure_logging
from fieldbill.config.policy_loader import load_billing_policies, policy_for_account
from fieldbill.config.settings import get_settings


def test_settings_loads_from_env():
    """Test that settings loads from environment variables."""
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.accounting_client_id == "test-client"
    assert settings.accounting_client_secret.get_secret_value() == "test-secret"
    assert settings.anthropic_api_key.get_secret_value() == "sk-ant-test"
    assert settings.openai_api_key.get_secret_value() == "sk-test"


def test_settings_has_defaults():
    """Test that settings has sensible defaults."""
    get_settings.cache_clear()
    settings = get_settings()

    assert settings.accounting_provider == "quickbooks"
    assert settings.accounting_timeout == 30.0
    assert settings.accounting_max_retries == 3
    assert settings.token_refresh_window_seconds == 300
    assert settings.approval_confidence_threshold == 0.8
    assert settings.high_value_threshold == 50000
    assert settings.fallback_confidence == 0.7
    assert settings.overdue_high_days == 30
    assert settings.overdue_med_days == 14
    assert settings.suggestion_provider == "claude"


def test_settings_are_cached():
    """Test that get_settings returns cached instance."""
    get_settings.cache_clear()

    settings1 = get_settings()
    settings2 = get_settings()

    assert settings1 is settings2


def test_env_override(monkeypatch):
    """Test that flat env names override defaults."""
    monkeypatch.setenv("HIGH_VALUE_THRESHOLD", "75000")
    monkeypatch.setenv("SUGGESTION_PROVIDER", "openai")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.high_value_threshold == 75000
        assert settings.suggestion_provider == "openai"
    finally:
        get_settings.cache_clear()


@pytest.fixture
def policy_file(tmp_path: Path) -> Path:
    path = tmp_path / "billing_policy.yaml"
    path.write_text(
        """
accounts:
  7:
    approval_confidence_threshold: 0.9
    high_value_threshold: 75000
    overdue_high_days: 45
    base_rates:
      Mowing: 5200
""",
        encoding="utf-8",
    )
    return path


class TestPolicyLoader:
    """Tests for per-account billing policy overrides."""

    def test_defaults_without_file(self):
        """Test that settings values are used when no file is configured."""
        policy = policy_for_account(7, settings=get_settings())

        assert policy.approval_confidence_threshold == 0.8
        assert policy.high_value_threshold == 50000
        assert policy.base_rate_overrides == {}

    def test_account_overrides_applied(self, policy_file):
        """Test that an account's block replaces only the listed fields."""
        policy = policy_for_account(7, settings=get_settings(), path=policy_file)

        assert policy.approval_confidence_threshold == 0.9
        assert policy.high_value_threshold == 75000
        assert policy.overdue_high_days == 45
        assert policy.overdue_med_days == 14
        assert policy.base_rate_overrides == {"mowing": 5200}

    def test_other_accounts_keep_defaults(self, policy_file):
        """Test that accounts absent from the file use global settings."""
        policy = policy_for_account(8, settings=get_settings(), path=policy_file)

        assert policy.high_value_threshold == 50000

    def test_missing_file_is_empty(self, tmp_path):
        """Test that a configured but missing file yields no overrides."""
        assert load_billing_policies(tmp_path / "absent.yaml") == {}

    def test_invalid_threshold_names_file(self, tmp_path):
        """Test that bad values raise ValueError naming the file."""
        path = tmp_path / "bad_policy.yaml"
        path.write_text("accounts:\n  3:\n    approval_confidence_threshold: 1.5\n")

        with pytest.raises(ValueError) as exc_info:
            load_billing_policies(path)

        assert "bad_policy.yaml" in str(exc_info.value)

    def test_negative_base_rate_rejected(self, tmp_path):
        """Test that base rates must be non-negative integers."""
        path = tmp_path / "rates.yaml"
        path.write_text("accounts:\n  3:\n    base_rates:\n      mowing: -1\n")

        with pytest.raises(ValueError, match="base rate"):
            load_billing_policies(path)

    def test_non_numeric_account_rejected(self, tmp_path):
        """Test that account keys must be integers."""
        path = tmp_path / "accounts.yaml"
        path.write_text("accounts:\n  north-branch:\n    overdue_med_days: 10\n")

        with pytest.raises(ValueError, match="invalid account id"):
            load_billing_policies(path)


class TestConfigureLogging:
    """Tests for logging setup."""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        names = ("httpx", "openai", "sqlalchemy.engine")
        levels = {name: logging.getLogger(name).level for name in names}
        yield
        for name, level in levels.items():
            logging.getLogger(name).setLevel(level)
        structlog.reset_defaults()

    def test_client_loggers_quieted_at_debug(self):
        configure_logging(level="DEBUG", format="json")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("openai").level == logging.WARNING

    def test_sql_echo_follows_settings(self):
        configure_logging(level="INFO", format="console")

        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
