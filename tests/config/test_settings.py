"""Settings.from_env parsing."""

from pathlib import Path

import pytest

from retail_config.settings import (
    DEFAULT_DATABASE_URL,
    DEFAULT_POSTING_RULES_PATH,
    Settings,
)


class TestDefaults:
    def test_empty_environment(self):
        settings = Settings.from_env({})
        assert settings == Settings()
        assert settings.database_url == DEFAULT_DATABASE_URL
        assert settings.base_currency == "ETB"
        assert settings.idempotency_lock_timeout == 300
        assert settings.pos_gl_posting_enabled is True
        assert settings.posting_rules_path == DEFAULT_POSTING_RULES_PATH
        assert settings.log_level == "INFO"

    def test_settings_are_frozen(self):
        with pytest.raises(AttributeError):
            Settings().base_currency = "USD"


class TestFromEnv:
    def test_all_variables(self, tmp_path):
        rules = tmp_path / "rules.yaml"
        settings = Settings.from_env(
            {
                "DATABASE_URL": "postgresql://retail@localhost/retail",
                "ACCOUNTING_BASE_CURRENCY": " usd ",
                "ACCOUNTING_IDEMPOTENCY_LOCK_TIMEOUT": "60",
                "POS_GL_POSTING_ENABLED": "false",
                "POSTING_RULES_PATH": str(rules),
                "LOG_LEVEL": "debug",
            }
        )
        assert settings.database_url == "postgresql://retail@localhost/retail"
        assert settings.base_currency == "USD"
        assert settings.idempotency_lock_timeout == 60
        assert settings.pos_gl_posting_enabled is False
        assert settings.posting_rules_path == Path(rules)
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("raw,expected", [("1", True), ("YES", True), ("on", True), ("0", False), ("off", False)])
    def test_boolean_spellings(self, raw, expected):
        assert Settings.from_env({"POS_GL_POSTING_ENABLED": raw}).pos_gl_posting_enabled is expected

    def test_bad_boolean(self):
        with pytest.raises(ValueError, match="POS_GL_POSTING_ENABLED must be a boolean"):
            Settings.from_env({"POS_GL_POSTING_ENABLED": "maybe"})

    def test_bad_timeout(self):
        with pytest.raises(ValueError, match="must be an integer"):
            Settings.from_env({"ACCOUNTING_IDEMPOTENCY_LOCK_TIMEOUT": "five"})

    def test_non_positive_timeout(self):
        with pytest.raises(ValueError, match="must be positive"):
            Settings.from_env({"ACCOUNTING_IDEMPOTENCY_LOCK_TIMEOUT": "0"})

    def test_bad_currency(self):
        with pytest.raises(ValueError, match="ISO 4217"):
            Settings.from_env({"ACCOUNTING_BASE_CURRENCY": "BIRR"})
