import pytest
from pydantic import ValidationError

from fusion_ledger import main
from fusion_ledger.config import Settings
from fusion_ledger.exceptions import ConfigurationError


class TestConfigurationValidation:
    """Test configuration validation and environment variable handling."""

    def test_environment_variables_are_read(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://user:pass@db:5432/ledger")
        monkeypatch.setenv("FUSION_COST", "2")
        monkeypatch.setenv("STRIPE_WEBHOOK_TOLERANCE", "120")

        settings = Settings()

        assert settings.database_url == "postgresql+psycopg2://user:pass@db:5432/ledger"
        assert not settings.is_sqlite
        assert settings.fusion_cost == 2
        assert settings.stripe_webhook_tolerance == 120

    def test_test_database_is_sqlite(self):
        assert Settings().is_sqlite

    def test_fusion_cost_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("FUSION_COST", "0")
        with pytest.raises(ValidationError) as exc_info:
            Settings()
        assert "fusion_cost" in str(exc_info.value)

    def test_unknown_environment_rejected(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "prod-ish")
        with pytest.raises(ValidationError):
            Settings()

    def test_invalid_log_level_rejected(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "CHATTY")
        with pytest.raises(ValidationError):
            Settings()


class TestProductionSettings:
    def _production(self, monkeypatch, **overrides):
        values = {
            "environment": "production",
            "jwt_secret": "a-very-secure-32-character-secret-key-here",
            "admin_api_key": "a-long-random-admin-key",
            "stripe_webhook_secret": "whsec_1234567890123456789012345678901234",
        }
        values.update(overrides)
        for name, value in values.items():
            monkeypatch.setattr(main.settings, name, value)

    def test_production_with_real_secrets_passes(self, monkeypatch):
        self._production(monkeypatch)
        main.check_production_settings()

    @pytest.mark.parametrize("name, value", [
        ("jwt_secret", "change-me"),
        ("admin_api_key", "change-me-admin"),
        ("stripe_webhook_secret", "whsec_change_me"),
    ])
    def test_production_with_default_secret_fails(self, monkeypatch, name, value):
        self._production(monkeypatch, **{name: value})
        with pytest.raises(ConfigurationError) as exc_info:
            main.check_production_settings()
        assert exc_info.value.details["setting"] == name

    def test_defaults_are_fine_outside_production(self, monkeypatch):
        monkeypatch.setattr(main.settings, "environment", "development")
        monkeypatch.setattr(main.settings, "jwt_secret", "change-me")
        main.check_production_settings()
