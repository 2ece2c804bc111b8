import pytest

from entitlement_engine.billing.trust import TrustDomain
from entitlement_engine.config import ConfigurationError, Settings
from entitlement_engine.main import create_app


class TestSettings:

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_SECRET_PRODUCTION", "  whsec_prod  ")
        monkeypatch.setenv("WEBHOOK_SECRET_SANDBOX", "")
        monkeypatch.setenv("MAX_WEBHOOK_PAYLOAD_BYTES", "1024")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.webhook_secret_production == "whsec_prod"
        assert settings.webhook_secret_sandbox is None
        assert settings.max_webhook_payload_bytes == 1024
        assert settings.log_level == "DEBUG"

    def test_non_numeric_value_rejected(self, monkeypatch):
        monkeypatch.setenv("PERSISTENCE_TIMEOUT_SECONDS", "soon")
        with pytest.raises(ConfigurationError):
            Settings.from_env()

    def test_secrets_listed_sandbox_first(self):
        settings = Settings(webhook_secret_sandbox="a", webhook_secret_production="b")
        assert list(settings.webhook_secrets()) == [TrustDomain.SANDBOX, TrustDomain.PRODUCTION]

    def test_one_secret_is_enough(self):
        Settings(webhook_secret_sandbox="whsec_sandbox").validate()

    def test_no_secrets_rejected(self):
        with pytest.raises(ConfigurationError):
            Settings().validate()

    @pytest.mark.parametrize("field", [
        "max_webhook_payload_bytes",
        "snapshot_ttl_seconds",
        "verification_timeout_seconds",
        "persistence_timeout_seconds",
        "cache_timeout_seconds",
    ])
    def test_non_positive_limits_rejected(self, field):
        settings = Settings(webhook_secret_production="whsec_prod", **{field: 0})
        with pytest.raises(ConfigurationError):
            settings.validate()


def test_app_refuses_to_start_without_secrets(engine):
    with pytest.raises(ConfigurationError):
        create_app(settings=Settings(database_url="sqlite://"), engine=engine)
