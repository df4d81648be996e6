import pytest
from pydantic import ValidationError

from canva_relay.config import DEFAULT_SCOPES, Settings


ENV_VARS = (
    "CANVA_CLIENT_ID", "CANVA_CLIENT_SECRET", "RELAY_BASE_URL", "CANVA_SCOPES",
    "STORAGE_BACKEND", "REDIS_URL", "REDIS_HOST", "SESSION_TTL_SECONDS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("canva_relay.config.load_dotenv", lambda: None)
    return monkeypatch


class TestSettings:

    def test_from_env(self, clean_env):
        clean_env.setenv("CANVA_CLIENT_ID", "id")
        clean_env.setenv("CANVA_CLIENT_SECRET", "secret")
        clean_env.setenv("RELAY_BASE_URL", "https://relay.example.com/")
        clean_env.setenv("SESSION_TTL_SECONDS", "900")

        settings = Settings.from_env()

        assert settings.client_id == "id"
        assert settings.relay_base_url == "https://relay.example.com"
        assert settings.callback_url == "https://relay.example.com/callback"
        assert settings.session_ttl_seconds == 900
        assert settings.scopes == DEFAULT_SCOPES
        assert settings.missing("client_id", "client_secret", "relay_base_url") == []

    def test_blank_values_count_as_missing(self, clean_env):
        clean_env.setenv("CANVA_CLIENT_ID", "   ")
        settings = Settings.from_env()
        assert settings.client_id is None
        assert settings.missing("client_id", "relay_base_url") == ["CANVA_CLIENT_ID", "RELAY_BASE_URL"]
        assert settings.callback_url is None

    def test_store_configured(self):
        assert Settings().store_configured
        assert not Settings(storage_backend="redis").store_configured
        assert Settings(storage_backend="REDIS", redis_url="redis://kv:6379/0").store_configured

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(storage_backend="memcached")

    def test_presence_never_exposes_values(self):
        presence = Settings(client_id="id", client_secret="s3cret").presence()
        assert presence["CANVA_CLIENT_ID"] is True
        assert presence["RELAY_BASE_URL"] is False
        assert "s3cret" not in repr(presence)
