"""Tests for YAML settings/secrets loading."""
import pytest

from relay.config import AppSettings, get_config, load_settings, reset_config


@pytest.fixture
def config_files(tmp_path, monkeypatch):
    settings = tmp_path / "relay.settings.yaml"
    secrets = tmp_path / "relay.secrets.yaml"
    monkeypatch.setenv("RELAY_SETTINGS_FILE", str(settings))
    monkeypatch.setenv("RELAY_SECRETS_FILE", str(secrets))
    return settings, secrets


class TestLoadSettings:
    def test_defaults_when_files_missing(self, config_files):
        config = load_settings()

        assert config.redis.backend == "redis"
        assert config.redis.presence_key == "online_users"
        assert config.redis.clear_presence_on_startup is False
        assert config.redis.message_stream == "chat:messages"
        assert config.store.db_path == "relay_messages.duckdb"
        assert config.auth.algorithm == "HS256"

    def test_settings_and_secrets_are_merged(self, config_files):
        settings, secrets = config_files
        settings.write_text(
            "server:\n"
            "  port: 9100\n"
            "redis:\n"
            "  backend: memory\n"
            "  channel_prefix: staging\n"
            "store:\n"
            "  db_path: /tmp/relay.duckdb\n"
        )
        secrets.write_text(
            "jwt:\n"
            "  secret_key: s3cret\n"
            "redis:\n"
            "  password: hunter2\n"
        )

        config = load_settings()

        assert config.server.port == 9100
        assert config.redis.backend == "memory"
        assert config.redis.channel_prefix == "staging"
        assert config.store.db_path == "/tmp/relay.duckdb"
        assert config.secrets.jwt.secret_key == "s3cret"
        assert config.secrets.redis.password == "hunter2"

    def test_empty_file(self, config_files):
        settings, _ = config_files
        settings.write_text("")

        assert isinstance(load_settings(), AppSettings)

    def test_unknown_backend_rejected(self, config_files):
        settings, _ = config_files
        settings.write_text("redis:\n  backend: kafka\n")

        with pytest.raises(ValueError):
            load_settings()


def test_get_config_is_cached(config_files):
    reset_config()

    first = get_config()

    assert get_config() is first
