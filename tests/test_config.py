"""Tests for parley settings."""

import pytest
import yaml

from parley.config import Settings
from parley.crypto import base64url_to_bytes, bytes_to_base64url, generate_key
from parley.errors import ParleyConfigError


class TestDefaults:
    def test_default_values(self):
        settings = Settings()
        assert settings.db_path == ":memory:"
        assert settings.invitation_ttl_hours == 168
        assert settings.invitation_ttl_seconds == 168 * 3600
        assert settings.expire_invitations_on_accept is False
        assert settings.kdf_iterations == 100_000
        assert settings.wrap_algorithm == "x25519-sealedbox"
        assert settings.delete_batch_size == 500
        assert settings.page_size == 100
        assert settings.store_retry_attempts == 3
        assert settings.auth_token_ttl_minutes == 24 * 60

    def test_generated_kek_is_pinned(self):
        """Without a configured secret, one key is generated and reused."""
        settings = Settings()
        first = settings.room_key_encryption_key()
        assert len(first) == 32
        assert settings.room_key_encryption_key() == first

    def test_configured_kek(self):
        key = generate_key()
        settings = Settings(room_key_secret=bytes_to_base64url(key))
        assert settings.room_key_encryption_key() == key


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"invitation_ttl_hours": 0},
            {"kdf_iterations": 0},
            {"page_size": 0},
            {"delete_batch_size": -1},
            {"store_retry_attempts": -1},
            {"auth_token_ttl_minutes": 0},
            {"wrap_algorithm": "rot13"},
            {"room_key_secret": "not base64!"},
            {"room_key_secret": bytes_to_base64url(b"short")},
        ],
    )
    def test_invalid_settings_rejected(self, overrides):
        with pytest.raises(ParleyConfigError):
            Settings(**overrides)

    def test_hkdf_wrap_algorithm_accepted(self):
        assert Settings(wrap_algorithm="x25519-hkdf-aesgcm").wrap_algorithm == "x25519-hkdf-aesgcm"


class TestYamlFile:
    def test_load(self, tmp_path):
        path = tmp_path / "parley.yaml"
        path.write_text(yaml.safe_dump({"db_path": "data.db", "page_size": 25, "no_auth": True}))

        settings = Settings.load(path)

        assert settings.db_path == "data.db"
        assert settings.page_size == 25
        assert settings.no_auth is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(ParleyConfigError, match="not found"):
            Settings.load(tmp_path / "missing.yaml")

    def test_unknown_keys_rejected(self, tmp_path):
        path = tmp_path / "parley.yaml"
        path.write_text(yaml.safe_dump({"db_path": "x.db", "colour": "blue"}))
        with pytest.raises(ParleyConfigError, match="colour"):
            Settings.load(path)

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "parley.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ParleyConfigError, match="mapping"):
            Settings.load(path)

    def test_save_and_load(self, tmp_path):
        secret = bytes_to_base64url(generate_key())
        original = Settings(db_path="a.db", room_key_secret=secret, auth_token_secret="tok")
        path = tmp_path / "nested" / "parley.yaml"

        original.save(path)
        loaded = Settings.load(path)

        assert loaded == original
        assert base64url_to_bytes(loaded.room_key_secret) == base64url_to_bytes(secret)

    def test_to_dict_redacts_secrets(self):
        settings = Settings(room_key_secret=bytes_to_base64url(generate_key()), auth_token_secret="tok")
        data = settings.to_dict()
        assert data["room_key_secret"] == "***"
        assert data["auth_token_secret"] == "***"
        assert settings.to_dict(redact=False)["auth_token_secret"] == "tok"


class TestEnvironment:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("PARLEY_DB", "/tmp/parley.db")
        monkeypatch.setenv("PARLEY_KDF_ITERATIONS", "5000")
        monkeypatch.setenv("PARLEY_INVITATION_TTL_HOURS", "1.5")
        monkeypatch.setenv("PARLEY_NO_AUTH", "true")
        monkeypatch.setenv("PARLEY_EXPIRE_INVITATIONS_ON_ACCEPT", "0")
        monkeypatch.setenv("PARLEY_AUTH_TOKEN_TTL_MINUTES", "15")

        settings = Settings.from_env()

        assert settings.db_path == "/tmp/parley.db"
        assert settings.kdf_iterations == 5000
        assert settings.invitation_ttl_hours == 1.5
        assert settings.no_auth is True
        assert settings.expire_invitations_on_accept is False
        assert settings.auth_token_ttl_minutes == 15

    def test_env_beats_file(self, tmp_path, monkeypatch):
        path = tmp_path / "parley.yaml"
        path.write_text(yaml.safe_dump({"db_path": "file.db", "page_size": 10}))
        monkeypatch.setenv("PARLEY_CONFIG", str(path))
        monkeypatch.setenv("PARLEY_DB", "env.db")

        settings = Settings.from_env()

        assert settings.db_path == "env.db"
        assert settings.page_size == 10

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("PARLEY_KDF_ITERATIONS", "lots")
        with pytest.raises(ParleyConfigError, match="PARLEY_KDF_ITERATIONS"):
            Settings.from_env()

    def test_explicit_overrides_win(self, monkeypatch):
        monkeypatch.setenv("PARLEY_DB", "env.db")
        assert Settings.from_env(db_path=":memory:").db_path == ":memory:"
