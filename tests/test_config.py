"""
Unit tests for environment-driven settings.
"""

import os
from datetime import timedelta

import pytest
from pydantic import ValidationError

from crudguard.config import Settings


@pytest.fixture
def env(monkeypatch):
    """Clear CRUDGUARD_* variables and return a setter."""
    for name in list(os.environ):
        if name.upper().startswith("CRUDGUARD_"):
            monkeypatch.delenv(name)

    def set_env(**values):
        for name, value in values.items():
            monkeypatch.setenv(f"CRUDGUARD_{name}", value)

    return set_env


class TestEnvironment:
    """Test CRUDGUARD_* parsing."""

    def test_defaults(self, env):
        env(SECRET_KEY="s3cret")

        settings = Settings()

        assert settings.secret_key.get_secret_value() == "s3cret"
        assert settings.token_lifetime == timedelta(hours=24)
        assert settings.refresh_window == timedelta(hours=1)
        assert (settings.general_limit, settings.auth_limit, settings.strict_limit) == (100, 5, 10)
        assert settings.rate_window == timedelta(minutes=1)
        assert settings.sweep_interval is None
        assert settings.default_role == "user"

    def test_overrides(self, env):
        env(
            SECRET_KEY="s3cret",
            PORT="9000",
            LOG_LEVEL="debug",
            LOG_JSON="false",
            TOKEN_LIFETIME_HOURS="2",
            REFRESH_WINDOW_MINUTES="15",
            RATE_WINDOW_SECONDS="30",
            GUARD_TIMEOUT_SECONDS="1.5",
            AUTH_LIMIT="3",
        )

        settings = Settings()

        assert settings.port == 9000
        assert settings.log_level == "DEBUG"
        assert settings.log_json is False
        assert settings.token_lifetime == timedelta(hours=2)
        assert settings.refresh_window == timedelta(minutes=15)
        assert settings.rate_window == timedelta(seconds=30)
        assert settings.guard_timeout == 1.5
        assert settings.auth_limit == 3

    @pytest.mark.parametrize("raw, expected", [
        ("0", False),
        ("off", False),
        ("no", False),
        ("1", True),
        ("on", True),
        ("TRUE", True),
    ])
    def test_boolean_spellings(self, env, raw, expected):
        env(SECRET_KEY="s3cret", LOG_JSON=raw)

        assert Settings().log_json is expected

    def test_empty_values_ignored(self, env):
        env(SECRET_KEY="s3cret", PORT="")

        assert Settings().port == 8080

    def test_secret_file(self, env, tmp_path):
        secret_file = tmp_path / "secret"
        secret_file.write_text("from-file\n")
        env(SECRET_FILE=str(secret_file))

        settings = Settings()

        assert settings.secret_key.get_secret_value() == "from-file"
        assert settings.secret_file == secret_file

    def test_missing_secret_file_generates(self, env, tmp_path):
        env(SECRET_FILE=str(tmp_path / "absent"))

        assert len(Settings().secret_key.get_secret_value()) >= 64

    def test_generated_secret(self, env):
        first = Settings()
        second = Settings()

        assert len(first.secret_key.get_secret_value()) >= 64
        assert first.secret_key != second.secret_key

    def test_secret_not_in_repr(self, env):
        env(SECRET_KEY="s3cret")

        assert "s3cret" not in repr(Settings())

    def test_keyword_overrides_win(self, env):
        env(SECRET_KEY="s3cret", PORT="9000")

        settings = Settings(port=9100, token_lifetime=timedelta(minutes=5))

        assert settings.port == 9100
        assert settings.token_lifetime == timedelta(minutes=5)

    def test_frozen(self, env):
        settings = Settings(secret_key="s3cret")

        with pytest.raises(ValidationError):
            settings.port = 1

    @pytest.mark.parametrize("values", [
        {"LOG_LEVEL": "loud"},
        {"AUTH_LIMIT": "0"},
        {"BCRYPT_ROUNDS": "2"},
        {"RATE_WINDOW_SECONDS": "0"},
        {"TOKEN_LIFETIME_HOURS": "soon"},
        {"LOG_JSON": "maybe"},
    ])
    def test_invalid(self, env, values):
        env(SECRET_KEY="s3cret", **values)

        with pytest.raises(ValidationError):
            Settings()
