import os

import pytest
from pydantic import ValidationError

from icyrelay.config.settings import DEFAULT_USER_AGENTS, RelaySettings

SERVER_ENV = ("HOST", "PORT", "LOG_LEVEL")


@pytest.fixture
def env(monkeypatch):
    """A clean environment; returns monkeypatch for setting variables."""
    for name in list(os.environ):
        if name.upper().startswith("ICY_") or name.upper() in SERVER_ENV:
            monkeypatch.delenv(name)
    return monkeypatch


class TestFromEnvironment:
    def test_defaults(self, env):
        settings = RelaySettings()
        assert settings.port == 8080
        assert settings.max_retries == 5
        assert settings.base_backoff_ms == 1000
        assert settings.idle_timeout_ms == 15000
        assert settings.user_agents == DEFAULT_USER_AGENTS
        assert settings.resolve_mounts is True
        assert not settings.has_credentials

    def test_values_parsed(self, env):
        env.setenv("PORT", "9000")
        env.setenv("LOG_LEVEL", "DEBUG")
        env.setenv("ICY_MAX_RETRIES", "3")
        env.setenv("ICY_FOLLOW_REDIRECTS", "false")
        env.setenv("ICY_RESOLVE_MOUNTS", "0")
        env.setenv("ICY_USERNAME", "source")
        env.setenv("ICY_PASSWORD", "hackme")

        settings = RelaySettings()

        assert settings.port == 9000
        assert settings.log_level == "DEBUG"
        assert settings.max_retries == 3
        assert settings.follow_redirects is False
        assert settings.resolve_mounts is False
        assert settings.has_credentials

    def test_user_agent_list(self, env):
        env.setenv("ICY_USER_AGENTS", "VLC/3.0 | WinampMPEG/5.66 |")
        assert RelaySettings().user_agents == ("VLC/3.0", "WinampMPEG/5.66")

    def test_empty_values_keep_defaults(self, env):
        env.setenv("ICY_MAX_RETRIES", "")
        assert RelaySettings().max_retries == 5

    def test_keyword_arguments_override_environment(self, env):
        env.setenv("ICY_MAX_RETRIES", "3")
        env.setenv("PORT", "9000")
        settings = RelaySettings(max_retries=1, port=7000)
        assert settings.max_retries == 1
        assert settings.port == 7000

    @pytest.mark.parametrize("name, value", [
        ("ICY_MAX_RETRIES", "many"),
        ("ICY_MAX_RETRIES", "-1"),
        ("ICY_IDLE_TIMEOUT_MS", "0"),
        ("PORT", "70000"),
        ("ICY_TLS_CLIENT_KEY", "/etc/relay/key.pem"),
        ("ICY_USER_AGENTS", " | "),
    ])
    def test_invalid_rejected(self, env, name, value):
        env.setenv(name, value)
        with pytest.raises(ValidationError):
            RelaySettings()


def test_backoff_budget():
    assert RelaySettings(max_retries=5, base_backoff_ms=1000).max_backoff_budget_ms == 31000
    assert RelaySettings(max_retries=0).max_backoff_budget_ms == 0


def test_settings_are_frozen():
    settings = RelaySettings()
    with pytest.raises(ValidationError):
        settings.max_retries = 1
