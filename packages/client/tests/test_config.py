"""Tests for configuration loading."""

import pytest
import yaml

from vh_client.config import ClientConfig, ClientSettings, load_config


def test_load_config_from_yaml(tmp_path):
    config_data = {
        "backend": {"url": "https://hub.example.com", "anon_key_env": "HUB_KEY"},
        "auth": {"readiness_timeout_seconds": 3},
        "routes": {"login": "/signin"},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(config_data))

    cfg = load_config(path)
    assert cfg.backend.url == "https://hub.example.com"
    assert cfg.auth.readiness_timeout_seconds == 3.0
    assert cfg.auth.readiness_poll_interval_seconds == 0.25
    assert cfg.routes.login == "/signin"
    assert cfg.routes.organization == "/organization/dashboard"


def test_load_config_defaults():
    cfg = ClientConfig()
    assert cfg.backend.url == "http://localhost:54321"
    assert cfg.state.db_path == "./data/session.db"
    assert cfg.auth.readiness_timeout_seconds == 1.5
    assert cfg.realtime.reconnect_max_seconds == 60.0


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config(path) == ClientConfig()


def test_load_config_file_not_found():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/path.yaml")


def test_anon_key_read_from_environment(monkeypatch):
    cfg = ClientConfig.model_validate({"backend": {"anon_key_env": "HUB_TEST_KEY"}})
    monkeypatch.delenv("HUB_TEST_KEY", raising=False)
    assert cfg.backend.anon_key is None
    monkeypatch.setenv("HUB_TEST_KEY", "anon-123")
    assert cfg.backend.anon_key == "anon-123"


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("VH_CONFIG_PATH", "/etc/hub.yaml")
    monkeypatch.setenv("VH_EMAIL", "org@example.com")
    settings = ClientSettings()
    assert settings.config_path == "/etc/hub.yaml"
    assert settings.email == "org@example.com"
    assert settings.password == ""
