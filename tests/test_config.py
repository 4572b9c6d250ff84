"""Проверка YAML-конфига и настройки по умолчанию."""
from pathlib import Path

import pytest

from app.core.config import Settings
from app.core.validate_cfg import validate_cfg

EXAMPLE = Path(__file__).resolve().parent.parent / "config.example.yaml"


def test_example_config_is_valid(monkeypatch):
    monkeypatch.setenv("CONFIG_FILE", str(EXAMPLE))
    s = Settings()
    s.load_yaml_config()
    assert s.db_url == "sqlite:///./data/automation.db"
    assert s.automation["page_size_max"] == 100
    assert s.webhook_schemes == ["https", "http"]
    assert s.automation_enabled is True


def test_missing_file_gives_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("CONFIG_FILE", str(tmp_path / "absent.yaml"))
    s = Settings()
    s.load_yaml_config()
    assert s.cfg == {}
    assert s.automation["action_timeout_s"] == 30.0
    assert s.rules_file is None


def test_enabled_from_string():
    s = Settings()
    s.set_cfg({"automation": {"enabled": "false"}})
    assert s.automation_enabled is False


def test_api_key_from_environment(monkeypatch):
    monkeypatch.setenv("EKDSEND_API_KEY", "from-env")
    s = Settings()
    s.set_cfg({"senders": {"ekdsend": {"api_key": "from-yaml", "from_name": "Church"}}})
    assert s.ekdsend["api_key"] == "from-env"
    assert s.ekdsend["from_name"] == "Church"


@pytest.mark.parametrize("cfg,message", [
    ([], "root YAML must be an object"),
    ({"db": {"url": ""}}, "db.url"),
    ({"automation": {"page_size_max": 0}}, "automation.page_size_max"),
    ({"automation": {"page_size_default": True}}, "automation.page_size_default"),
    ({"automation": {"page_size_default": 50, "page_size_max": 10}}, "page_size_default"),
    ({"automation": {"action_timeout_s": 0}}, "automation.action_timeout_s"),
    ({"automation": {"enabled": "maybe"}}, "automation.enabled"),
    ({"automation": "yes"}, "automation: must be an object"),
    ({"senders": {"ekdsend": {"api_url": "ftp://x"}}}, "senders.ekdsend.api_url"),
    ({"senders": {"webhook": {"allowed_schemes": ["gopher"]}}}, "senders.webhook.allowed_schemes"),
])
def test_invalid_config(cfg, message):
    with pytest.raises(ValueError) as exc_info:
        validate_cfg(cfg)
    assert message in str(exc_info.value)


def test_set_cfg_validates():
    s = Settings()
    with pytest.raises(ValueError):
        s.set_cfg({"automation": {"log_limit_max": -1}})
