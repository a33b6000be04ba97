"""
Tests for config loading and entitlement lookup.
"""

import pytest

from chatrelay import config as cfg_mod
from chatrelay.config import load_config, max_messages_per_day


@pytest.fixture
def fresh_config():
    orig = cfg_mod._config
    cfg_mod.reset_config()
    yield
    cfg_mod._config = orig


def test_env_vars_resolved(tmp_path, monkeypatch, fresh_config):
    monkeypatch.setenv("TEST_REDIS_URL", "redis://cache:6379/0")
    path = tmp_path / "config.yaml"
    path.write_text(
        "streams:\n"
        "  redis_url: ${TEST_REDIS_URL}\n"
        "backend:\n"
        "  api_key: ${TEST_UNSET_KEY}\n"
        "reasoning_variants:\n"
        "  - chat-model-reasoning\n"
    )
    cfg = load_config(path)
    assert cfg["streams"]["redis_url"] == "redis://cache:6379/0"
    assert cfg["backend"]["api_key"] == ""
    assert cfg["reasoning_variants"] == ["chat-model-reasoning"]


def test_config_is_cached(tmp_path, fresh_config):
    path = tmp_path / "config.yaml"
    path.write_text("server:\n  port: 9000\n")
    first = load_config(path)
    path.write_text("server:\n  port: 9999\n")
    assert cfg_mod.get_config() is first


def test_missing_file_raises(tmp_path, fresh_config):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_max_messages_per_day():
    cfg = {"entitlements": {"guest": {"max_messages_per_day": 20},
                            "regular": {"max_messages_per_day": 100}}}
    assert max_messages_per_day(cfg, "guest") == 20
    assert max_messages_per_day(cfg, "regular") == 100
    assert max_messages_per_day(cfg, "premium") == 100
    assert max_messages_per_day({}, "guest") == 100
