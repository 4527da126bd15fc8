"""Tests for config/config_loader.py."""

from pathlib import Path

import pytest
import yaml

from config.config_loader import AgentConfig, AppConfig, GateConfig, ProviderConfig, load_config


def _settings() -> dict:
    return {
        "defaults": {
            "user_id": "tester",
            "default_panel": ["scout", "critic"],
            "preview_chars": 500,
            "usage_log_path": "./usage/events.jsonl",
        },
        "providers": {
            "router": {
                "sdk": "openai",
                "api_key_env": "TEST_ROUTER_KEY",
                "base_url": "https://router.example/v1",
                "timeout_sec": 30,
                "max_tokens": 1024,
            },
            "claude": {
                "sdk": "anthropic",
                "api_key_env": "TEST_CLAUDE_KEY",
                "timeout_sec": 60,
                "max_tokens": 2048,
            },
        },
        "agents": {
            "scout": {"name": "Scout", "provider": "router", "model": "openai/gpt-4o-mini"},
            "critic": {"name": "Critic", "provider": "claude"},
        },
        "gate": {
            "strict": False,
            "redis_url_env": "TEST_REDIS_URL",
            "rate_limit": {"limit": 4, "window_sec": 30},
            "concurrency": {"max_concurrent": 1, "ttl_sec": 120},
            "circuit": {"cooldown_sec": 25},
        },
        "quality": {"min_overlap_chars": 60},
    }


@pytest.fixture
def write_settings(tmp_path: Path):
    def _write(settings: dict) -> Path:
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.dump(settings), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def minimal_settings(write_settings) -> Path:
    return write_settings(_settings())


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("TEST_ROUTER_KEY", "TEST_CLAUDE_KEY", "TEST_REDIS_URL", "REDIS_URL", "CONFERENCE_GATE_STRICT"):
        monkeypatch.delenv(name, raising=False)


def test_load_config_returns_app_config(minimal_settings):
    assert isinstance(load_config(minimal_settings), AppConfig)


def test_load_config_defaults(minimal_settings):
    config = load_config(minimal_settings)
    assert config.defaults.user_id == "tester"
    assert config.defaults.default_panel == ["scout", "critic"]
    assert config.defaults.preview_chars == 500
    assert config.defaults.citation_window == 6
    assert isinstance(config.defaults.usage_log_path, Path)


def test_load_config_providers(minimal_settings):
    config = load_config(minimal_settings)
    router = config.providers["router"]
    assert isinstance(router, ProviderConfig)
    assert router.sdk == "openai"
    assert router.base_url == "https://router.example/v1"
    assert config.providers["claude"].base_url is None


def test_load_config_agents(minimal_settings):
    config = load_config(minimal_settings)
    assert config.agents["scout"] == AgentConfig("scout", "Scout", "router", "openai/gpt-4o-mini")
    assert config.agents["critic"].model is None


def test_load_config_gate_section(minimal_settings):
    gate = load_config(minimal_settings).gate
    assert gate.rate_limit == 4
    assert gate.rate_window_sec == 30
    assert gate.max_concurrent == 1
    assert gate.concurrency_ttl_sec == 120
    assert gate.circuit_cooldown_sec == 25
    assert gate.idempotency_ttl_sec == 120
    assert gate.unavailable_cooldown_sec == 15
    assert gate.redis_url is None
    assert gate.strict is False


def test_load_config_quality_section(minimal_settings):
    quality = load_config(minimal_settings).quality
    assert quality.min_overlap_chars == 60
    assert quality.prefix_window_chars == 180


def test_redis_url_from_env(minimal_settings, monkeypatch):
    monkeypatch.setenv("TEST_REDIS_URL", "redis://cache:6379/0")
    assert load_config(minimal_settings).gate.redis_url == "redis://cache:6379/0"


@pytest.mark.parametrize("value, expected", [("true", True), ("1", True), ("false", False), ("off", False)])
def test_strict_env_overrides_settings(minimal_settings, monkeypatch, value, expected):
    monkeypatch.setenv("CONFERENCE_GATE_STRICT", value)
    assert load_config(minimal_settings).gate.strict is expected


def test_available_providers_follow_keys(minimal_settings, monkeypatch):
    monkeypatch.setenv("TEST_CLAUDE_KEY", "sk-test-key")
    config = load_config(minimal_settings)
    assert config.available_providers == {"claude"}


def test_unknown_agent_provider_rejected(write_settings):
    settings = _settings()
    settings["agents"]["ghost"] = {"provider": "nowhere", "model": "x"}
    with pytest.raises(ValueError, match="unknown provider"):
        load_config(write_settings(settings))


def test_optional_sections_default(write_settings):
    settings = _settings()
    del settings["gate"]
    del settings["quality"]
    config = load_config(write_settings(settings))
    assert config.gate == GateConfig()
    assert config.quality.min_overlap_chars == 90


def test_load_config_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config(Path("/nonexistent/settings.yaml"))


def test_shipped_settings_load():
    config = load_config()
    for agent_id in config.defaults.default_panel:
        assert agent_id in config.agents
