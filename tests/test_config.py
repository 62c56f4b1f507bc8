"""Tests for configuration loading — defaults, camelCase files, env overrides."""

import json
from pathlib import Path

import pytest

from errand.config import Config, load_config, save_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("ERRAND_ANTHROPIC_API_KEY", "ERRAND_OPENROUTER_API_KEY", "ERRAND_MODEL", "ERRAND_BRAVE_API_KEY"):
        monkeypatch.delenv(var, raising=False)


def test_defaults():
    config = Config()
    assert config.agents.defaults.max_tool_iterations == 5
    assert config.agents.defaults.memory_window == 50
    assert config.bus.capacity == 100
    assert config.tools.max_parallel == 1
    assert config.gateway.max_attempts == 3
    assert config.heartbeat.interval_s == 1800
    assert config.tools.web.search.max_results == 5
    assert config.get_api_key() is None


def test_missing_file_gives_defaults(tmp_path: Path):
    config = load_config(tmp_path / "absent.json")
    assert config == Config()


def test_camel_case_file(tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "agents": {"defaults": {"maxToolIterations": 8, "memoryWindow": 20, "model": "openai/gpt-4o"}},
        "tools": {"maxParallel": 3, "web": {"search": {"apiKey": "brave"}}},
        "bus": {"capacity": 10},
        "providers": {"openai": {"apiKey": "sk-openai"}},
    }), encoding="utf-8")

    config = load_config(path)

    assert config.agents.defaults.max_tool_iterations == 8
    assert config.agents.defaults.memory_window == 20
    assert config.tools.max_parallel == 3
    assert config.tools.web.search.api_key == "brave"
    assert config.bus.capacity == 10
    assert config.get_provider_name() == "openai"
    assert config.get_api_key() == "sk-openai"
    assert config.get_api_base() is None


def test_snake_case_is_accepted_too():
    config = Config.model_validate({"agents": {"defaults": {"max_tool_iterations": 2}}})
    assert config.agents.defaults.max_tool_iterations == 2


def test_invalid_json_falls_back_to_defaults(tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text("{oops", encoding="utf-8")
    assert load_config(path) == Config()


def test_invalid_values_fall_back_to_defaults(tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"agents": {"defaults": {"maxToolIterations": 0}}}), encoding="utf-8")
    assert load_config(path).agents.defaults.max_tool_iterations == 5


def test_env_overrides_file(tmp_path: Path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "agents": {"defaults": {"model": "openai/gpt-4o"}},
        "providers": {"anthropic": {"apiKey": "from-file"}},
    }), encoding="utf-8")
    monkeypatch.setenv("ERRAND_MODEL", "anthropic/claude-sonnet-4-5")
    monkeypatch.setenv("ERRAND_ANTHROPIC_API_KEY", "from-env")

    config = load_config(path)

    assert config.agents.defaults.model == "anthropic/claude-sonnet-4-5"
    assert config.providers.anthropic.api_key == "from-env"


def test_provider_priority_and_openrouter_base():
    config = Config.model_validate({
        "providers": {
            "anthropic": {"apiKey": "sk-ant"},
            "openrouter": {"apiKey": "sk-or"},
        }
    })
    assert config.get_provider_name() == "openrouter"
    assert config.get_api_key() == "sk-or"
    assert config.get_api_base() == "https://openrouter.ai/api/v1"


def test_vllm_needs_only_a_base():
    config = Config.model_validate({"providers": {"vllm": {"apiBase": "http://localhost:8000/v1"}}})
    assert config.get_provider_name() == "vllm"
    assert config.get_api_key() is None
    assert config.get_api_base() == "http://localhost:8000/v1"


def test_save_writes_camel_case(tmp_path: Path):
    path = tmp_path / "out" / "config.json"
    config = Config.model_validate({"tools": {"max_parallel": 4}})
    save_config(config, path)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["tools"]["maxParallel"] == 4
    assert load_config(path) == config
