from pathlib import Path

import pytest
from pydantic import ValidationError

import coding_agent.config as config_module
from coding_agent.config import Config


def test_defaults():
    cfg = Config()

    assert cfg.model.provider == "openai"
    assert cfg.model.model == "gpt-4.1"
    assert cfg.model.base_url == "https://api.openai.com/v1"
    assert cfg.session.storage == "sqlite"
    assert cfg.session.path == "./sessions.db"
    assert cfg.orchestrator.max_tool_rounds == 16
    assert cfg.orchestrator.parallel_tool_calls is False
    assert cfg.logging.level == "WARNING"


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  model: from-home\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  model: gpt-4.1-mini\n"
            "session:\n"
            "  storage: memory\n"
            "orchestrator:\n"
            "  max_tool_rounds: 4\n"
            "  parallel_tool_calls: true\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "gpt-4.1-mini"
    assert cfg.session.storage == "memory"
    assert cfg.orchestrator.max_tool_rounds == 4
    assert cfg.orchestrator.parallel_tool_calls is True


def test_load_falls_back_to_home_config(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    home_cfg = tmp_path / "home" / "config.yaml"
    home_cfg.parent.mkdir()
    home_cfg.write_text("logging:\n  level: DEBUG\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    assert Config.load().logging.level == "DEBUG"


def test_env_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("CODING_AGENT_MODEL__MODEL", "gpt-env")
    monkeypatch.setenv("CODING_AGENT_ORCHESTRATOR__MAX_TOOL_ROUNDS", "3")

    cfg = Config.load()

    assert cfg.model.model == "gpt-env"
    assert cfg.orchestrator.max_tool_rounds == 3


def test_max_tool_rounds_must_be_positive():
    with pytest.raises(ValidationError):
        Config(orchestrator={"max_tool_rounds": 0})


def test_api_key_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    cfg = Config()
    assert cfg.model.resolved_api_key() == "sk-env"

    cfg.model.api_key = "sk-config"
    assert cfg.model.resolved_api_key() == "sk-config"


def test_save_round_trips_through_yaml(tmp_path: Path):
    cfg = Config()
    cfg.model.model = "saved-model"
    path = tmp_path / "out" / "config.yaml"

    cfg.save(path)

    assert Config.from_yaml(path).model.model == "saved-model"


def test_resolved_tools_base_path(tmp_path: Path):
    cfg = Config()
    cfg.tools.base_path = "workspace"
    assert cfg.resolved_tools_base_path(tmp_path) == (tmp_path / "workspace").resolve()

    cfg.tools.base_path = str(tmp_path / "abs")
    assert cfg.resolved_tools_base_path() == (tmp_path / "abs").resolve()
