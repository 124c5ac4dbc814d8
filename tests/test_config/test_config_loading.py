from pathlib import Path

import pytest

import olly.config as config_module
from olly.config import Config
from olly.exceptions import ConfigurationError


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  model: qwen2.5-coder:14b\n"
            "agent:\n"
            "  max_iterations: 8\n"
            "safety:\n"
            "  tool_overrides:\n"
            "    run_command: always_allow\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "qwen2.5-coder:14b"
    assert cfg.agent.max_iterations == 8
    assert cfg.safety.tool_overrides == {"run_command": "always_allow"}


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("context:\n  max_tokens: 8192\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.context.max_tokens == 8192
    assert cfg.model.provider == "ollama"


def test_missing_file_gives_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.agent.max_iterations == 20
    assert cfg.agent.default_mode == "build"
    assert cfg.safety.enable_audit_log is True


def test_env_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("OLLY_AGENT__MAX_ITERATIONS", "7")
    monkeypatch.setenv("OLLY_MODEL__BASE_URL", "http://gpu-box:11434")

    cfg = Config.load()

    assert cfg.agent.max_iterations == 7
    assert cfg.model.base_url == "http://gpu-box:11434"


def test_save_and_reload_round_trip(tmp_path: Path):
    path = tmp_path / "nested" / "config.yaml"
    cfg = Config()
    cfg.model.model = "mistral"
    cfg.safety.denied_paths = [".env"]

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.model.model == "mistral"
    assert loaded.safety.denied_paths == [".env"]


def test_project_root_and_audit_path_resolution(tmp_path: Path):
    cfg = Config()
    cfg.safety.project_root = "work"
    root = cfg.resolved_project_root(tmp_path)

    assert root == (tmp_path / "work").resolve()
    assert cfg.safety.resolve_audit_log_path(root) == root / ".olly" / "audit.jsonl"

    cfg.safety.audit_log_path = str(tmp_path / "audit.jsonl")
    assert cfg.safety.resolve_audit_log_path(root) == tmp_path / "audit.jsonl"


def test_invalid_config_raises_configuration_error(tmp_path: Path):
    broken = tmp_path / "broken.yaml"
    broken.write_text("agent: [unclosed\n", encoding="utf-8")
    invalid = tmp_path / "invalid.yaml"
    invalid.write_text("agent:\n  default_mode: yolo\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Cannot read config"):
        Config.load(broken)
    with pytest.raises(ConfigurationError, match="Invalid config"):
        Config.load(invalid)
