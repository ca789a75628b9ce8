from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from threadloom.engine.config import EngineConfig
from threadloom.engine.errors import ConfigError
from threadloom.engine.yaml_config import find_config_file, load_yaml_config


def test_defaults_without_env() -> None:
    with patch.dict(os.environ, {}, clear=True):
        config = EngineConfig.from_env()
    assert config.default_provider == "claude"
    assert config.stop_grace_seconds == 5.0
    assert config.command_log_lines == 1000
    assert config.default_model is None


def test_env_overrides() -> None:
    env = {
        "LOOM_DEFAULT_PROVIDER": "codex",
        "LOOM_STOP_GRACE": "2.5",
        "LOOM_COMMAND_LOG_LINES": "200",
        "LOOM_GIT_POLL_INTERVAL": "10",
        "LOOM_DEFAULT_MODEL": "",
    }
    with patch.dict(os.environ, env, clear=True):
        config = EngineConfig.from_env()
    assert config.default_provider == "codex"
    assert config.stop_grace_seconds == 2.5
    assert config.command_log_lines == 200
    assert config.git_poll_interval_seconds == 10.0
    assert config.default_model is None


def test_with_overrides_coerces_and_ignores_unknown() -> None:
    config = EngineConfig().with_overrides({
        "stop_grace_seconds": "3",
        "command_log_lines": 50.0,
        "default_model": "opus",
        "no_such_setting": True,
    })
    assert config.stop_grace_seconds == 3.0
    assert config.command_log_lines == 50
    assert isinstance(config.command_log_lines, int)
    assert config.default_model == "opus"


def test_load_yaml_config(tmp_path: Path) -> None:
    path = tmp_path / "threadloom.yaml"
    path.write_text(
        "engine:\n"
        "  stop_grace_seconds: 1\n"
        "providers:\n"
        "  claude:\n"
        "    command: /opt/claude\n"
        "    default_model: sonnet\n"
        "projects:\n"
        "  api:\n"
        "    git_url: git@example.com:acme/api.git\n"
        "    locations:\n"
        "      - path: ~/src/api\n"
        "      - label: ubuntu\n"
        "        path: ~/api\n"
        "        wsl: {distro: Ubuntu}\n"
        "    commands:\n"
        "      - name: test\n"
        "        command: pytest\n"
        "        cwd: tests\n",
        encoding="utf-8",
    )

    loaded = load_yaml_config(path, base=EngineConfig())

    assert loaded.engine.stop_grace_seconds == 1.0
    assert loaded.providers["claude"].command == "/opt/claude"
    assert loaded.providers["claude"].default_model == "sonnet"
    [project] = loaded.projects
    assert project.name == "api"
    assert project.git_url == "git@example.com:acme/api.git"
    assert [loc.label for loc in project.locations] == ["~/src/api", "ubuntu"]
    assert project.locations[1].wsl == {"distro": "Ubuntu"}
    assert project.commands[0].cwd == "tests"
    assert project.commands[0].shell == "default"


@pytest.mark.parametrize(
    "body",
    [
        "projects:\n  api:\n    locations:\n      - label: nowhere\n",
        "projects:\n  api:\n    locations:\n      - path: /x\n        ssh: {host: h, user: u}\n        wsl: {distro: U}\n",
        "projects:\n  api:\n    locations:\n      - path: /x\n        ssh: {host: h}\n",
        "projects:\n  api:\n    commands:\n      - name: dev\n",
        "engine: [1, 2]\n",
        "projects: {api: [unclosed\n",
    ],
)
def test_invalid_yaml_config(tmp_path: Path, body: str) -> None:
    path = tmp_path / "threadloom.yaml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_yaml_config(path, base=EngineConfig())


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "absent.yaml", base=EngineConfig())


def test_find_config_file(tmp_path: Path) -> None:
    home = tmp_path / "home"
    (home / ".threadloom").mkdir(parents=True)
    with patch("pathlib.Path.home", return_value=home):
        assert find_config_file(tmp_path) is None

        user_config = home / ".threadloom" / "threadloom.yaml"
        user_config.write_text("{}\n", encoding="utf-8")
        assert find_config_file(tmp_path) == user_config

        local_config = tmp_path / "threadloom.yaml"
        local_config.write_text("{}\n", encoding="utf-8")
        assert find_config_file(tmp_path) == local_config
