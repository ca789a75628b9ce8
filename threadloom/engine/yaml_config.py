"""YAML configuration loader.

Loads a single YAML file layered over the LOOM_* environment defaults.
When no YAML is provided, env vars work exactly as before.

Example YAML:
    engine:
      stop_grace_seconds: 3
      command_log_lines: 2000
      git_poll_interval_seconds: 10

    providers:
      claude:
        command: /opt/claude/bin/claude
        default_model: claude-sonnet-4-5
      codex:
        command: codex

    projects:
      webapp:
        git_url: git@github.com:acme/webapp.git
        locations:
          - label: laptop
            path: ~/src/webapp
          - label: buildbox
            path: /srv/webapp
            ssh: {host: build.acme.dev, user: ci, port: 2222}
          - label: ubuntu
            path: ~/webapp
            wsl: {distro: Ubuntu-22.04}
        commands:
          - name: dev
            command: npm run dev
          - name: test
            command: npm test
            cwd: packages/api
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "threadloom.yaml"


@dataclass
class ProviderConfig:
    """Configuration for a single assistant CLI."""
    command: str | None = None  # path to CLI binary
    default_model: str | None = None


@dataclass
class LocationConfig:
    label: str
    path: str
    ssh: dict[str, Any] | None = None
    wsl: dict[str, Any] | None = None


@dataclass
class CommandConfig:
    name: str
    command: str
    cwd: str | None = None
    shell: str = "default"


@dataclass
class ProjectConfig:
    name: str
    git_url: str | None = None
    locations: list[LocationConfig] = field(default_factory=list)
    commands: list[CommandConfig] = field(default_factory=list)


@dataclass
class LoomFileConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    projects: list[ProjectConfig] = field(default_factory=list)


def _require_mapping(value: Any, path: Path, where: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(str(path), f"'{where}' must be a mapping")
    return value


def _parse_location(raw: Any, path: Path, where: str) -> LocationConfig:
    raw = _require_mapping(raw, path, where)
    if not raw.get("path"):
        raise ConfigError(str(path), f"{where}: 'path' is required")
    ssh = raw.get("ssh")
    wsl = raw.get("wsl")
    if ssh is not None and wsl is not None:
        raise ConfigError(str(path), f"{where}: choose either ssh or wsl")
    if ssh is not None:
        ssh = _require_mapping(ssh, path, f"{where}.ssh")
        if not ssh.get("host") or not ssh.get("user"):
            raise ConfigError(str(path), f"{where}.ssh needs host and user")
    if wsl is not None:
        wsl = _require_mapping(wsl, path, f"{where}.wsl")
        if not wsl.get("distro"):
            raise ConfigError(str(path), f"{where}.wsl needs distro")
    return LocationConfig(
        label=str(raw.get("label") or raw["path"]),
        path=str(raw["path"]),
        ssh=ssh,
        wsl=wsl,
    )


def _parse_command(raw: Any, path: Path, where: str) -> CommandConfig:
    raw = _require_mapping(raw, path, where)
    if not raw.get("name") or not raw.get("command"):
        raise ConfigError(str(path), f"{where}: 'name' and 'command' are required")
    return CommandConfig(
        name=str(raw["name"]),
        command=str(raw["command"]),
        cwd=raw.get("cwd"),
        shell=str(raw.get("shell") or "default"),
    )


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> LoomFileConfig:
    """Load and parse a YAML config file.

    The `engine:` section overrides fields of *base* (EngineConfig.from_env()
    when omitted).
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(str(path), f"YAML parse error: {exc}") from exc

    raw = _require_mapping(raw, path, "<root>")
    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    # ── Engine config ──────────────────────────────────────────
    engine_raw = _require_mapping(raw.get("engine"), path, "engine")
    engine = (base or EngineConfig.from_env()).with_overrides(engine_raw)

    # ── Providers ──────────────────────────────────────────────
    providers: dict[str, ProviderConfig] = {}
    for name, pcfg in _require_mapping(raw.get("providers"), path, "providers").items():
        pcfg = _require_mapping(pcfg, path, f"providers.{name}")
        providers[str(name)] = ProviderConfig(
            command=pcfg.get("command"),
            default_model=pcfg.get("default_model"),
        )

    # ── Seed projects ──────────────────────────────────────────
    projects: list[ProjectConfig] = []
    for name, pcfg in _require_mapping(raw.get("projects"), path, "projects").items():
        pcfg = _require_mapping(pcfg, path, f"projects.{name}")
        projects.append(ProjectConfig(
            name=str(name),
            git_url=pcfg.get("git_url"),
            locations=[
                _parse_location(loc, path, f"projects.{name}.locations[{i}]")
                for i, loc in enumerate(pcfg.get("locations") or [])
            ],
            commands=[
                _parse_command(cmd, path, f"projects.{name}.commands[{i}]")
                for i, cmd in enumerate(pcfg.get("commands") or [])
            ],
        ))

    logger.info(
        "load_yaml_config: %d provider override(s), %d seed project(s)",
        len(providers), len(projects),
    )
    return LoomFileConfig(engine=engine, providers=providers, projects=projects)


def find_config_file(cwd: str | Path | None = None) -> Path | None:
    """Locate threadloom.yaml in cwd, then ~/.threadloom/."""
    candidates = [
        Path(cwd or Path.cwd()) / DEFAULT_CONFIG_NAME,
        Path.home() / ".threadloom" / DEFAULT_CONFIG_NAME,
    ]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None
