"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via LOOM_* env vars, or
via the `engine:` section of threadloom.yaml (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Thread engine configuration."""

    # Thread defaults
    default_provider: str = "claude"
    default_model: str | None = None

    # Process lifecycle.
    # Time between SIGTERM and SIGKILL when stopping a process tree.
    stop_grace_seconds: float = 5.0
    # Lines of stderr kept for crash reports.
    stderr_tail_lines: int = 20

    # Output stream framing
    max_frame_bytes: int = 8 * 1024 * 1024
    # Consecutive undecodable frames tolerated before the stream is
    # considered desynchronized.
    malformed_frame_limit: int = 50

    # Subscriber queue depth at which a slow-consumer warning is logged.
    # Queues are unbounded; this never drops events.
    subscriber_warn_depth: int = 5000

    # Project commands
    command_log_lines: int = 1000

    # Git status polling
    git_poll_interval_seconds: float = 5.0

    # Remote targets
    ssh_connect_timeout: int = 10
    connection_test_timeout_seconds: float = 20.0

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from LOOM_* environment variables."""
        loom_vars = {
            k: v for k, v in os.environ.items() if k.startswith("LOOM_")
        }
        if loom_vars:
            logger.info(
                "EngineConfig.from_env: LOOM_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(loom_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no LOOM_* env vars set, using defaults")

        config = cls(
            default_provider=os.getenv(
                "LOOM_DEFAULT_PROVIDER", cls.default_provider
            ),
            default_model=os.getenv("LOOM_DEFAULT_MODEL") or None,
            stop_grace_seconds=float(os.getenv(
                "LOOM_STOP_GRACE", str(cls.stop_grace_seconds)
            )),
            stderr_tail_lines=int(os.getenv(
                "LOOM_STDERR_TAIL_LINES", str(cls.stderr_tail_lines)
            )),
            max_frame_bytes=int(os.getenv(
                "LOOM_MAX_FRAME_BYTES", str(cls.max_frame_bytes)
            )),
            malformed_frame_limit=int(os.getenv(
                "LOOM_MALFORMED_FRAME_LIMIT", str(cls.malformed_frame_limit)
            )),
            command_log_lines=int(os.getenv(
                "LOOM_COMMAND_LOG_LINES", str(cls.command_log_lines)
            )),
            git_poll_interval_seconds=float(os.getenv(
                "LOOM_GIT_POLL_INTERVAL", str(cls.git_poll_interval_seconds)
            )),
            ssh_connect_timeout=int(os.getenv(
                "LOOM_SSH_CONNECT_TIMEOUT", str(cls.ssh_connect_timeout)
            )),
            log_level=os.getenv("LOOM_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: provider=%s grace=%.1fs log_lines=%d log_level=%s",
            config.default_provider, config.stop_grace_seconds,
            config.command_log_lines, config.log_level,
        )
        return config

    def with_overrides(self, overrides: dict) -> EngineConfig:
        """Return a copy with known fields replaced; unknown keys are logged."""
        known = {f.name: f for f in fields(self)}
        values = {name: getattr(self, name) for name in known}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Ignoring unknown engine setting: %s", key)
                continue
            current = values[key]
            if isinstance(current, bool) or value is None:
                values[key] = value
            elif isinstance(current, (int, float)):
                values[key] = type(current)(value)
            else:
                values[key] = value
        return EngineConfig(**values)
