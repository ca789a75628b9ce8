"""SSH execution context.

Everything runs through `ssh -T user@host "bash -lc '...'"`. Assistant
processes and project commands are wrapped with tracked_job() so the
remote process group can be killed through a second connection; closing
the local ssh client alone would leave the remote side running.
"""
from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod

from ..models import SshConfig
from .base import (
    ConnectionTestResult,
    ExecutionContext,
    ProcessHandle,
    SpawnCommand,
    _capture,
)
from .shell import (
    LOAD_NODE_MANAGERS,
    cd_target,
    join_command,
    shell_escape,
    ssh_base_args,
    tracked_job,
)

logger = logging.getLogger(__name__)


class RemoteShellContext(ExecutionContext):
    """Shared behaviour of contexts that reach a POSIX shell via a proxy."""

    # Extra statements run before anything else on the target.
    base_preamble: list[str] = []

    @abstractmethod
    def wrap(self, script: str, login: bool = True) -> list[str]:
        """Local argv running script in bash on the target."""

    def build_argv(self, command: SpawnCommand) -> list[str]:
        binary = command.remote_binary or command.binary
        script = tracked_job(
            join_command(binary, command.args),
            command.cwd,
            [*self.base_preamble, *command.preamble],
        )
        return self.wrap(script)

    def build_shell_argv(self, command_line: str, cwd: str, shell: str = "default") -> list[str]:
        return self.wrap(tracked_job(command_line, cwd, list(self.base_preamble)))

    def build_run_argv(
        self, binary: str, args: list[str], cwd: str, preamble: list[str] | None = None,
    ) -> list[str]:
        parts = [*self.base_preamble, *(preamble or [])]
        parts.append(f"cd {cd_target(cwd)} && {join_command(binary, args)}")
        return self.wrap("; ".join(parts))

    async def _terminate_remote(self, handle: ProcessHandle, grace: float) -> None:
        if handle.remote_pgid is None and handle.returncode is None:
            # The marker is the first thing the wrapper prints.
            try:
                await asyncio.wait_for(handle.remote_pgid_seen.wait(), timeout=min(grace, 2.0))
            except asyncio.TimeoutError:
                pass
        pgid = handle.remote_pgid
        if pgid is None:
            logger.warning(
                "No remote process group reported by %s; killing local proxy only",
                handle.label,
            )
            return
        result = await _capture(
            self.wrap(f"kill -TERM -- -{pgid} 2>/dev/null; true", login=False),
            timeout=grace + 10,
        )
        if not result.ok:
            logger.warning(
                "Remote SIGTERM for pgid=%d on %s failed: %s",
                pgid, self.describe(), result.stderr.strip(),
            )
        try:
            await asyncio.wait_for(handle.wait(), timeout=grace)
            return
        except asyncio.TimeoutError:
            pass
        logger.warning("Remote pgid=%d on %s survived SIGTERM, sending SIGKILL", pgid, self.describe())
        await _capture(
            self.wrap(f"kill -KILL -- -{pgid} 2>/dev/null; true", login=False),
            timeout=grace + 10,
        )


class SshContext(RemoteShellContext):
    kind = "ssh"
    base_preamble = [LOAD_NODE_MANAGERS]

    def __init__(self, ssh: SshConfig, connect_timeout: int = 10, **kwargs) -> None:
        super().__init__(**kwargs)
        self.ssh = ssh
        self.connect_timeout = connect_timeout

    @property
    def target_key(self) -> str:
        return (
            f"ssh:{self.ssh.user}@{self.ssh.host}:"
            f"{self.ssh.port or 22}:{self.ssh.key_path or ''}"
        )

    def describe(self) -> str:
        port = f":{self.ssh.port}" if self.ssh.port else ""
        return f"ssh:{self.ssh.destination}{port}"

    def base_args(self, batch: bool = False) -> list[str]:
        args = ssh_base_args(self.ssh.port, self.ssh.key_path, self.connect_timeout)
        if batch:
            args += ["-o", "BatchMode=yes"]
        return args

    def wrap(self, script: str, login: bool = True) -> list[str]:
        shell = "bash -lc" if login else "bash -c"
        return ["ssh", *self.base_args(batch=True), self.ssh.destination, f"{shell} {shell_escape(script)}"]

    async def test(self) -> ConnectionTestResult:
        argv = ["ssh", *self.base_args(batch=True), self.ssh.destination, "echo ok"]
        result = await _capture(argv, timeout=self.connect_timeout + 10)
        if result.ok and "ok" in result.stdout:
            return ConnectionTestResult(ok=True)
        error = result.stderr.strip() or f"ssh exited with code {result.exit_code}"
        logger.info("SSH test failed for %s: %s", self.describe(), error)
        return ConnectionTestResult(ok=False, error=error)
