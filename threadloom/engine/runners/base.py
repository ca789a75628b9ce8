"""Execution context abstraction.

An ExecutionContext turns "run this binary in that directory" into a
child process, whether the directory is local, on an SSH host, or inside
a WSL distribution. Contexts hold only connection parameters and can be
recreated freely.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from threadloom.shared.services.process_cleanup import (
    group_alive,
    list_descendants,
    signal_group,
    signal_pids,
)

from ..errors import ProcessSpawnError
from .shell import PGID_MARKER

logger = logging.getLogger(__name__)

DEFAULT_STREAM_LIMIT = 8 * 1024 * 1024
IS_WINDOWS = sys.platform == "win32"


@dataclass
class SpawnCommand:
    """What to run. remote_binary/preamble apply to SSH and WSL only."""
    binary: str
    args: list[str]
    cwd: str
    preamble: list[str] = field(default_factory=list)
    remote_binary: str | None = None
    env: dict[str, str] | None = None


@dataclass
class RunResult:
    exit_code: int | None
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class ConnectionTestResult:
    ok: bool
    error: str | None = None


@dataclass
class CliHealth:
    installed: bool
    version: str | None = None
    detail: str = ""


class ProcessHandle:
    """A spawned child process plus what is needed to kill its tree."""

    def __init__(self, process: asyncio.subprocess.Process, label: str) -> None:
        self.process = process
        self.label = label
        # Set when a remote wrapper reports its process group.
        self.remote_pgid: int | None = None
        self.remote_pgid_seen = asyncio.Event()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self.process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.process.stderr

    async def wait(self) -> int:
        return await self.process.wait()

    def note_stderr(self, line: str) -> bool:
        """Consume wrapper bookkeeping lines. True if line was one."""
        if not line.startswith(PGID_MARKER):
            return False
        try:
            self.remote_pgid = int(line[len(PGID_MARKER):].strip())
        except ValueError:
            logger.warning("Malformed pgid marker from %s: %r", self.label, line)
            return True
        self.remote_pgid_seen.set()
        return True


async def _capture(
    argv: list[str],
    *,
    cwd: str | None = None,
    timeout: float | None = None,
) -> RunResult:
    """Run argv to completion, capturing output. Never raises for exit codes."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return RunResult(exit_code=None, stdout="", stderr=str(exc))
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return RunResult(
            exit_code=None, stdout="", stderr=f"timed out after {timeout}s",
        )
    return RunResult(
        exit_code=proc.returncode,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
    )


class ExecutionContext(ABC):
    """Uniform capability set over local, SSH and WSL targets."""

    kind: str = ""

    def __init__(self, stream_limit: int = DEFAULT_STREAM_LIMIT) -> None:
        self._stream_limit = stream_limit

    @property
    @abstractmethod
    def target_key(self) -> str:
        """Identity of the connection parameters."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable target, used in logs and errors."""

    @abstractmethod
    def build_argv(self, command: SpawnCommand) -> list[str]:
        """Local argv that runs command on the target."""

    @abstractmethod
    def build_shell_argv(self, command_line: str, cwd: str, shell: str = "default") -> list[str]:
        """Local argv that runs a raw shell command line on the target."""

    @abstractmethod
    def build_run_argv(
        self, binary: str, args: list[str], cwd: str, preamble: list[str] | None = None,
    ) -> list[str]:
        """Local argv for a short one-shot command (no process tracking)."""

    def local_cwd(self, cwd: str) -> str | None:
        """Working directory for the local process (remote targets: None)."""
        return None

    async def spawn(self, command: SpawnCommand) -> ProcessHandle:
        argv = self.build_argv(command)
        return await self._spawn_argv(argv, self.local_cwd(command.cwd), command.env)

    async def spawn_shell(
        self, command_line: str, cwd: str, shell: str = "default",
    ) -> ProcessHandle:
        argv = self.build_shell_argv(command_line, cwd, shell)
        return await self._spawn_argv(argv, self.local_cwd(cwd), None, stdin=False)

    async def run(
        self,
        binary: str,
        args: list[str],
        cwd: str,
        timeout: float | None = 30.0,
        preamble: list[str] | None = None,
    ) -> RunResult:
        return await _capture(
            self.build_run_argv(binary, args, cwd, preamble),
            cwd=self.local_cwd(cwd),
            timeout=timeout,
        )

    async def _spawn_argv(
        self,
        argv: list[str],
        cwd: str | None,
        env: dict[str, str] | None,
        stdin: bool = True,
    ) -> ProcessHandle:
        label = f"{self.describe()}:{argv[0]}"
        logger.info("Spawning on %s: %s", self.describe(), " ".join(argv)[:500])
        full_env = None
        if env:
            full_env = {**os.environ, **env}
        kwargs: dict = {}
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=full_env,
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._stream_limit,
                **kwargs,
            )
        except OSError as exc:
            raise ProcessSpawnError(label, str(exc)) from exc
        logger.info("Spawned pid=%d on %s", process.pid, self.describe())
        return ProcessHandle(process, label)

    async def terminate(self, handle: ProcessHandle, grace: float = 5.0) -> None:
        """Terminate the process and all of its descendants.

        SIGTERM first, SIGKILL after the grace period. Calling this for an
        already-exited process is a no-op.
        """
        await self._terminate_remote(handle, grace)
        await self._terminate_local(handle, grace)

    async def _terminate_remote(self, handle: ProcessHandle, grace: float) -> None:
        """Hook for contexts whose real work runs behind a local proxy."""

    async def _terminate_local(self, handle: ProcessHandle, grace: float) -> None:
        if IS_WINDOWS:
            if handle.returncode is None:
                await _capture(
                    ["taskkill", "/pid", str(handle.pid), "/T", "/F"], timeout=grace,
                )
                await handle.wait()
            return

        pgid = handle.pid
        descendants = list_descendants(handle.pid) if handle.returncode is None else []
        if handle.returncode is None or group_alive(pgid):
            logger.info("Terminating %s pid=%d", handle.label, handle.pid)
            signal_group(pgid, signal.SIGTERM)
            signal_pids(descendants, signal.SIGTERM)
        try:
            await asyncio.wait_for(handle.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(
                "%s pid=%d ignored SIGTERM for %.1fs, sending SIGKILL",
                handle.label, handle.pid, grace,
            )
        # Leader gone does not mean the group is gone.
        if group_alive(pgid):
            signal_group(pgid, signal.SIGKILL)
        signal_pids(
            [pid for pid in descendants if _pid_alive(pid)], signal.SIGKILL,
        )
        await handle.wait()

    @abstractmethod
    async def test(self) -> ConnectionTestResult:
        """Check the target is reachable."""

    async def check_cli(self, binary: str, preamble: list[str] | None = None) -> CliHealth:
        """Report whether binary runs on the target and its version."""
        result = await self.run(
            binary, ["--version"], "~", timeout=20.0, preamble=preamble,
        )
        output = (result.stdout or result.stderr).strip()
        if not result.ok:
            return CliHealth(installed=False, detail=output or "not found")
        return CliHealth(installed=True, version=_extract_version(output), detail=output)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except (ProcessLookupError, PermissionError):
        return False


def _extract_version(output: str) -> str | None:
    match = re.search(r"(\d+\.\d+\.\d+(?:-[\w.]+)?)", output)
    return match.group(1) if match else None
