"""Local execution context."""
from __future__ import annotations

import os
import shutil

from .base import IS_WINDOWS, ConnectionTestResult, ExecutionContext, SpawnCommand


class LocalContext(ExecutionContext):
    """Runs processes on this machine, each in its own process group."""

    kind = "local"

    @property
    def target_key(self) -> str:
        return "local"

    def describe(self) -> str:
        return "local"

    def local_cwd(self, cwd: str) -> str | None:
        return os.path.expanduser(cwd) if cwd else None

    def build_argv(self, command: SpawnCommand) -> list[str]:
        return [command.binary, *command.args]

    def build_shell_argv(self, command_line: str, cwd: str, shell: str = "default") -> list[str]:
        if shell == "powershell":
            exe = "powershell.exe" if IS_WINDOWS else "pwsh"
            return [exe, "-NonInteractive", "-Command", command_line]
        if IS_WINDOWS:
            return [os.environ.get("COMSPEC", "cmd.exe"), "/d", "/s", "/c", command_line]
        return [os.environ.get("SHELL") or shutil.which("bash") or "/bin/sh", "-c", command_line]

    def build_run_argv(
        self, binary: str, args: list[str], cwd: str, preamble: list[str] | None = None,
    ) -> list[str]:
        return [binary, *args]

    async def test(self) -> ConnectionTestResult:
        return ConnectionTestResult(ok=True)
