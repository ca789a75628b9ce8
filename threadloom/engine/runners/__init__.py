"""Execution contexts: local, SSH and WSL targets behind one interface."""
from .base import (
    CliHealth,
    ConnectionTestResult,
    ExecutionContext,
    ProcessHandle,
    RunResult,
    SpawnCommand,
)
from .local import LocalContext
from .resolver import ContextResolver
from .shell import cd_target, shell_escape
from .ssh import SshContext
from .wsl import WslContext, list_distros

__all__ = [
    "CliHealth",
    "ConnectionTestResult",
    "ContextResolver",
    "ExecutionContext",
    "LocalContext",
    "ProcessHandle",
    "RunResult",
    "SpawnCommand",
    "SshContext",
    "WslContext",
    "cd_target",
    "list_distros",
    "shell_escape",
]
