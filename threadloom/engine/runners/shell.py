"""POSIX shell fragments shared by the SSH and WSL contexts."""
from __future__ import annotations

import sys

# Printed on stderr by remote wrappers so the engine can later signal the
# whole remote process group.
PGID_MARKER = "__THREADLOOM_PGID__="

# Non-interactive login shells usually skip .bashrc, where nvm/volta/fnm
# are set up, so node-based CLIs are not on PATH without this.
LOAD_NODE_MANAGERS = "; ".join([
    '[ -s "$HOME/.nvm/nvm.sh" ] && { source "$HOME/.nvm/nvm.sh"; nvm use default --silent 2>/dev/null; }',
    '[ -d "$HOME/.volta/bin" ] && export PATH="$HOME/.volta/bin:$PATH"',
    '[ -d "$HOME/.bun/bin" ] && export PATH="$HOME/.bun/bin:$PATH"',
    '[ -d "$HOME/.npm-global/bin" ] && export PATH="$HOME/.npm-global/bin:$PATH"',
    'command -v fnm &>/dev/null && eval "$(fnm env 2>/dev/null)"',
])

# WSL inherits the Windows HOME; take the Linux one from passwd.
FIX_HOME = 'export HOME="$(getent passwd $(id -un) | cut -d: -f6)"'

# Skip Windows interop shims under /mnt/c and fall back to common
# Linux install locations.
_RESOLVE_CODEX_LINES = [
    'CODEX_BIN=""',
    'command -v codex >/dev/null 2>&1 && CODEX_BIN="$(command -v codex)"',
    'case "$CODEX_BIN" in /mnt/c/*) CODEX_BIN="";; esac',
    '[ -z "$CODEX_BIN" ] && [ -x "$HOME/.local/bin/codex" ] && CODEX_BIN="$HOME/.local/bin/codex"',
    '[ -z "$CODEX_BIN" ] && [ -x "$HOME/.npm-global/bin/codex" ] && CODEX_BIN="$HOME/.npm-global/bin/codex"',
    '[ -z "$CODEX_BIN" ] && [ -x "$HOME/.volta/bin/codex" ] && CODEX_BIN="$HOME/.volta/bin/codex"',
    '[ -z "$CODEX_BIN" ] && [ -x "$HOME/.bun/bin/codex" ] && CODEX_BIN="$HOME/.bun/bin/codex"',
    '[ -z "$CODEX_BIN" ] && [ -d "$HOME/.nvm/versions/node" ] && CODEX_BIN="$(ls -1d "$HOME"/.nvm/versions/node/*/bin/codex 2>/dev/null | tail -n 1)"',
]
RESOLVE_CODEX_BIN = "; ".join(
    _RESOLVE_CODEX_LINES
    + ['[ -n "$CODEX_BIN" ] || { echo "codex not found; PATH=$PATH" >&2; exit 127; }']
)


def shell_escape(value: str) -> str:
    """Quote a string for a POSIX shell (single quotes, ' -> '\\'')."""
    return "'" + value.replace("'", "'\\''") + "'"


def cd_target(work_dir: str) -> str:
    """Quoted cd target; a leading ~ becomes "$HOME" so it still expands."""
    if work_dir.startswith("~"):
        return '"$HOME"' + shell_escape(work_dir[1:])
    return shell_escape(work_dir)


def join_command(binary: str, args: list[str]) -> str:
    """binary is inserted verbatim (it may be "$CODEX_BIN"); args are quoted."""
    return " ".join([binary, *(shell_escape(a) for a in args)])


def tracked_job(inner: str, work_dir: str, preamble: list[str] | None = None) -> str:
    """Script that runs *inner* in its own process group and reports it.

    Job control puts the background job in a new group whose id equals
    $!; the marker line lets terminate() reach every remote descendant.
    """
    parts = list(preamble or [])
    parts.append(f"cd {cd_target(work_dir)} || exit 1")
    parts.append("set -m")
    parts.append(f"( {inner} ) & echo \"{PGID_MARKER}$!\" >&2; wait $!")
    return "; ".join(parts)


def ssh_base_args(
    port: int | None,
    key_path: str | None,
    connect_timeout: int = 10,
    platform: str | None = None,
) -> list[str]:
    """Flags shared by every ssh invocation."""
    args = [
        "-T",
        "-o", f"ConnectTimeout={connect_timeout}",
        "-o", "StrictHostKeyChecking=accept-new",
    ]
    # Windows OpenSSH has no ControlMaster support.
    if (platform or sys.platform) != "win32":
        args += [
            "-o", "ControlMaster=auto",
            "-o", "ControlPath=/tmp/threadloom-ssh-%r@%h:%p",
            "-o", "ControlPersist=300",
        ]
    if port:
        args += ["-p", str(port)]
    if key_path:
        args += ["-i", key_path]
    return args
