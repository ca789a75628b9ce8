"""Process-table helpers for tree termination and stale cleanup.

Descendant discovery catches children that left the supervised process
group (e.g. called setsid themselves). Stale cleanup targets assistant
CLIs that outlived a previous threadloom server.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2] if len(parts) > 2 else "")
    return table


def list_descendants(root_pid: int) -> list[int]:
    """PIDs of every live descendant of root_pid, children first.

    Returns [] when the process table is unavailable (no `ps`).
    """
    try:
        table = _list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.debug("Process table unavailable: %s", exc)
        return []
    children: dict[int, list[int]] = {}
    for proc in table.values():
        children.setdefault(proc.ppid, []).append(proc.pid)
    found: list[int] = []
    stack = list(children.get(root_pid, []))
    while stack:
        pid = stack.pop()
        if pid in found or pid == root_pid:
            continue
        found.append(pid)
        stack.extend(children.get(pid, []))
    return found


def signal_pids(pids: list[int], sig: int) -> int:
    """Send sig to each pid; vanished processes are skipped. Returns hits."""
    hits = 0
    for pid in pids:
        try:
            os.kill(pid, sig)
            hits += 1
        except ProcessLookupError:
            continue
        except PermissionError:
            logger.warning("No permission to signal pid=%d", pid)
    return hits


def signal_group(pgid: int, sig: int) -> bool:
    """Signal a whole process group. False if the group is gone."""
    try:
        os.killpg(pgid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning("No permission to signal process group %d", pgid)
        return False


def group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
        return True
    except (ProcessLookupError, PermissionError):
        return False


def _has_server_ancestor(
    proc: ProcessInfo,
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> bool:
    """True when the process tree includes a live threadloom server."""
    cur = proc
    hops = 0
    while hops < 32:
        if cur.pid == current_pid:
            return True
        if "threadloom" in cur.args and cur.pid != proc.pid:
            return True
        parent = table.get(cur.ppid)
        if parent is None:
            return False
        cur = parent
        hops += 1
    return False


_MANAGED_PATTERNS = [
    r"\bclaude\b.*--input-format\s+stream-json",
    r"\bcodex\b.*\bproto\b",
]


def _is_managed_candidate(args: str) -> bool:
    """Match assistant CLIs in the mode only threadloom launches them in."""
    return any(re.search(pat, args) for pat in _MANAGED_PATTERNS)


def cleanup_stale_runtime_processes(*, current_pid: int | None = None) -> int:
    """Kill orphaned assistant CLI processes left by an earlier server.

    Process is considered stale only when:
    - it matches a managed assistant CLI signature, and
    - it has no threadloom server ancestry, and
    - it is orphaned (parent is PID 1 or parent is missing).
    """
    pid = current_pid or os.getpid()
    try:
        table = _list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.info("Skipping stale process cleanup: %s", exc)
        return 0
    killed = 0

    for proc in table.values():
        if proc.pid == pid:
            continue
        if not _is_managed_candidate(proc.args):
            continue

        is_orphan = proc.ppid == 1 or proc.ppid not in table
        if not is_orphan:
            continue

        if _has_server_ancestor(proc, table, pid):
            continue

        if signal_pids([proc.pid], signal.SIGTERM):
            killed += 1
            logger.info(
                "Reaped stale runtime process pid=%d ppid=%d cmd=%s",
                proc.pid, proc.ppid, proc.args[:180],
            )

    return killed
