"""WSL execution context (Windows hosts).

`wsl -d <distro> -- bash -lc '...'`, with HOME corrected first since the
Windows environment leaks into the distribution.
"""
from __future__ import annotations

import asyncio
import logging
import shutil

from ..models import WslConfig
from .base import ConnectionTestResult, _capture
from .shell import FIX_HOME, LOAD_NODE_MANAGERS
from .ssh import RemoteShellContext

logger = logging.getLogger(__name__)


def _wsl_binary() -> str | None:
    return shutil.which("wsl") or shutil.which("wsl.exe")


def decode_wsl_output(raw: bytes) -> str:
    """wsl.exe's own messages are UTF-16LE; commands inside are UTF-8."""
    if raw.startswith(b"\xff\xfe") or b"\x00" in raw:
        text = raw.decode("utf-16-le", errors="replace")
    else:
        text = raw.decode("utf-8", errors="replace")
    return text.replace("\ufeff", "").replace("\x00", "")


class WslContext(RemoteShellContext):
    kind = "wsl"
    base_preamble = [FIX_HOME, LOAD_NODE_MANAGERS]

    def __init__(self, wsl: WslConfig, **kwargs) -> None:
        super().__init__(**kwargs)
        self.wsl = wsl

    @property
    def target_key(self) -> str:
        return f"wsl:{self.wsl.distro}"

    def describe(self) -> str:
        return f"wsl:{self.wsl.distro}"

    def wrap(self, script: str, login: bool = True) -> list[str]:
        return ["wsl", "-d", self.wsl.distro, "--", "bash", "-lc" if login else "-c", script]

    async def test(self) -> ConnectionTestResult:
        if _wsl_binary() is None:
            return ConnectionTestResult(ok=False, error="WSL is not available on this host")
        result = await _capture(
            ["wsl", "-d", self.wsl.distro, "--", "echo", "ok"], timeout=30.0,
        )
        if result.ok and "ok" in result.stdout:
            return ConnectionTestResult(ok=True)
        error = result.stderr.replace("\x00", "").strip() or (
            f"wsl exited with code {result.exit_code}"
        )
        logger.info("WSL test failed for %s: %s", self.wsl.distro, error)
        return ConnectionTestResult(ok=False, error=error)


async def list_distros() -> list[str]:
    """Installed WSL distribution names; [] when WSL is unavailable."""
    binary = _wsl_binary()
    if binary is None:
        return []
    try:
        proc = await asyncio.create_subprocess_exec(
            binary, "-l", "-q",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        logger.warning("Listing WSL distros failed: %s", exc)
        return []
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=15.0)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("Listing WSL distros timed out")
        return []
    if proc.returncode != 0:
        return []
    return parse_distro_list(decode_wsl_output(out))


def parse_distro_list(text: str) -> list[str]:
    names = []
    for line in text.splitlines():
        name = line.strip()
        if name and name not in names:
            names.append(name)
    return names
