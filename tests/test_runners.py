from __future__ import annotations

import asyncio
import errno
import stat
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from threadloom.engine.errors import InvalidStateError, ProcessSpawnError, RemoteConnectionError
from threadloom.engine.models import ConnectionType, RepoLocation, SshConfig, Thread, WslConfig
from threadloom.engine.runners import (
    ConnectionTestResult,
    ContextResolver,
    LocalContext,
    ProcessHandle,
    SpawnCommand,
    SshContext,
    WslContext,
    cd_target,
    shell_escape,
)
from threadloom.engine.runners.shell import PGID_MARKER, join_command, ssh_base_args, tracked_job
from threadloom.engine.runners.wsl import decode_wsl_output, parse_distro_list


def test_shell_escape_and_cd_target() -> None:
    assert shell_escape("plain") == "'plain'"
    assert shell_escape("it's") == "'it'\\''s'"
    assert cd_target("/srv/app") == "'/srv/app'"
    assert cd_target("~/src/my app") == "\"$HOME\"'/src/my app'"
    assert join_command('"$CODEX_BIN"', ["proto", "a b"]) == "\"$CODEX_BIN\" 'proto' 'a b'"


def test_tracked_job_reports_process_group() -> None:
    script = tracked_job("'claude' '--print'", "~/repo", ["export A=1"])
    parts = script.split("; ")
    assert parts[0] == "export A=1"
    assert parts[1] == "cd \"$HOME\"'/repo' || exit 1"
    assert parts[2] == "set -m"
    assert f'echo "{PGID_MARKER}$!" >&2' in script
    assert script.endswith("wait $!")


def test_ssh_base_args() -> None:
    args = ssh_base_args(2222, "~/.ssh/id_ed25519", connect_timeout=7, platform="linux")
    assert args[:3] == ["-T", "-o", "ConnectTimeout=7"]
    assert "ControlMaster=auto" in args
    assert args[-4:] == ["-p", "2222", "-i", "~/.ssh/id_ed25519"]

    windows = ssh_base_args(None, None, platform="win32")
    assert "ControlMaster=auto" not in windows
    assert "-p" not in windows


def test_ssh_context_argv() -> None:
    context = SshContext(SshConfig(host="build.example", user="ci", port=2222))
    argv = context.build_argv(SpawnCommand(
        binary="codex", args=["proto"], cwd="/srv/app",
        preamble=["PREP"], remote_binary='"$CODEX_BIN"',
    ))

    assert argv[0] == "ssh"
    assert "BatchMode=yes" in argv
    assert argv[-2] == "ci@build.example"
    remote = argv[-1]
    assert remote.startswith("bash -lc '")
    assert "PREP" in remote
    assert "$CODEX_BIN" in remote
    assert PGID_MARKER in remote
    assert context.target_key == "ssh:ci@build.example:2222:"
    assert context.describe() == "ssh:ci@build.example:2222"


def test_wsl_context_argv() -> None:
    context = WslContext(WslConfig(distro="Ubuntu"))
    argv = context.build_run_argv("git", ["status"], "~/repo")

    assert argv[:6] == ["wsl", "-d", "Ubuntu", "--", "bash", "-lc"]
    assert argv[-1].endswith("cd \"$HOME\"'/repo' && git 'status'")
    assert 'export HOME="$(getent passwd' in argv[-1]
    assert context.target_key == "wsl:Ubuntu"


def test_wsl_output_decoding() -> None:
    raw = "Ubuntu\r\nDebian\r\nUbuntu\r\n".encode("utf-16-le")
    assert parse_distro_list(decode_wsl_output(raw)) == ["Ubuntu", "Debian"]
    assert decode_wsl_output(b"plain") == "plain"


def test_handle_consumes_pgid_marker() -> None:
    handle = ProcessHandle(MagicMock(pid=42, returncode=None), "ssh:test")
    assert handle.note_stderr("normal output") is False
    assert handle.note_stderr(f"{PGID_MARKER}31337") is True
    assert handle.remote_pgid == 31337
    assert handle.remote_pgid_seen.is_set()
    assert handle.note_stderr(f"{PGID_MARKER}oops") is True


def test_context_for_location_kinds() -> None:
    resolver = ContextResolver()
    local = RepoLocation(project_id="p", label="l", path="/repo")
    ssh = RepoLocation(
        project_id="p", label="s", path="/srv", connection_type=ConnectionType.SSH,
        ssh=SshConfig(host="h", user="u"),
    )

    assert isinstance(resolver.context_for(local), LocalContext)
    assert isinstance(resolver.context_for(ssh), SshContext)

    thread = Thread(project_id="p", location_id=local.id, use_wsl=True, wsl_distro="Ubuntu")
    assert isinstance(resolver.context_for(local, thread), WslContext)
    # A thread WSL override only applies to local locations.
    assert isinstance(resolver.context_for(ssh, thread), SshContext)

    with pytest.raises(InvalidStateError):
        resolver.context_for(local, Thread(project_id="p", location_id=local.id, use_wsl=True))


@pytest.mark.asyncio
async def test_resolver_verdict_sticks_until_retested() -> None:
    resolver = ContextResolver()
    location = RepoLocation(
        project_id="p", label="s", path="/srv", connection_type=ConnectionType.SSH,
        ssh=SshConfig(host="h", user="u"),
    )
    tester = AsyncMock(side_effect=[
        ConnectionTestResult(ok=False, error="timeout"),
        ConnectionTestResult(ok=True),
    ])

    with patch.object(SshContext, "test", new=tester):
        with pytest.raises(RemoteConnectionError):
            await resolver.resolve(location)
        with pytest.raises(RemoteConnectionError):
            await resolver.resolve(location)
        assert tester.await_count == 1

        verdict = await resolver.test(resolver.context_for(location))
        assert verdict.ok is True
        context = await resolver.resolve(location)

    assert isinstance(context, SshContext)
    assert tester.await_count == 2


@pytest.mark.asyncio
async def test_local_run_and_check_cli(tmp_path: Path) -> None:
    context = LocalContext()
    result = await context.run("echo", ["hi"], str(tmp_path))
    assert result.ok and result.stdout == "hi\n"

    missing = await context.run(str(tmp_path / "nope"), [], str(tmp_path))
    assert missing.exit_code is None and not missing.ok

    cli = tmp_path / "fake-cli"
    cli.write_text(f"#!{sys.executable}\nprint('2.0.14 (Claude Code)')\n", encoding="utf-8")
    cli.chmod(cli.stat().st_mode | stat.S_IXUSR)
    health = await context.check_cli(str(cli))
    assert health.installed is True
    assert health.version == "2.0.14"

    absent = await context.check_cli(str(tmp_path / "nope"))
    assert absent.installed is False


@pytest.mark.asyncio
async def test_spawn_failure_is_translated(tmp_path: Path) -> None:
    with pytest.raises(ProcessSpawnError):
        await LocalContext().spawn(SpawnCommand(binary=str(tmp_path / "nope"), args=[], cwd=str(tmp_path)))


@pytest.mark.asyncio
async def test_any_os_error_at_spawn_is_translated(tmp_path: Path) -> None:
    error = OSError(errno.ENOEXEC, "Exec format error")
    with patch("threadloom.engine.runners.base.asyncio.create_subprocess_exec", AsyncMock(side_effect=error)):
        with pytest.raises(ProcessSpawnError) as exc_info:
            await LocalContext().spawn(SpawnCommand(binary="script", args=[], cwd=str(tmp_path)))
        result = await LocalContext().run("script", [], str(tmp_path))

    assert "Exec format error" in exc_info.value.reason
    assert result.exit_code is None
    assert not result.ok


@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
@pytest.mark.asyncio
async def test_terminate_kills_whole_tree(tmp_path: Path) -> None:
    context = LocalContext()
    handle = await context.spawn_shell("sleep 30 & sleep 30; wait", str(tmp_path))
    await asyncio.sleep(0.2)

    await context.terminate(handle, grace=2.0)

    assert handle.returncode is not None
    # Terminating again is a no-op.
    await context.terminate(handle, grace=2.0)
