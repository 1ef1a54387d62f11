"""Test the process bridge with the real git binary."""

import asyncio
import signal

import pytest

from gitgate.core import TransportService
from gitgate.git.pktline import decode_header
from gitgate.git.process import (
    NonZeroExit,
    ProcessBridge,
    ProcessState,
    RepositoryPathMissing,
    SpawnFailed,
    SpawnMode,
    git_protocol_env,
)

from .conftest import run_git

# All test coroutines will be treated as marked.
pytestmark = pytest.mark.asyncio


async def read_all(handle):
    return b"".join([chunk async for chunk in handle.iter_stdout(1024)])


class TestBuildCommand:
    """Tests for the transport command lines."""

    async def test_modes(self, tmp_path):
        bridge = ProcessBridge(git_executable="/usr/bin/git")
        service = TransportService.upload_pack
        assert bridge.build_command(service, tmp_path, SpawnMode.advertise_only) == [
            "/usr/bin/git",
            "upload-pack",
            "--stateless-rpc",
            "--advertise-refs",
            str(tmp_path),
        ]
        assert bridge.build_command(service, tmp_path, SpawnMode.stateless_rpc) == [
            "/usr/bin/git",
            "upload-pack",
            "--stateless-rpc",
            str(tmp_path),
        ]
        assert bridge.build_command(
            TransportService.receive_pack, tmp_path, SpawnMode.session
        ) == ["/usr/bin/git", "receive-pack", str(tmp_path)]

    async def test_git_protocol_env(self):
        assert git_protocol_env("version=2") == {"GIT_PROTOCOL": "version=2"}
        assert git_protocol_env("version=2:object-format=sha1") == {
            "GIT_PROTOCOL": "version=2:object-format=sha1"
        }
        assert git_protocol_env("version=2;rm -rf") == {}
        assert git_protocol_env(None) == {}


class TestProcessState:
    """Tests for the termination state."""

    async def test_exit_status(self):
        assert ProcessState("exited", code=0).exit_status == 0
        assert ProcessState("exited", code=128).exit_status == 128
        assert ProcessState("killed", signal=9).exit_status == 137
        assert ProcessState("running").exit_status is None
        assert ProcessState("running").running


class TestSpawn:
    """Tests for spawning git transports."""

    async def test_advertise_refs(self, bare_repo):
        bridge = ProcessBridge()
        handle = await bridge.spawn(
            TransportService.upload_pack, bare_repo, SpawnMode.advertise_only
        )
        output = await read_all(handle)
        state = await handle.wait()

        assert state == ProcessState("exited", code=0)
        assert handle.name == "upload-pack"
        assert handle.repo_path == bare_repo.resolve()
        assert decode_header(output[:4]) > 4
        assert b"refs/heads/main" in output
        assert output.endswith(b"0000")

    async def test_repository_path_is_absolute(self, bare_repo, monkeypatch):
        monkeypatch.chdir(bare_repo.parent)
        handle = await ProcessBridge().spawn(
            TransportService.upload_pack, bare_repo.name, SpawnMode.advertise_only
        )
        await read_all(handle)
        await handle.wait()
        assert handle.command[-1] == str(bare_repo.resolve())

    async def test_stateless_rpc_reads_stdin(self, bare_repo):
        handle = await ProcessBridge().spawn(TransportService.upload_pack, bare_repo)
        # a flush without wants ends the negotiation
        await handle.write(b"0000")
        await handle.close_stdin()
        await read_all(handle)
        state = await handle.wait()
        assert not state.running

    async def test_missing_repository(self, tmp_path):
        bridge = ProcessBridge(git_executable="/nonexistent/git")
        with pytest.raises(RepositoryPathMissing):
            await bridge.spawn(TransportService.upload_pack, tmp_path / "missing.git")

    async def test_spawn_failed(self, bare_repo):
        bridge = ProcessBridge(git_executable="/nonexistent/git")
        with pytest.raises(SpawnFailed) as exc_info:
            await bridge.spawn(TransportService.upload_pack, bare_repo)
        assert exc_info.value.command[0] == "/nonexistent/git"

    async def test_terminate_kills_waiting_process(self, bare_repo):
        handle = await ProcessBridge().spawn(
            TransportService.upload_pack, bare_repo, SpawnMode.stateless_rpc
        )
        assert handle.state.running
        handle.terminate()
        state = await asyncio.wait_for(handle.wait(), 10)
        assert state.status == "killed"
        assert state.signal == signal.SIGKILL
        assert state.exit_status == 128 + signal.SIGKILL
        # terminating twice is harmless
        handle.terminate()
        await handle.aclose()

    async def test_environment(self, bare_repo):
        bridge = ProcessBridge(git_executable="sh")
        bridge.build_command = lambda service, path, mode: [
            "sh",
            "-c",
            'printf "%s" "$GIT_PROTOCOL"',
        ]
        handle = await bridge.spawn(
            TransportService.upload_pack, bare_repo, env={"GIT_PROTOCOL": "version=2"}
        )
        assert await read_all(handle) == b"version=2"
        await handle.aclose()


class TestListRefs:
    """Tests for the plain ref listing."""

    async def test_list_refs(self, bare_repo):
        head = run_git("--git-dir", str(bare_repo), "rev-parse", "main").stdout.decode().strip()
        refs = await ProcessBridge().list_refs(bare_repo)
        assert refs == f"{head}\trefs/heads/main\n".encode()
        # tab separated like dumb-protocol info/refs, not show-ref output
        assert b" " not in refs

    async def test_empty_repository(self, empty_repo):
        assert await ProcessBridge().list_refs(empty_repo) == b""

    async def test_not_a_repository(self, git_binary, tmp_path):
        with pytest.raises(NonZeroExit) as exc_info:
            await ProcessBridge().list_refs(tmp_path)
        assert exc_info.value.returncode != 0
