"""Spawn and supervise Git transport subprocesses.

Every transport operation owns exactly one `ProcessHandle`. Subprocesses run
in their own session so `terminate()` can kill the whole process group,
including helpers such as `pack-objects` or repository hooks.
"""

import asyncio
import logging
import os
import re
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Union

from gitgate.core import GitGatewayError, TransportService

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 65536
GIT_PROTOCOL_PATTERN = re.compile(r"[A-Za-z0-9=:. -]+")


class RepositoryPathMissing(GitGatewayError):
    """Raised before spawning when the repository directory does not exist."""

    def __init__(self, path: Path):
        super().__init__(f"Repository not found: {path}")
        self.path = path


class SpawnFailed(GitGatewayError):
    """Raised when the operating system refuses to start the subprocess."""

    def __init__(self, command: List[str], reason: Exception):
        super().__init__(f"Failed to start {' '.join(command)}: {reason}")
        self.command = command
        self.reason = reason


class NonZeroExit(GitGatewayError):
    """Raised when a Git command whose output is needed as a whole fails."""

    def __init__(self, command: List[str], returncode: int, stderr: bytes = b""):
        detail = stderr.decode("utf-8", "replace").strip()
        super().__init__(
            f"{' '.join(command)} exited with code {returncode}"
            + (f": {detail}" if detail else "")
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class SpawnMode(str, Enum):
    """Represent how the transport binary is invoked."""

    # ref advertisement only, no input
    advertise_only = "advertise-only"
    # one negotiation round per process, used by HTTP
    stateless_rpc = "stateless-rpc"
    # native full-duplex conversation, used by SSH
    session = "session"


@dataclass(frozen=True)
class ProcessState:
    """Termination state of a subprocess."""

    status: str  # "running", "exited" or "killed"
    code: Optional[int] = None
    signal: Optional[int] = None

    @property
    def running(self) -> bool:
        return self.status == "running"

    @property
    def exit_status(self) -> Optional[int]:
        """Return the code, or 128 + signal for a killed process."""
        if self.status == "exited":
            return self.code
        if self.status == "killed":
            return 128 + self.signal
        return None


RUNNING = ProcessState("running")


class ProcessHandle:
    """One spawned transport subprocess and its standard streams."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: List[str],
        repo_path: Path,
    ):
        self.process = process
        self.command = command
        self.repo_path = repo_path

    def __repr__(self):
        return f"<ProcessHandle {self.name} pid={self.pid} {self.state.status}>"

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def name(self) -> str:
        """Return the transport name, e.g. `upload-pack`."""
        return self.command[1]

    @property
    def state(self) -> ProcessState:
        code = self.process.returncode
        if code is None:
            return RUNNING
        if code < 0:
            return ProcessState("killed", signal=-code)
        return ProcessState("exited", code=code)

    async def write(self, data: bytes):
        """Write to stdin, waiting while the pipe is full."""
        self.process.stdin.write(data)
        await self.process.stdin.drain()

    async def close_stdin(self):
        """Signal end of input to the subprocess."""
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            return
        stdin.close()
        try:
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            # the process stopped reading before the end of its input
            logger.debug(f"{self.name} (pid {self.pid}) closed stdin early")

    async def iter_stdout(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield stdout chunks in order until the pipe closes."""
        while True:
            chunk = await self.process.stdout.read(chunk_size)
            if not chunk:
                return
            yield chunk

    async def iter_stderr(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield stderr chunks in order until the pipe closes."""
        while True:
            chunk = await self.process.stderr.read(chunk_size)
            if not chunk:
                return
            yield chunk

    async def wait(self) -> ProcessState:
        """Wait for the subprocess to terminate."""
        await self.process.wait()
        return self.state

    def terminate(self):
        """Kill the subprocess and everything in its process group."""
        if self.process.returncode is not None:
            return
        logger.info(f"Killing {self.name} (pid {self.pid}) for {self.repo_path}")
        try:
            if hasattr(os, "killpg"):
                os.killpg(self.process.pid, signal.SIGKILL)
            else:
                self.process.kill()
        except ProcessLookupError:
            logger.debug(f"{self.name} (pid {self.pid}) already exited")

    async def aclose(self):
        """Terminate the subprocess if needed and reap it."""
        self.terminate()
        await self.close_stdin()
        await self.process.wait()


class ProcessBridge:
    """Start Git transport subprocesses for resolved repositories."""

    def __init__(
        self,
        git_executable: str = "git",
        env: Optional[Dict[str, str]] = None,
    ):
        """Initialize the bridge.

        Args:
            git_executable: The `git` binary used to run the transports
            env: Base environment of the subprocesses, defaults to ours
        """
        self.git_executable = git_executable
        self.env = env

    def build_command(
        self, service: TransportService, repo_path: Path, mode: SpawnMode
    ) -> List[str]:
        command = [self.git_executable, service.value]
        if mode == SpawnMode.advertise_only:
            command += ["--stateless-rpc", "--advertise-refs"]
        elif mode == SpawnMode.stateless_rpc:
            command.append("--stateless-rpc")
        command.append(str(repo_path))
        return command

    async def spawn(
        self,
        service: TransportService,
        repo_path: Union[str, Path],
        mode: SpawnMode = SpawnMode.stateless_rpc,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessHandle:
        """Start `git <service>` against a repository.

        Raises:
            RepositoryPathMissing: The repository directory does not exist
            SpawnFailed: The subprocess could not be started
        """
        repo_path = _existing_repository(repo_path)
        command = self.build_command(service, repo_path, mode)
        stdin = (
            asyncio.subprocess.DEVNULL
            if mode == SpawnMode.advertise_only
            else asyncio.subprocess.PIPE
        )
        process = await self._exec(command, env, stdin)
        return ProcessHandle(process, command, repo_path)

    async def list_refs(self, repo_path: Union[str, Path]) -> bytes:
        """Return `<sha>\\t<ref>` lines for every ref of a repository."""
        repo_path = _existing_repository(repo_path)
        command = [
            self.git_executable,
            "--git-dir",
            str(repo_path),
            "for-each-ref",
            "--format=%(objectname)%09%(refname)",
        ]
        process = await self._exec(command, None, asyncio.subprocess.DEVNULL)
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise NonZeroExit(command, process.returncode, stderr)
        return stdout

    async def _exec(self, command: List[str], env: Optional[Dict[str, str]], stdin):
        full_env = dict(os.environ if self.env is None else self.env)
        full_env.update(env or {})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                start_new_session=True,
            )
        except OSError as err:
            logger.error(f"Failed to start {' '.join(command)}: {err}")
            raise SpawnFailed(command, err) from err
        logger.info(f"Spawned {' '.join(command)} (pid {process.pid})")
        return process


def git_protocol_env(value: Optional[str]) -> Dict[str, str]:
    """Return the `GIT_PROTOCOL` variable requested by a client, if acceptable."""
    if value and GIT_PROTOCOL_PATTERN.fullmatch(value):
        return {"GIT_PROTOCOL": value}
    if value:
        logger.warning(f"Ignoring invalid Git protocol request {value!r}")
    return {}


def _existing_repository(repo_path: Union[str, Path]) -> Path:
    repo_path = Path(repo_path).resolve()
    if not repo_path.is_dir():
        raise RepositoryPathMissing(repo_path)
    return repo_path
