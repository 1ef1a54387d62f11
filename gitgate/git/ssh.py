"""Serve Git transport commands received over SSH `exec` requests.

Only two commands are accepted:

    git-upload-pack '<path>'
    git-receive-pack '<path>'

The path may be single or double quoted. Anything else is rejected before
a subprocess is started.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import ClassVar, Dict, Optional, Union

from gitgate.core import GitGatewayError, TransportService
from gitgate.git.locator import NotResolvable, RepositoryLocator
from gitgate.git.process import (
    DEFAULT_CHUNK_SIZE,
    ProcessBridge,
    ProcessHandle,
    RepositoryPathMissing,
    SpawnFailed,
    SpawnMode,
    git_protocol_env,
)

logger = logging.getLogger(__name__)

QUOTES = ("'", '"')


@dataclass(frozen=True)
class UploadPackCommand:
    """A parsed `git-upload-pack '<path>'` command."""

    path: str
    service: ClassVar[TransportService] = TransportService.upload_pack


@dataclass(frozen=True)
class ReceivePackCommand:
    """A parsed `git-receive-pack '<path>'` command."""

    path: str
    service: ClassVar[TransportService] = TransportService.receive_pack


@dataclass(frozen=True)
class InvalidCommand:
    """A command outside the grammar, with the reason shown to the client."""

    reason: str


ParsedCommand = Union[UploadPackCommand, ReceivePackCommand, InvalidCommand]

COMMANDS = {
    TransportService.upload_pack.service_name: UploadPackCommand,
    TransportService.receive_pack.service_name: ReceivePackCommand,
}


def parse_ssh_command(command: str) -> ParsedCommand:
    """Parse an SSH exec command into one of the accepted Git commands."""
    verb, separator, argument = command.partition(" ")
    if verb not in COMMANDS:
        return InvalidCommand("Only git-upload-pack and git-receive-pack are allowed")
    if not separator or not argument:
        return InvalidCommand(f"{verb} requires a repository path")
    quote = argument[0]
    if quote not in QUOTES or len(argument) < 2 or argument[-1] != quote:
        return InvalidCommand("The repository path must be quoted")

    path = argument[1:-1]
    if not path:
        return InvalidCommand("The repository path is empty")
    if quote in path or any(ord(c) < 0x20 or c == "\x7f" for c in path):
        return InvalidCommand("The repository path contains invalid characters")
    return COMMANDS[verb](path)


class SSHChannel:
    """A duplex SSH session channel, as seen by the command handler.

    `read` returns `b""` once the client has sent EOF or the channel closed.
    `wait_closed` returns when the channel is gone for good.
    """

    async def read(self, size: int) -> bytes:
        raise NotImplementedError

    async def write(self, data: bytes):
        raise NotImplementedError

    async def write_stderr(self, data: bytes):
        raise NotImplementedError

    async def exit(self, status: int):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    async def wait_closed(self):
        raise NotImplementedError


class SSHCommandHandler:
    """Run one Git transport operation per SSH exec request."""

    def __init__(
        self,
        locator: RepositoryLocator,
        bridge: ProcessBridge,
        mode: SpawnMode = SpawnMode.session,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """Initialize the handler.

        Args:
            locator: Resolves command paths to repositories
            bridge: Starts the transport subprocesses
            mode: `session` runs the native SSH conversation (with the ref
                advertisement), `stateless_rpc` one negotiation round
            chunk_size: Max bytes per streamed read
        """
        self.locator = locator
        self.bridge = bridge
        self.mode = mode
        self.chunk_size = chunk_size

    async def handle(
        self,
        command: str,
        channel: SSHChannel,
        identity: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """Execute `command` on `channel` and return the exit status sent.

        The channel always ends with an exit status and is closed.
        """
        parsed = parse_ssh_command(command)
        if isinstance(parsed, InvalidCommand):
            logger.info(f"Rejected SSH command {command!r} from {identity}: {parsed.reason}")
            return await self._fail(channel, parsed.reason)

        try:
            resolved = self.locator.resolve_ssh_path(parsed.path, identity)
            handle = await self.bridge.spawn(
                parsed.service,
                resolved.path,
                self.mode,
                env={
                    "GIT_DIR": str(resolved.path),
                    **git_protocol_env((env or {}).get("GIT_PROTOCOL")),
                },
            )
        except (NotResolvable, RepositoryPathMissing) as err:
            logger.info(f"SSH {parsed.service.value} for {parsed.path!r}: {err}")
            return await self._fail(channel, "Repository not found")
        except SpawnFailed as err:
            return await self._fail(channel, f"Cannot start {err.command[1]}")
        except GitGatewayError as err:
            logger.error(f"SSH {parsed.service.value} for {parsed.path!r} failed: {err}")
            return await self._fail(channel, str(err))

        try:
            status = await self._run(handle, channel)
        except OSError as err:
            logger.warning(f"SSH channel failed during {handle.name}: {err}")
            status = 1
        finally:
            await handle.aclose()
        return await self._finish(channel, status)

    async def _run(self, handle: ProcessHandle, channel: SSHChannel) -> int:
        input_task = asyncio.create_task(self._pump_input(channel, handle))
        stderr_task = asyncio.create_task(self._forward_stderr(handle, channel))
        close_task = asyncio.create_task(self._kill_on_close(channel, handle))
        tasks = (input_task, stderr_task, close_task)
        try:
            async for chunk in handle.iter_stdout(self.chunk_size):
                await channel.write(chunk)
            await stderr_task
            state = await handle.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if state.exit_status != 0:
            logger.error(
                f"{' '.join(handle.command)} ended with {state.status} "
                f"(code={state.code}, signal={state.signal})"
            )
        return state.exit_status

    async def _pump_input(self, channel: SSHChannel, handle: ProcessHandle):
        try:
            while True:
                data = await channel.read(self.chunk_size)
                if not data:
                    break
                await handle.write(data)
        except (BrokenPipeError, ConnectionResetError):
            logger.debug(f"{handle.name} stopped reading its input")
        await handle.close_stdin()

    async def _forward_stderr(self, handle: ProcessHandle, channel: SSHChannel):
        async for chunk in handle.iter_stderr(self.chunk_size):
            logger.debug(f"{handle.name} (pid {handle.pid}) stderr: {chunk!r}")
            await channel.write_stderr(chunk)

    async def _kill_on_close(self, channel: SSHChannel, handle: ProcessHandle):
        await channel.wait_closed()
        if handle.state.running:
            logger.info(f"SSH channel closed during {handle.name} for {handle.repo_path}")
            handle.terminate()

    async def _fail(self, channel: SSHChannel, message: str) -> int:
        try:
            await channel.write_stderr(f"{message}\n".encode("utf-8"))
        except OSError as err:
            logger.debug(f"Cannot report {message!r} to the client: {err}")
        return await self._finish(channel, 1)

    async def _finish(self, channel: SSHChannel, status: int) -> int:
        try:
            await channel.exit(status)
        finally:
            await channel.close()
        return status
