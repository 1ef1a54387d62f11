"""Provide the SSH listener serving Git transport commands."""

import asyncio
import concurrent.futures
import functools
import logging
import os
import socket
import sys
from pathlib import Path
from typing import Callable, Dict, Optional, Set, Union

import paramiko

from gitgate.core import GitGatewayError
from gitgate.core.auth import SSHAuthenticator
from gitgate.git.ssh import SSHChannel, SSHCommandHandler

LOGLEVEL = os.environ.get("GITGATE_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("ssh")
logger.setLevel(LOGLEVEL)

HOST_KEY_BITS = 3072
AUTH_TIMEOUT = 30
CLOSE_POLL_INTERVAL = 0.5
SHUTDOWN_TIMEOUT = 10
ACCEPT_RETRY_DELAY = 0.5


class HostKeyError(GitGatewayError):
    """Raised when no usable SSH host key can be loaded or generated."""


def generate_host_key(path: Path):
    """Write a new RSA host key to `path`."""
    paramiko.RSAKey.generate(HOST_KEY_BITS).write_private_key_file(str(path))


def load_or_generate_host_key(
    path: Union[str, Path], generator: Callable[[Path], None] = generate_host_key
) -> paramiko.PKey:
    """Load the host key at `path`, replacing it when missing or unreadable."""
    path = Path(path)
    if path.exists():
        try:
            return paramiko.RSAKey.from_private_key_file(str(path))
        except (paramiko.SSHException, OSError, ValueError) as err:
            logger.warning(f"Host key {path} is unusable ({err}), generating a new one")
            try:
                path.unlink()
            except OSError as unlink_err:
                raise HostKeyError(
                    f"Cannot remove invalid host key {path}: {unlink_err}"
                ) from unlink_err

    logger.info(f"Generating SSH host key at {path}")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        generator(path)
        return paramiko.RSAKey.from_private_key_file(str(path))
    except (paramiko.SSHException, OSError, ValueError) as err:
        raise HostKeyError(f"Cannot generate host key {path}: {err}") from err


class ParamikoChannel(SSHChannel):
    """Expose a paramiko channel to the asyncio command handler."""

    def __init__(self, channel: paramiko.Channel):
        self._channel = channel
        # sendall blocks while the client's window is full, so every channel
        # sends from its own thread
        self._sender = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="ssh-send"
        )

    async def read(self, size: int) -> bytes:
        while not (
            self._channel.recv_ready()
            or self._channel.eof_received
            or self._channel.closed
        ):
            await self._wait_readable()
        return self._channel.recv(size)

    async def _wait_readable(self):
        loop = asyncio.get_running_loop()
        ready = loop.create_future()

        def on_readable():
            if not ready.done():
                ready.set_result(None)

        fd = self._channel.fileno()
        loop.add_reader(fd, on_readable)
        try:
            await ready
        finally:
            loop.remove_reader(fd)

    async def write(self, data: bytes):
        await asyncio.get_running_loop().run_in_executor(
            self._sender, self._channel.sendall, data
        )

    async def write_stderr(self, data: bytes):
        await asyncio.get_running_loop().run_in_executor(
            self._sender, self._channel.sendall_stderr, data
        )

    async def exit(self, status: int):
        if not self._channel.closed:
            self._channel.send_exit_status(status)

    async def close(self):
        self._channel.close()
        self._sender.shutdown(wait=False)

    async def wait_closed(self):
        while not self._channel.closed:
            await asyncio.sleep(CLOSE_POLL_INTERVAL)


class GitSSHServer(paramiko.ServerInterface):
    """Answer the requests of one SSH connection.

    paramiko calls these methods from its transport thread; authentication
    and command execution are handed to the event loop.
    """

    def __init__(
        self,
        authenticator: SSHAuthenticator,
        loop: asyncio.AbstractEventLoop,
        on_exec: Callable[[paramiko.Channel, str, str, Dict[str, str]], None],
    ):
        self.authenticator = authenticator
        self.loop = loop
        self.on_exec = on_exec
        self.identity: Optional[str] = None
        self._env: Dict[int, Dict[str, str]] = {}

    def get_allowed_auths(self, username):
        return "password,publickey"

    def check_auth_password(self, username, password):
        return self._authenticate(
            username, self.authenticator.check_password(username, password)
        )

    def check_auth_publickey(self, username, key):
        return self._authenticate(
            username, self.authenticator.check_public_key(username, key)
        )

    def _authenticate(self, username, check) -> int:
        future = asyncio.run_coroutine_threadsafe(check, self.loop)
        try:
            identity = future.result(AUTH_TIMEOUT)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.warning(f"SSH authentication of {username!r} timed out")
            return paramiko.AUTH_FAILED
        if not identity:
            return paramiko.AUTH_FAILED
        logger.info(f"SSH login {username!r} authenticated as {identity!r}")
        self.identity = identity
        return paramiko.AUTH_SUCCESSFUL

    def check_channel_request(self, kind, chanid):
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_env_request(self, channel, name, value):
        name, value = _text(name), _text(value)
        if name != "GIT_PROTOCOL":
            return False
        self._env.setdefault(channel.get_id(), {})[name] = value
        return True

    def check_channel_exec_request(self, channel, command):
        if self.identity is None:
            return False
        env = self._env.pop(channel.get_id(), {})
        self.on_exec(channel, _text(command), self.identity, env)
        return True


def _text(value: Union[bytes, str]) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return value


class SSHTransportListener:
    """Accept SSH connections and run their exec requests through a handler."""

    def __init__(
        self,
        handler: SSHCommandHandler,
        authenticator: SSHAuthenticator,
        host_key_path: Union[str, Path],
        host: str = "0.0.0.0",
        port: int = 2222,
        key_generator: Callable[[Path], None] = generate_host_key,
    ):
        self.handler = handler
        self.authenticator = authenticator
        self.host_key_path = Path(host_key_path)
        self.host = host
        self.port = port
        self.key_generator = key_generator
        self.host_key: Optional[paramiko.PKey] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sock: Optional[socket.socket] = None
        self._accept_task: Optional[asyncio.Task] = None
        self._transports: Set[paramiko.Transport] = set()
        self._handshakes: Set[asyncio.Task] = set()
        self._sessions: Set[asyncio.Task] = set()

    @property
    def bound_port(self) -> Optional[int]:
        """Return the port actually listened on (useful with port 0)."""
        if self._sock is None:
            return None
        return self._sock.getsockname()[1]

    async def start(self):
        """Load the host key and start accepting connections.

        Raises:
            HostKeyError: No usable host key could be loaded or generated
        """
        self._loop = asyncio.get_running_loop()
        self.host_key = await self._loop.run_in_executor(
            None, load_or_generate_host_key, self.host_key_path, self.key_generator
        )
        self._sock = socket.create_server((self.host, self.port))
        self._sock.setblocking(False)
        self._accept_task = asyncio.create_task(self._accept_loop())
        logger.info(
            f"SSH server listening on {self.host}:{self.bound_port} "
            f"(host key {self.host_key.get_name()} {self.host_key.get_fingerprint().hex()})"
        )

    async def stop(self):
        """Stop accepting, close live connections and wait for their commands."""
        if self._accept_task is not None:
            self._accept_task.cancel()
            await asyncio.gather(self._accept_task, return_exceptions=True)
            self._accept_task = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        # Transport.close joins the transport thread
        await asyncio.gather(
            *(
                self._loop.run_in_executor(None, transport.close)
                for transport in self._transports
            )
        )
        self._transports.clear()
        for task in list(self._handshakes):
            task.cancel()
        if self._sessions:
            _, pending = await asyncio.wait(set(self._sessions), timeout=SHUTDOWN_TIMEOUT)
            for task in pending:
                task.cancel()
        logger.info("SSH server stopped")

    async def _accept_loop(self):
        while True:
            try:
                conn, peer = await self._loop.sock_accept(self._sock)
            except OSError as err:
                # e.g. EMFILE or ECONNABORTED, the listening socket stays usable
                logger.warning(f"Accepting an SSH connection failed: {err}")
                await asyncio.sleep(ACCEPT_RETRY_DELAY)
                continue
            self._transports = {t for t in self._transports if t.is_active()}
            task = asyncio.create_task(self._open_transport(conn, peer))
            self._handshakes.add(task)
            task.add_done_callback(self._handshakes.discard)

    async def _open_transport(self, conn: socket.socket, peer):
        transport = None
        try:
            conn.setblocking(True)
            transport = paramiko.Transport(conn)
            transport.add_server_key(self.host_key)
            server = GitSSHServer(self.authenticator, self._loop, self._on_exec)
            self._transports.add(transport)
            await self._loop.run_in_executor(
                None, functools.partial(transport.start_server, server=server)
            )
        except (paramiko.SSHException, EOFError, OSError) as err:
            logger.info(f"SSH negotiation with {peer} failed: {err}")
            if transport is None:
                conn.close()
            else:
                transport.close()
                self._transports.discard(transport)
            return
        logger.info(f"SSH connection from {peer}")

    def _on_exec(self, channel: paramiko.Channel, command: str, identity: str, env):
        # called from the paramiko transport thread
        self._loop.call_soon_threadsafe(self._start_session, channel, command, identity, env)

    def _start_session(self, channel: paramiko.Channel, command: str, identity: str, env):
        task = asyncio.create_task(
            self._serve(ParamikoChannel(channel), command, identity, env)
        )
        self._sessions.add(task)
        task.add_done_callback(self._sessions.discard)

    async def _serve(self, channel: ParamikoChannel, command: str, identity: str, env):
        logger.info(f"SSH exec {command!r} by {identity!r}")
        try:
            status = await self.handler.handle(command, channel, identity, env)
        except OSError as err:
            logger.warning(f"SSH command {command!r} by {identity!r} failed: {err}")
            await channel.close()
            return
        logger.info(f"SSH exec {command!r} by {identity!r} exited with {status}")
