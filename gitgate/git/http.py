"""Git Smart HTTP Protocol endpoints for FastAPI.

This module bridges the Git Smart HTTP protocol to `git upload-pack` and
`git receive-pack` subprocesses. Request bodies are streamed into the
subprocess and its output is streamed back without buffering whole packs.

Protocol Reference:
- https://git-scm.com/docs/http-protocol
- https://git-scm.com/docs/protocol-v2
"""

import asyncio
import logging
import zlib
from typing import Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, Response
from starlette.types import Receive, Scope, Send

from gitgate.core import GitGatewayError, ResolvedRequest, RoutingContext, TransportService
from gitgate.core.auth import (
    IdentityProvider,
    InvalidToken,
    extract_credentials_from_basic_auth,
)
from gitgate.git.locator import NotResolvable, RepositoryLocator
from gitgate.git.pktline import HEADER_SIZE, MalformedFrame, decode_header, service_prelude
from gitgate.git.process import (
    DEFAULT_CHUNK_SIZE,
    NonZeroExit,
    ProcessBridge,
    ProcessHandle,
    RepositoryPathMissing,
    SpawnFailed,
    SpawnMode,
    git_protocol_env,
)
from gitgate.utils import GzipStreamDecoder

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {"Cache-Control": "no-cache"}
AUTHENTICATE_HEADERS = {"WWW-Authenticate": 'Basic realm="Git Repository"'}
GZIP_ENCODINGS = ("gzip", "x-gzip")
STDERR_DRAIN_TIMEOUT = 5.0
STDIN_BUFFER_LIMIT = 4 * 1024 * 1024
STDIN_STALL_TIMEOUT = 120.0

__all__ = [
    "GitHTTPHandler",
    "GitServiceResponse",
    "create_git_router",
    "extract_credentials_from_basic_auth",
]


class GitServiceResponse(Response):
    """Stream a Git transport subprocess as an HTTP response.

    The request body (when `feed_request` is set) is pumped into the
    subprocess stdin while its stdout is sent to the client. The response
    start is only sent with the first stdout chunk, so a subprocess that
    fails without producing output still becomes a clean error status.

    The request is read by its own task and handed to a stdin writer through
    a queue, so a client disconnect kills the subprocess even while it is not
    reading its input. At most `buffer_limit` bytes wait for the writer; when
    the subprocess reads nothing for `stall_timeout` seconds past that, it is
    killed.
    """

    def __init__(
        self,
        handle: ProcessHandle,
        media_type: str,
        prelude: bytes = b"",
        feed_request: bool = False,
        gunzip: bool = False,
        headers: Optional[Dict[str, str]] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        buffer_limit: int = STDIN_BUFFER_LIMIT,
        stall_timeout: float = STDIN_STALL_TIMEOUT,
    ):
        self.handle = handle
        self.prelude = prelude
        self.feed_request = feed_request
        self.gunzip = gunzip
        self.chunk_size = chunk_size
        self.buffer_limit = buffer_limit
        self.stall_timeout = stall_timeout
        self.status_code = 200
        self.media_type = media_type
        self.background = None
        self.init_headers({**NO_CACHE_HEADERS, **(headers or {})})
        self._rejection: Optional[MalformedFrame] = None
        self._buffered = 0
        self._stdin_progress = asyncio.Event()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        disconnected = asyncio.Event()
        request_task = asyncio.create_task(self._pump_request(receive, disconnected))
        stderr_task = asyncio.create_task(self._log_stderr())
        started = False
        try:
            async for chunk in self.handle.iter_stdout(self.chunk_size):
                if not started:
                    await self._start(send)
                    started = True
                await send({"type": "http.response.body", "body": chunk, "more_body": True})

            state = await self.handle.wait()
            if disconnected.is_set():
                return
            if state.exit_status != 0:
                logger.error(
                    f"{' '.join(self.handle.command)} ended with {state.status} "
                    f"(code={state.code}, signal={state.signal})"
                )
            if not started:
                if self._rejection is not None:
                    await self._send_error(scope, receive, send, 400, str(self._rejection))
                    return
                if state.exit_status != 0:
                    await self._send_error(scope, receive, send, 500, "Git process failed")
                    return
                await self._start(send)
            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except OSError as err:
            logger.warning(f"Lost client while streaming {self.handle.name}: {err}")
        finally:
            request_task.cancel()
            await self.handle.aclose()
            (outcome,) = await asyncio.gather(request_task, return_exceptions=True)
            if isinstance(outcome, Exception):
                logger.error(f"Streaming the request into {self.handle.name} failed: {outcome!r}")
            try:
                await asyncio.wait_for(stderr_task, STDERR_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out draining stderr of {self.handle.name}")

    async def _start(self, send: Send):
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )
        if self.prelude:
            await send(
                {"type": "http.response.body", "body": self.prelude, "more_body": True}
            )

    async def _send_error(
        self, scope: Scope, receive: Receive, send: Send, status_code: int, message: str
    ):
        response = PlainTextResponse(message, status_code=status_code, headers=NO_CACHE_HEADERS)
        await response(scope, receive, send)

    def _disconnect(self, disconnected: asyncio.Event):
        if disconnected.is_set():
            return
        disconnected.set()
        logger.info(
            f"Client disconnected during {self.handle.name} for {self.handle.repo_path}"
        )
        self.handle.terminate()

    async def _pump_request(self, receive: Receive, disconnected: asyncio.Event):
        """Read the request until the client leaves, feeding the body to stdin."""
        if not self.feed_request:
            await self.handle.close_stdin()
            await self._watch_disconnect(receive, disconnected)
            return

        body: asyncio.Queue = asyncio.Queue()
        writer = asyncio.create_task(self._write_stdin(body))
        try:
            more_body = True
            while more_body and not writer.done():
                message = await receive()
                if message["type"] == "http.disconnect":
                    self._disconnect(disconnected)
                    return
                chunk = message.get("body", b"")
                more_body = message.get("more_body", False)
                self._buffered += len(chunk)
                body.put_nowait((chunk, more_body))
                if not await self._wait_for_stdin(writer):
                    break
            await self._watch_disconnect(receive, disconnected)
        finally:
            writer.cancel()
            (outcome,) = await asyncio.gather(writer, return_exceptions=True)
            if isinstance(outcome, Exception):
                logger.error(f"Writing the request into {self.handle.name} failed: {outcome!r}")

    async def _watch_disconnect(self, receive: Receive, disconnected: asyncio.Event):
        while not disconnected.is_set():
            message = await receive()
            if message["type"] == "http.disconnect":
                self._disconnect(disconnected)

    async def _wait_for_stdin(self, writer: asyncio.Task) -> bool:
        """Hold back reading while too much of the body is queued.

        Returns False when the subprocess stalled and was killed.
        """
        if self._buffered <= self.buffer_limit:
            return True
        try:
            await asyncio.wait_for(self._stdin_drained(writer), self.stall_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"{self.handle.name} (pid {self.handle.pid}) read no input "
                f"for {self.stall_timeout}s, killing it"
            )
            self.handle.terminate()
            return False
        return True

    async def _stdin_drained(self, writer: asyncio.Task):
        while self._buffered > self.buffer_limit and not writer.done():
            self._stdin_progress.clear()
            await self._stdin_progress.wait()

    async def _write_stdin(self, body: asyncio.Queue):
        try:
            await self._feed_stdin(body)
        except (MalformedFrame, zlib.error) as err:
            if not isinstance(err, MalformedFrame):
                err = MalformedFrame(f"Invalid gzip request body: {err}")
            logger.warning(f"Rejecting {self.handle.name} request: {err}")
            self._rejection = err
            self.handle.terminate()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug(f"{self.handle.name} stopped reading its input")
        await self.handle.close_stdin()
        self._stdin_progress.set()

    async def _feed_stdin(self, body: asyncio.Queue):
        decoder = GzipStreamDecoder() if self.gunzip else None
        head = b""
        checked = False
        while True:
            raw, more_body = await body.get()
            chunk = raw
            if decoder is not None:
                chunk = decoder.decompress(chunk)
                if not more_body:
                    chunk += decoder.flush()

            if not checked:
                # the body must open with a pkt-line
                head += chunk
                if len(head) < HEADER_SIZE and more_body:
                    self._consumed(raw)
                    continue
                if not head:
                    raise MalformedFrame("Request body required")
                decode_header(head[:HEADER_SIZE])
                chunk, checked = head, True

            if chunk:
                await self.handle.write(chunk)
            self._consumed(raw)
            if not more_body:
                return

    def _consumed(self, raw: bytes):
        self._buffered -= len(raw)
        self._stdin_progress.set()

    async def _log_stderr(self):
        async for chunk in self.handle.iter_stderr(self.chunk_size):
            for line in chunk.decode("utf-8", "replace").splitlines():
                logger.warning(f"{self.handle.name} (pid {self.handle.pid}): {line}")


class GitHTTPHandler:
    """Serve the Smart HTTP operations for repositories found by a locator."""

    def __init__(
        self,
        locator: RepositoryLocator,
        bridge: ProcessBridge,
        identity_provider: Optional[IdentityProvider] = None,
        require_push_auth: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """Initialize the handler.

        Args:
            locator: Resolves requests to repositories
            bridge: Starts the transport subprocesses
            identity_provider: Verifies push credentials
            require_push_auth: Only let the repository owner push
            chunk_size: Max bytes per streamed read
        """
        self.locator = locator
        self.bridge = bridge
        self.identity_provider = identity_provider
        self.require_push_auth = require_push_auth
        self.chunk_size = chunk_size

    async def info_refs(
        self, request: Request, service: Optional[str] = Query(None)
    ) -> Response:
        """Git reference discovery endpoint.

        This is the first endpoint called by git clone/fetch/push.
        """
        resolved = await self._resolve(request)
        transport = TransportService.from_service_name(service)
        if transport is None:
            return await self._list_refs(resolved)
        if transport == TransportService.receive_pack:
            await self._authorize_push(request, resolved)

        handle = await self._spawn(request, resolved, transport, SpawnMode.advertise_only)
        return GitServiceResponse(
            handle,
            media_type=transport.advertisement_media_type,
            prelude=service_prelude(transport),
            chunk_size=self.chunk_size,
        )

    async def upload_pack(self, request: Request) -> Response:
        """Handle git fetch/clone requests."""
        return await self._rpc(request, TransportService.upload_pack)

    async def receive_pack(self, request: Request) -> Response:
        """Handle git push requests."""
        return await self._rpc(request, TransportService.receive_pack)

    async def _rpc(self, request: Request, transport: TransportService) -> Response:
        resolved = await self._resolve(request)
        if transport == TransportService.receive_pack:
            await self._authorize_push(request, resolved)

        encoding = request.headers.get("content-encoding", "identity").strip().lower()
        if encoding not in GZIP_ENCODINGS + ("identity", ""):
            raise HTTPException(
                status_code=415, detail=f"Unsupported Content-Encoding: {encoding}"
            )

        handle = await self._spawn(request, resolved, transport, SpawnMode.stateless_rpc)
        return GitServiceResponse(
            handle,
            media_type=transport.result_media_type,
            feed_request=True,
            gunzip=encoding in GZIP_ENCODINGS,
            headers={"Content-Encoding": "identity"},
            chunk_size=self.chunk_size,
        )

    async def _resolve(self, request: Request) -> ResolvedRequest:
        context = RoutingContext(
            path=request.url.path,
            path_params=dict(request.path_params),
            authorization=request.headers.get("authorization"),
        )
        try:
            return await self.locator.resolve(context)
        except NotResolvable as err:
            logger.info(f"Cannot resolve {request.url.path}: {err}")
            raise HTTPException(status_code=404, detail="Repository not found")

    async def _authorize_push(self, request: Request, resolved: ResolvedRequest):
        if not self.require_push_auth:
            return
        _, token = extract_credentials_from_basic_auth(request.headers.get("authorization"))
        if not token or self.identity_provider is None:
            raise HTTPException(
                status_code=401,
                detail="Authentication required for push",
                headers=AUTHENTICATE_HEADERS,
            )
        try:
            identity = await self.identity_provider.identify(token)
        except InvalidToken as err:
            logger.info(f"Push to {resolved.repository.alias} rejected: {err}")
            raise HTTPException(
                status_code=401,
                detail=f"Authentication failed: {err}",
                headers=AUTHENTICATE_HEADERS,
            )
        if identity != resolved.repository.owner:
            logger.info(f"{identity} may not push to {resolved.repository.alias}")
            raise HTTPException(status_code=403, detail="Permission denied")

    async def _spawn(
        self,
        request: Request,
        resolved: ResolvedRequest,
        transport: TransportService,
        mode: SpawnMode,
    ) -> ProcessHandle:
        env = git_protocol_env(request.headers.get("git-protocol"))
        try:
            return await self.bridge.spawn(transport, resolved.path, mode, env=env)
        except RepositoryPathMissing:
            raise HTTPException(status_code=404, detail="Repository not found")
        except SpawnFailed as err:
            raise HTTPException(
                status_code=500, detail=f"Internal server error: cannot start {err.command[1]}"
            )
        except GitGatewayError as err:
            raise HTTPException(status_code=500, detail=f"Internal server error: {err}")

    async def _list_refs(self, resolved: ResolvedRequest) -> Response:
        try:
            refs = await self.bridge.list_refs(resolved.path)
        except RepositoryPathMissing:
            raise HTTPException(status_code=404, detail="Repository not found")
        except (SpawnFailed, NonZeroExit) as err:
            logger.error(f"Listing refs of {resolved.path} failed: {err}")
            raise HTTPException(status_code=500, detail="Internal server error: cannot list refs")
        return Response(refs, media_type="text/plain", headers=NO_CACHE_HEADERS)


def create_git_router(
    locator: RepositoryLocator,
    bridge: ProcessBridge,
    identity_provider: Optional[IdentityProvider] = None,
    require_push_auth: bool = False,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    prefixes=("/api/repos", ""),
) -> APIRouter:
    """Create a FastAPI router for Git HTTP protocol.

    Every prefix is served with and without an owner segment, and deeper
    paths fall through to a catch-all resolved from their last segments.

    Args:
        locator: Resolves requests to repositories
        bridge: Starts the transport subprocesses
        identity_provider: Verifies bearer credentials for push
        require_push_auth: Only let the repository owner push
        chunk_size: Max bytes per streamed read
        prefixes: URL prefixes to mount, tried in order

    Returns:
        FastAPI router with Git endpoints
    """
    handler = GitHTTPHandler(
        locator,
        bridge,
        identity_provider=identity_provider,
        require_push_auth=require_push_auth,
        chunk_size=chunk_size,
    )
    router = APIRouter()

    bases = [prefix + shape for prefix in prefixes for shape in ("/{owner}/{repo}", "/{repo}")]
    bases.append("/{prefix:path}")
    for base in bases:
        router.add_api_route(
            base + "/info/refs", handler.info_refs, methods=["GET"], include_in_schema=False
        )
        router.add_api_route(
            base + "/git-upload-pack",
            handler.upload_pack,
            methods=["POST"],
            include_in_schema=False,
        )
        router.add_api_route(
            base + "/git-receive-pack",
            handler.receive_pack,
            methods=["POST"],
            include_in_schema=False,
        )
    return router
