"""Provide utilities that should not be aware of gitgate."""
import os
import posixpath
import zlib
from typing import List, Tuple

from starlette.datastructures import Headers
from starlette.middleware.gzip import GZipResponder
from starlette.types import ASGIApp, Receive, Scope, Send

_os_alt_seps: List[str] = list(
    sep for sep in [os.path.sep, os.path.altsep] if sep is not None and sep != "/"
)


def is_safe_path(basedir: str, path: str, follow_symlinks: bool = True) -> bool:
    """Check if the file path is inside the base directory."""
    # resolves symbolic links
    if follow_symlinks:
        basedir = os.path.realpath(basedir)
        matchpath = os.path.realpath(path)
    else:
        basedir = os.path.abspath(basedir)
        matchpath = os.path.abspath(path)
    return basedir == os.path.commonpath((basedir, matchpath))


def safe_join(directory: str, *pathnames: str) -> str:
    """Safely join zero or more untrusted path components to a base directory.

    This avoids escaping the base directory.
    :param directory: The trusted base directory.
    :param pathnames: The untrusted path components relative to the
        base directory.
    :return: The joined path.
    :raises ValueError: If a component would escape the base directory.

    Adapted from:
    https://github.com/pallets/werkzeug/blob/fb7ddd89ae3072e4f4002701a643eb247a402b64/src/werkzeug/security.py#L222
    """
    parts = [directory]

    for filename in pathnames:
        if filename != "":
            filename = posixpath.normpath(filename)

        if (
            any(sep in filename for sep in _os_alt_seps)
            or os.path.isabs(filename)
            or filename == ".."
            or filename.startswith("../")
        ):
            raise ValueError(
                f"Illegal file path: `{filename}`, "
                "you can only operate within the base directory."
            )

        parts.append(filename)

    return posixpath.join(*parts)


class GzipStreamDecoder:
    """Inflate a gzip-encoded request body chunk by chunk."""

    def __init__(self):
        self._decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)

    def decompress(self, chunk: bytes) -> bytes:
        """Return the bytes inflated from this chunk (may be empty)."""
        return self._decompressor.decompress(chunk)

    def flush(self) -> bytes:
        """Return what is left once the body has ended."""
        data = self._decompressor.flush()
        if not self._decompressor.eof:
            raise zlib.error("Truncated gzip stream")
        return data


class GZipMiddleware:
    """Middleware to gzip responses (fixed to not encoding twice).

    Paths ending with one of `exclude_suffixes` are never compressed, which
    keeps streamed binary protocols unbuffered.
    """

    def __init__(
        self,
        app: ASGIApp,
        minimum_size: int = 500,
        compresslevel: int = 9,
        exclude_suffixes: Tuple[str, ...] = (),
    ) -> None:
        """Initialize the middleware."""
        self.app = app
        self.minimum_size = minimum_size
        self.compresslevel = compresslevel
        self.exclude_suffixes = tuple(exclude_suffixes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Call the middleware."""
        if scope["type"] == "http" and not scope["path"].endswith(
            self.exclude_suffixes
        ):
            headers = Headers(scope=scope)
            # Make sure we're not already gzipping
            if (
                "gzip" in headers.get("Accept-Encoding", "")
                and "text/event-stream" not in headers.get("Accept", "text/html")
                and "Content-Encoding" not in headers
            ):
                responder = GZipResponder(
                    self.app, self.minimum_size, compresslevel=self.compresslevel
                )
                await responder(scope, receive, send)
                return
        await self.app(scope, receive, send)
