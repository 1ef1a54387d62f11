"""Resolve routing input to a bare repository on disk.

The gateway accepts several historical URL shapes at once, so resolution
tries, in order:

1. explicit `owner` and `repo` path parameters;
2. a bearer credential plus a single `repo` parameter, the credential's
   identity becoming the owner;
3. the last two path segments before the Git service suffix, unless one of
   them is a reserved word.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError

from gitgate.core import GitGatewayError, RepositoryRef, ResolvedRequest, RoutingContext
from gitgate.core.auth import (
    IdentityProvider,
    InvalidToken,
    extract_credentials_from_basic_auth,
)
from gitgate.utils import is_safe_path, safe_join

logger = logging.getLogger(__name__)

RESERVED_SEGMENTS = frozenset(
    {
        "api",
        "repos",
        "info",
        "refs",
        "upload-pack",
        "receive-pack",
        "git-upload-pack",
        "git-receive-pack",
    }
)
SERVICE_SUFFIXES = (("info", "refs"), ("git-upload-pack",), ("git-receive-pack",))


class NotResolvable(GitGatewayError):
    """Raised when no repository can be derived from a request."""


def _split_path(path: str) -> List[str]:
    segments = [segment for segment in path.split("/") if segment]
    for suffix in SERVICE_SUFFIXES:
        if tuple(segments[-len(suffix) :]) == suffix:
            return segments[: -len(suffix)]
    return segments


class RepositoryLocator:
    """Map `(owner, repo)` pairs to `<root>/<owner>/<repo>.git`."""

    def __init__(
        self,
        root: Union[str, Path],
        identity_provider: Optional[IdentityProvider] = None,
    ):
        self.root = Path(os.path.realpath(root))
        self._identity_provider = identity_provider

    def locate(self, owner: str, name: str, identity: Optional[str] = None) -> ResolvedRequest:
        """Build the resolved request for an explicit owner and name."""
        try:
            repository = RepositoryRef(owner=owner, name=name)
        except ValidationError as err:
            raise NotResolvable(
                f"Invalid repository {owner!r}/{name!r}: {err.errors()[0]['msg']}"
            ) from err

        owner_root = os.path.join(self.root, repository.owner)
        try:
            path = safe_join(owner_root, repository.name)
        except ValueError as err:
            raise NotResolvable(str(err)) from err
        if not is_safe_path(owner_root, path, follow_symlinks=False):
            raise NotResolvable(f"Repository path escapes {owner_root}")
        return ResolvedRequest(repository=repository, path=Path(path), identity=identity)

    async def resolve(self, context: RoutingContext) -> ResolvedRequest:
        """Resolve an HTTP request, see the module docstring for the order."""
        params = context.path_params
        owner = params.get("owner")
        repo = params.get("repo")

        if owner and repo:
            return self.locate(owner, repo)

        if repo and context.authorization:
            identity = await self._identify(context.authorization)
            if identity:
                try:
                    return self.locate(identity, repo, identity=identity)
                except NotResolvable as err:
                    # an identity that cannot own a repository only disables this rule
                    logger.info(f"Ignoring identity {identity!r}: {err}")

        segments = _split_path(context.path)
        if len(segments) >= 2:
            owner, repo = segments[-2], segments[-1]
            if (
                owner.lower() not in RESERVED_SEGMENTS
                and repo.lower() not in RESERVED_SEGMENTS
            ):
                return self.locate(owner, repo)

        raise NotResolvable(f"No repository matches {context.path!r}")

    def resolve_ssh_path(self, path: str, identity: Optional[str] = None) -> ResolvedRequest:
        """Resolve the path quoted in an SSH command.

        `owner/name.git` uses its last two segments; a bare `name.git` belongs
        to the authenticated identity.
        """
        segments = [segment for segment in path.replace("\\", "/").split("/") if segment]
        if ".." in segments:
            raise NotResolvable(f"Illegal repository path {path!r}")
        if len(segments) >= 2:
            owner = segments[-2]
        elif len(segments) == 1 and identity:
            owner = identity
        else:
            raise NotResolvable(f"No repository matches {path!r}")
        return self.locate(owner, segments[-1], identity=identity)

    async def _identify(self, authorization: str) -> Optional[str]:
        if self._identity_provider is None:
            return None
        _, token = extract_credentials_from_basic_auth(authorization)
        if not token:
            return None
        try:
            return await self._identity_provider.identify(token)
        except InvalidToken as err:
            # an unverifiable credential only disables this rule
            logger.info(f"Ignoring bearer credential: {err}")
            return None
