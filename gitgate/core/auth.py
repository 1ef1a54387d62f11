"""Provide authentication."""

import base64
import binascii
import datetime
import inspect
import logging
import os
import sys
from os import environ as env
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple, Union

import shortuuid
from dotenv import find_dotenv, load_dotenv
from jose import jwt

from gitgate.core import GitGatewayError, validate_path_component

LOGLEVEL = os.environ.get("GITGATE_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("auth")
logger.setLevel(LOGLEVEL)

ENV_FILE = find_dotenv()
if ENV_FILE:
    load_dotenv(ENV_FILE)

JWT_ISSUER = env.get("GITGATE_JWT_ISSUER", "gitgate")
JWT_ALGORITHM = "HS256"
# Git clients send credentials as `git:<token>`
GIT_USERNAME = "git"


class InvalidToken(GitGatewayError):
    """Raised when a bearer credential cannot be verified."""


def extract_credentials_from_basic_auth(
    authorization: Optional[str],
) -> Tuple[Optional[str], Optional[str]]:
    """Extract username and token from an Authorization header.

    Git uses HTTP Basic Authentication, the password field carries the token:

        Authorization: Basic base64(git:token)

    Bearer tokens are accepted as well.

    Args:
        authorization: The Authorization header value

    Returns:
        Tuple of (username, token). For Bearer auth, username is None.
    """
    if not authorization:
        return None, None

    if authorization.lower().startswith("bearer "):
        return None, authorization[7:].strip() or None
    if authorization.lower().startswith("basic "):
        encoded = authorization[6:].strip()
        try:
            decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None, None
        if ":" not in decoded:
            return None, None
        # Format: username:password - password is the token
        username, password = decoded.split(":", 1)
        return username or None, password or None
    return None, None


def _get_jwt_secret():
    """Get JWT secret, ensuring consistency during testing and runtime."""
    # Always check environment variables first (important for testing)
    secret = env.get("GITGATE_JWT_SECRET") or env.get("JWT_SECRET")
    if not secret:
        logger.info(
            "Neither GITGATE_JWT_SECRET nor JWT_SECRET is defined, using a random JWT_SECRET"
        )
        secret = shortuuid.ShortUUID().random(length=22)
        # Set the environment variable to ensure consistency across module reloads
        env["GITGATE_JWT_SECRET"] = secret
    return secret


JWT_SECRET = _get_jwt_secret()


def set_jwt_secret(secret: str):
    """Set JWT secret explicitly (mainly for testing)."""
    global JWT_SECRET
    env["GITGATE_JWT_SECRET"] = secret
    JWT_SECRET = secret


def generate_auth_token(username: str, expires_in: int = 3600) -> str:
    """Generate a token identifying `username`."""
    assert expires_in > 0, "expires_in should be greater than 0"
    current_time = datetime.datetime.now(datetime.timezone.utc)
    expires_at = current_time + datetime.timedelta(seconds=expires_in)
    return jwt.encode(
        {
            "iss": JWT_ISSUER,
            "sub": username,
            "iat": current_time,
            "exp": expires_at,
        },
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def parse_auth_token(token: str) -> dict:
    """Verify a token and return its claims.

    Accepts the raw token or a `Bearer <token>` header value.
    """
    if not token:
        raise InvalidToken("Token is empty")
    parts = token.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        token = parts[1]
    elif len(parts) != 1:
        raise InvalidToken("Authorization header must be 'Bearer' token")

    try:
        return jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            issuer=JWT_ISSUER,
            options={"verify_aud": False},
        )
    except jwt.ExpiredSignatureError as err:
        raise InvalidToken("The token has expired. Please fetch a new one") from err
    except jwt.JWTError as err:
        raise InvalidToken(str(err)) from err


class IdentityProvider:
    """Turn a bearer credential into the name of the identity it belongs to."""

    async def identify(self, token: str) -> str:
        """Return the identity name, or raise `InvalidToken`."""
        raise NotImplementedError


class JWTIdentityProvider(IdentityProvider):
    """Identify tokens signed with the gateway secret.

    The identity is the `username` claim, falling back to `sub` and then to
    the `userId` claim issued by the account service. `lookup_user` can map
    that value to a user name through the external user store.
    """

    def __init__(
        self,
        lookup_user: Optional[
            Callable[[str], Union[Optional[str], Awaitable[Optional[str]]]]
        ] = None,
    ):
        self._lookup_user = lookup_user

    async def identify(self, token: str) -> str:
        claims = parse_auth_token(token)
        identity = claims.get("username") or claims.get("sub") or claims.get("userId")
        if not identity:
            raise InvalidToken("Token does not carry an identity")
        if self._lookup_user is not None:
            identity = self._lookup_user(identity)
            if inspect.isawaitable(identity):
                identity = await identity
            if not identity:
                raise InvalidToken("User not found")
        return str(identity)


class SSHAuthenticator:
    """Decide whether an SSH login is accepted.

    Both methods return the authenticated identity, or None to reject.
    """

    async def check_password(self, username: str, password: str) -> Optional[str]:
        return None

    async def check_public_key(self, username: str, key) -> Optional[str]:
        return None


class KeydirSSHAuthenticator(SSHAuthenticator):
    """Authenticate SSH logins with gateway tokens and a key directory.

    Passwords are tokens checked by the identity provider; the SSH user name
    must be `git` or the token's identity. Public keys are looked up in
    `<keydir>/<user>.pub` (authorized_keys format); logging in as `git` with
    a key searches every file and the matching file names the identity.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        keydir: Optional[Union[str, Path]] = None,
    ):
        self._identity_provider = identity_provider
        self._keydir = Path(keydir) if keydir else None

    async def check_password(self, username: str, password: str) -> Optional[str]:
        try:
            identity = await self._identity_provider.identify(password)
        except InvalidToken as err:
            logger.info(f"SSH password login rejected for {username!r}: {err}")
            return None
        if username not in (GIT_USERNAME, identity):
            logger.info(
                f"SSH password login rejected: token of {identity!r} used as {username!r}"
            )
            return None
        return identity

    async def check_public_key(self, username: str, key) -> Optional[str]:
        if self._keydir is None or not self._keydir.is_dir():
            return None
        if username == GIT_USERNAME:
            candidates = sorted(self._keydir.glob("*.pub"))
        else:
            try:
                validate_path_component(username, "user")
            except ValueError:
                return None
            candidates = [self._keydir / f"{username}.pub"]

        wanted = (key.get_name(), key.get_base64())
        for path in candidates:
            if path.is_file() and wanted in _read_authorized_keys(path):
                return path.stem
        logger.info(f"SSH public key login rejected for {username!r}")
        return None


def _read_authorized_keys(path: Path) -> set:
    """Return the `(key type, base64 blob)` pairs listed in a key file."""
    keys = set()
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split()
        # skip leading options such as `no-pty,command="..."`
        for index, field in enumerate(fields[:-1]):
            if field.startswith(("ssh-", "ecdsa-", "sk-")):
                keys.add((field, fields[index + 1]))
                break
    return keys
