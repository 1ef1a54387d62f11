"""Provide the core models shared by the HTTP and SSH gateways."""

import logging
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

LOGLEVEL = os.environ.get("GITGATE_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("core")
logger.setLevel(LOGLEVEL)

_FORBIDDEN_SEQUENCES = ("/", "\\", "..", "\0")


class GitGatewayError(Exception):
    """Base class for all errors raised by the gateway."""


class TransportService(str, Enum):
    """Represent the Git transport service run for a request."""

    upload_pack = "upload-pack"
    receive_pack = "receive-pack"

    @property
    def service_name(self) -> str:
        """Return the name used on the wire, e.g. `git-upload-pack`."""
        return f"git-{self.value}"

    @property
    def advertisement_media_type(self) -> str:
        return f"application/x-{self.service_name}-advertisement"

    @property
    def result_media_type(self) -> str:
        return f"application/x-{self.service_name}-result"

    @classmethod
    def from_service_name(cls, name: Optional[str]) -> Optional["TransportService"]:
        """Map `git-upload-pack`/`git-receive-pack` to a service.

        Returns None for anything else, including a missing name.
        """
        for service in cls:
            if name == service.service_name:
                return service
        return None


def validate_path_component(value: str, label: str = "component") -> str:
    """Reject values that could escape the directory they are joined to."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Empty repository {label}")
    if value in (".", "..") or any(seq in value for seq in _FORBIDDEN_SEQUENCES):
        raise ValueError(f"Illegal repository {label}: {value!r}")
    return value


class RepositoryRef(BaseModel):
    """Represent a repository addressed by owner and name.

    The name always carries a `.git` suffix.
    """

    model_config = ConfigDict(frozen=True)

    owner: str
    name: str

    @field_validator("owner")
    @classmethod
    def check_owner(cls, value: str) -> str:
        return validate_path_component(value, "owner")

    @field_validator("name")
    @classmethod
    def normalize_name(cls, value: str) -> str:
        validate_path_component(value, "name")
        if not value.endswith(".git"):
            value = f"{value}.git"
        if value == ".git":
            raise ValueError("Empty repository name")
        return value

    @property
    def alias(self) -> str:
        """Return the name without the `.git` suffix."""
        return self.name[: -len(".git")]


class RoutingContext(BaseModel):
    """Represent the routing input of one HTTP request."""

    model_config = ConfigDict(frozen=True)

    path: str
    path_params: Dict[str, str] = {}
    authorization: Optional[str] = None


class ResolvedRequest(BaseModel):
    """Represent a repository resolved for one transport operation."""

    model_config = ConfigDict(frozen=True)

    repository: RepositoryRef
    path: Path
    identity: Optional[str] = None
