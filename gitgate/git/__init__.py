"""Git transports served over Smart HTTP and SSH.

Each operation is bridged to a `git upload-pack` or `git receive-pack`
subprocess running against a bare repository on local disk.

Key components:
- RepositoryLocator: Resolves requests to repository paths
- ProcessBridge: Spawns and supervises the transport subprocesses
- create_git_router: FastAPI endpoints for the Git Smart HTTP protocol
- SSHCommandHandler: Runs Git commands received over SSH
"""

from gitgate.git.http import GitHTTPHandler, GitServiceResponse, create_git_router
from gitgate.git.locator import NotResolvable, RepositoryLocator
from gitgate.git.process import ProcessBridge, ProcessHandle, SpawnMode
from gitgate.git.ssh import SSHCommandHandler, parse_ssh_command

__all__ = [
    "GitHTTPHandler",
    "GitServiceResponse",
    "create_git_router",
    "NotResolvable",
    "RepositoryLocator",
    "ProcessBridge",
    "ProcessHandle",
    "SpawnMode",
    "SSHCommandHandler",
    "parse_ssh_command",
]
