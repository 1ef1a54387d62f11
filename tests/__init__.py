"""Test the gitgate module."""

import socket

GIT_USER = "alice"
OTHER_USER = "bob"
REPO_NAME = "project.git"


def find_free_port() -> int:
    """Return a TCP port nothing listens on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
