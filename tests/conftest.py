"""Provide common pytest fixtures."""

import os
import shutil
import subprocess
import time
import uuid
from threading import Thread

# Set the JWT secret BEFORE importing any gitgate modules
# This ensures all modules use the same secret
JWT_SECRET = str(uuid.uuid4())
os.environ["JWT_SECRET"] = JWT_SECRET
os.environ["GITGATE_JWT_SECRET"] = JWT_SECRET

import pytest
import requests
import uvicorn
from requests import RequestException

from gitgate.core.auth import generate_auth_token
from gitgate.server import create_application, get_argparser

from . import GIT_USER, REPO_NAME, find_free_port

GIT_ENV = {
    **os.environ,
    "GIT_CONFIG_NOSYSTEM": "1",
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_AUTHOR_NAME": "Test User",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test User",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


def run_git(*args, cwd=None, check=True):
    """Run the git binary the way a client would."""
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=GIT_ENV,
        check=check,
        capture_output=True,
        timeout=60,
    )


def create_bare_repo(root, owner, name):
    """Create an empty bare repository at `<root>/<owner>/<name>`."""
    path = root / owner / name
    path.mkdir(parents=True)
    run_git("init", "--bare", "--quiet", str(path))
    run_git("--git-dir", str(path), "symbolic-ref", "HEAD", "refs/heads/main")
    return path


def commit_to(bare, workdir, message="Initial commit", filename="README.md"):
    """Commit one file in `workdir` and push it to `main` of `bare`."""
    if not workdir.exists():
        run_git("init", "--quiet", str(workdir))
    (workdir / filename).write_text(f"{message}\n", encoding="utf-8")
    run_git("add", filename, cwd=workdir)
    run_git("commit", "--quiet", "-m", message, cwd=workdir)
    run_git("push", "--quiet", str(bare), "HEAD:refs/heads/main", cwd=workdir)
    return run_git("rev-parse", "HEAD", cwd=workdir).stdout.decode().strip()


@pytest.fixture
def git_binary():
    """Skip the test when git is not installed."""
    path = shutil.which("git")
    if path is None:
        pytest.skip("the git binary is not installed")
    return path


@pytest.fixture
def repo_root(tmp_path):
    """Return an empty repository root."""
    root = tmp_path / "repositories"
    root.mkdir()
    return root


@pytest.fixture
def bare_repo(git_binary, repo_root, tmp_path):
    """Create `alice/project.git` holding a single commit on `main`."""
    path = create_bare_repo(repo_root, GIT_USER, REPO_NAME)
    commit_to(path, tmp_path / "work")
    return path


@pytest.fixture
def empty_repo(git_binary, repo_root):
    """Create the empty bare repository `alice/empty.git`."""
    return create_bare_repo(repo_root, GIT_USER, "empty.git")


@pytest.fixture
def token():
    """Return a token identifying the repository owner."""
    return generate_auth_token(GIT_USER)


def _start_server(repo_root, *extra_args):
    port = find_free_port()
    args = get_argparser(add_help=False).parse_args(
        [
            "--repo-root",
            str(repo_root),
            "--port",
            str(port),
            "--disable-ssh",
            *extra_args,
        ]
    )
    app = create_application(args)
    config = uvicorn.Config(app, host="127.0.0.1", port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = Thread(target=server.run, daemon=True)
    thread.start()

    url = f"http://127.0.0.1:{port}"
    timeout = 20
    while timeout > 0:
        try:
            if requests.get(f"{url}/api/check", timeout=1).ok:
                break
        except RequestException:
            pass
        timeout -= 0.1
        time.sleep(0.1)
    else:
        raise TimeoutError("gitgate server did not start in time")
    return server, thread, url


@pytest.fixture
def git_server(repo_root):
    """Start a gitgate HTTP server in a background thread."""
    server, thread, url = _start_server(repo_root)
    yield url
    server.should_exit = True
    thread.join(timeout=10)


@pytest.fixture
def push_auth_server(repo_root):
    """Start a gitgate HTTP server that requires push authentication."""
    server, thread, url = _start_server(repo_root, "--require-push-auth")
    yield url
    server.should_exit = True
    thread.join(timeout=10)
