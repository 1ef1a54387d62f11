"""Provide the server."""

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from os import environ as env
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from gitgate import __version__
from gitgate.core.auth import JWTIdentityProvider, KeydirSSHAuthenticator
from gitgate.git.http import create_git_router
from gitgate.git.locator import RepositoryLocator
from gitgate.git.process import ProcessBridge
from gitgate.git.ssh import SSHCommandHandler
from gitgate.ssh_server import SSHTransportListener
from gitgate.utils import GZipMiddleware

LOGLEVEL = os.environ.get("GITGATE_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("server")
logger.setLevel(LOGLEVEL)

ENV_FILE = find_dotenv()
if ENV_FILE:
    load_dotenv(ENV_FILE)

ALLOW_HEADERS = [
    "Content-Type",
    "Content-Encoding",
    "Authorization",
    "Accept",
    "Accept-Encoding",
    "Origin",
    "Git-Protocol",
]
ALLOW_METHODS = ["GET", "POST", "OPTIONS"]
# streamed Git protocol responses are never compressed
GIT_TRANSPORT_SUFFIXES = ("/info/refs", "/git-upload-pack", "/git-receive-pack")


def create_application(args):
    """Create a gitgate application."""
    if args.from_env:
        logger.info("Loading arguments from environment variables")
        _args = get_args_from_env()
        # copy the _args to args
        for key, value in _args.__dict__.items():
            setattr(args, key, value)

    if isinstance(args.allow_origins, str):
        args.allow_origins = args.allow_origins.split(",")

    repo_root = Path(args.repo_root)
    repo_root.mkdir(parents=True, exist_ok=True)

    identity_provider = JWTIdentityProvider()
    locator = RepositoryLocator(repo_root, identity_provider=identity_provider)
    bridge = ProcessBridge(git_executable=args.git_executable)

    ssh_listener = None
    if not args.disable_ssh:
        ssh_listener = SSHTransportListener(
            SSHCommandHandler(locator, bridge, chunk_size=args.chunk_size),
            KeydirSSHAuthenticator(identity_provider, keydir=args.ssh_keydir),
            host_key_path=args.ssh_host_key_path,
            host=args.ssh_host,
            port=args.ssh_port,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if ssh_listener:
            # fails hard when no host key can be loaded or generated
            await ssh_listener.start()
        yield
        logger.info("Shutting down gitgate server...")
        if ssh_listener:
            await ssh_listener.stop()

    application = FastAPI(
        title="gitgate",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url=None,
        description="Git Smart HTTP and SSH gateway for bare repositories",
        version=__version__,
    )
    application.add_middleware(
        GZipMiddleware, minimum_size=1000, exclude_suffixes=GIT_TRANSPORT_SUFFIXES
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=args.allow_origins,
        allow_methods=ALLOW_METHODS,
        allow_headers=ALLOW_HEADERS,
        allow_credentials=True,
    )

    @application.get("/api/check", response_class=PlainTextResponse)
    async def check():
        return "Hello"

    application.include_router(
        create_git_router(
            locator,
            bridge,
            identity_provider=identity_provider,
            require_push_auth=args.require_push_auth,
            chunk_size=args.chunk_size,
        )
    )
    application.state.locator = locator
    application.state.bridge = bridge
    application.state.ssh_listener = ssh_listener

    logger.info(f"Serving repositories from {locator.root}")
    if args.host in ("127.0.0.1", "localhost"):
        logger.info(
            "***Note: If you want to enable access from another host, "
            "please start with `--host=0.0.0.0`.***"
        )
    return application


def get_args_from_env():
    """Read the server arguments from environment variables."""
    parser = get_argparser(add_help=False)
    args = parser.parse_args([])

    # Get the argument types from the parser
    arg_types = {
        action.dest: action.type
        for action in parser._actions
        if action.type is not None
    }
    arg_bools = {
        action.dest
        for action in parser._actions
        if isinstance(action, argparse._StoreTrueAction)
    }

    for arg_name in vars(args):
        env_var = "GITGATE_" + arg_name.upper().replace("-", "_")
        if env_var in env:
            value = env[env_var]

            # Handle boolean flags
            if arg_name in arg_bools:
                value = value.lower() in ("true", "1", "yes", "y", "on")
            elif arg_name in arg_types:
                try:
                    value = arg_types[arg_name](value)
                except (ValueError, TypeError) as e:
                    logger.warning(
                        f"Failed to convert environment variable {env_var}={value} "
                        f"to type {arg_types[arg_name]}: {str(e)}"
                    )
                    continue

            setattr(args, arg_name, value)

    return args


def get_argparser(add_help=True):
    """Return the argument parser."""
    parser = argparse.ArgumentParser(add_help=add_help)
    parser.add_argument(
        "--from-env",
        action="store_true",
        help="load arguments from environment variables, the environment variables should be in the format of GITGATE_<ARG_NAME_UPPER>",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="host for the HTTP server",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=4642,
        help="port for the HTTP server",
    )
    parser.add_argument(
        "--allow-origins",
        type=str,
        default="*",
        help="comma separated CORS origins",
    )
    parser.add_argument(
        "--repo-root",
        type=str,
        default="./repositories",
        help="directory holding the bare repositories as <owner>/<name>.git",
    )
    parser.add_argument(
        "--git-executable",
        type=str,
        default="git",
        help="the git binary used to run upload-pack and receive-pack",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=65536,
        help="maximum number of bytes per streamed read",
    )
    parser.add_argument(
        "--require-push-auth",
        action="store_true",
        help="only accept HTTP pushes with a token of the repository owner",
    )
    parser.add_argument(
        "--disable-ssh",
        action="store_true",
        help="do not start the SSH server",
    )
    parser.add_argument(
        "--ssh-host",
        type=str,
        default="0.0.0.0",
        help="host for the SSH server",
    )
    parser.add_argument(
        "--ssh-port",
        type=int,
        default=2222,
        help="port for the SSH server",
    )
    parser.add_argument(
        "--ssh-host-key-path",
        type=str,
        default=str(Path.cwd() / "ssh_host_rsa_key"),
        help="SSH host private key, generated when missing or invalid",
    )
    parser.add_argument(
        "--ssh-keydir",
        type=str,
        default=None,
        help="directory of <user>.pub authorized keys files for SSH public key login",
    )
    return parser


if __name__ == "__main__":
    import uvicorn

    arg_parser = get_argparser()
    opt = arg_parser.parse_args()
    app = create_application(opt)
    uvicorn.run(app, host=opt.host, port=int(opt.port))
