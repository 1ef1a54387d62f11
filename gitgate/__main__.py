"""Main module for gitgate."""

import argparse
import sys

import uvicorn

from gitgate.core.auth import generate_auth_token
from gitgate.server import create_application, get_argparser


def create_cli_parser():
    """Create the CLI parser of the subcommands."""
    parser = argparse.ArgumentParser(
        prog="gitgate", description="gitgate server and CLI tools"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    token_parser = subparsers.add_parser(
        "generate-token", help="Generate authentication token"
    )
    token_parser.add_argument(
        "--user",
        type=str,
        required=True,
        help="User name the token identifies, i.e. the owner of its repositories",
    )
    token_parser.add_argument(
        "--expires-in",
        type=int,
        default=3600,
        help="Token expiration time in seconds (default: 3600)",
    )
    return parser


def generate_token_command(args):
    """Handle the generate-token command."""
    token = generate_auth_token(args.user, args.expires_in)
    print(f"Generated token for user '{args.user}':")
    print(f"  Expires in: {args.expires_in} seconds")
    print("\nToken:")
    print(token)
    return token


def main():
    """Main entry point for the CLI."""
    # If no arguments provided, automatically add --from-env
    if len(sys.argv) == 1:
        sys.argv.append("--from-env")

    if sys.argv[1] == "generate-token":
        parser = create_cli_parser()
        args = parser.parse_args()
        generate_token_command(args)
        return

    if sys.argv[1] == "server":
        sys.argv.pop(1)

    arg_parser = get_argparser()
    opt = arg_parser.parse_args()
    app = create_application(opt)
    uvicorn.run(app, host=opt.host, port=int(opt.port))


if __name__ == "__main__":
    main()
