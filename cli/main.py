"""CLI entry point and argument parsing"""

import argparse
import asyncio
import sys

from rich.console import Console

import settings
from session_auth import SessionContext
from session_auth.pkce import DEFAULT_VERIFIER_LENGTH
from cli.auth_handlers import HANDLERS
from cli.debug_setup import setup_logging


console = Console()

# Commands that never need a fresh access token; no proactive refresh for them
LOCAL_COMMANDS = ("status", "inspect", "pkce", "health")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser"""
    parser = argparse.ArgumentParser(description="JWT session client CLI")
    parser.add_argument("--debug", "-d", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--api-url",
        default=None,
        help=f"Override backend API root (default: {settings.API_BASE_URL})"
    )

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Show the stored session")

    login = subparsers.add_parser("login", help="Log in with email and password")
    login.add_argument("--email", "-e", default=None, help="Account email (prompted if omitted)")
    login.add_argument("--password", "-p", default=None, help="Account password (prompted if omitted)")

    subparsers.add_parser("refresh", help="Force a token refresh")

    logout = subparsers.add_parser("logout", help="Log out and clear the stored session")
    logout.add_argument("--all", action="store_true", help="Revoke every session of this user")

    subparsers.add_parser("authorize", help="Start the OAuth2 PKCE authorization flow")

    exchange = subparsers.add_parser("exchange", help="Exchange an authorization code for tokens")
    exchange.add_argument("code", help="Authorization code from the callback")
    exchange.add_argument("--state", default=None, help="State from the callback")

    inspect = subparsers.add_parser("inspect", help="Decode a JWT (no signature verification)")
    inspect.add_argument("token", nargs="?", default=None, help="Token to decode (default: stored access token)")

    pkce = subparsers.add_parser("pkce", help="Generate a PKCE verifier and challenge")
    pkce.add_argument("--length", "-l", type=int, default=DEFAULT_VERIFIER_LENGTH, help="Verifier length (43-128)")
    pkce.add_argument("--method", "-m", default="S256", choices=["S256", "plain"], help="Challenge method")

    subparsers.add_parser("health", help="Check the backend health endpoint")

    return parser


async def run(args) -> int:
    """Run one command inside a session context"""
    kwargs = {"base_url": args.api_url} if args.api_url else {}
    kwargs["auto_refresh"] = args.command not in LOCAL_COMMANDS
    async with SessionContext.from_settings(**kwargs) as context:
        return await HANDLERS[args.command](context, console, args)


def main():
    """Entry point for the CLI"""
    parser = build_parser()
    args = parser.parse_args()
    if args.command is None:
        args.command = "status"

    setup_logging(args.debug)

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Fatal error:[/red] {e}")
        if args.debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
