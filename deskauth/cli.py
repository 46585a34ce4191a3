"""Command-line interface for deskauth."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .exceptions import DeskAuthException
from .log import configure, enable_debug


if TYPE_CHECKING:
    from collections.abc import Coroutine, Sequence

    from .config import DeskAuthSettings


def main(argv: Sequence[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="deskauth",
        description="Desktop OAuth2 account connection tools",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("providers", help="List registered provider profiles")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_group.add_argument(
        "--sources",
        action="store_true",
        help="Show configuration file sources",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Write output to file instead of stdout",
    )

    login_parser = subparsers.add_parser("login", help="Connect an account in the browser")
    login_parser.add_argument("provider", help="Provider profile name (e.g. gmail)")
    login_parser.add_argument(
        "--timeout", type=float, default=None, help="Seconds to wait for the browser redirect"
    )
    login_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the authorization URL instead of opening a browser",
    )

    accounts_parser = subparsers.add_parser("accounts", help="List stored accounts")
    accounts_parser.add_argument("provider", help="Provider profile name")

    logout_parser = subparsers.add_parser("logout", help="Disconnect an account")
    logout_parser.add_argument("provider", help="Provider profile name")
    logout_parser.add_argument("account_id", help="Account id (e.g. gmail_1234)")

    args = parser.parse_args(argv)

    from .config import get_settings

    try:
        settings = get_settings()
    except ValueError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        return 1
    configure(settings.log)
    if args.debug:
        enable_debug()

    if args.command == "providers":
        return handle_providers()
    if args.command == "config":
        return handle_config(args, settings)
    if args.command == "login":
        return _run(handle_login(args, settings))
    if args.command == "accounts":
        return _run(handle_accounts(args, settings))
    if args.command == "logout":
        return _run(handle_logout(args, settings))
    parser.print_help()
    return 0


def _run(coro: Coroutine[Any, Any, int]) -> int:
    """Run a command coroutine, reporting deskauth errors on stderr."""
    try:
        return asyncio.run(coro)
    except DeskAuthException as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return 130


def handle_providers() -> int:
    """Print the registered provider profiles."""
    from .providers import available_providers, get_profile

    print(f"{'Name':<12} {'Display name':<20} {'Port':<6} {'Revocation'}")
    print("-" * 60)
    for name in available_providers():
        profile = get_profile(name)
        revocation = "yes" if profile.revocation_url else "no"
        print(f"{name:<12} {profile.display_name:<20} {profile.redirect_port:<6} {revocation}")
    return 0


def handle_config(args: argparse.Namespace, settings: DeskAuthSettings) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.
    settings : DeskAuthSettings
        The effective settings.

    Returns
    -------
    int
        Exit code.
    """
    if args.sources:
        return show_config_sources(settings)

    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return 0


def show_config_sources(settings: DeskAuthSettings) -> int:
    """Show configuration file sources and their status.

    Returns
    -------
    int
        Exit code.
    """
    loaded = {path.resolve() for path in settings.sources}
    candidates = [
        ("pyproject.toml [tool.deskauth]", Path("pyproject.toml")),
        ("./deskauth.toml", Path("deskauth.toml")),
        ("User config", Path("~/.config/deskauth/config.toml").expanduser()),
    ]
    env_file = os.environ.get("DESKAUTH_CONFIG_FILE")
    if env_file:
        candidates.append(("DESKAUTH_CONFIG_FILE", Path(env_file)))

    print("Configuration Sources (in order of precedence):\n")
    print(f"{'Source':<34} {'Status':<14} {'Path'}")
    print("-" * 80)
    print(f"{'Built-in defaults':<34} {'active':<14}")
    for name, path in candidates:
        status = "loaded" if path.resolve() in loaded else "not found"
        print(f"{name:<34} {status:<14} {path}")

    env_vars = sorted(k for k in os.environ if k.startswith("DESKAUTH_"))
    status = f"{len(env_vars)} vars" if env_vars else "none set"
    shown = ", ".join(env_vars[:3]) + ("..." if len(env_vars) > 3 else "")
    print(f"{'Environment variables':<34} {status:<14} {shown}")
    return 0


def _format_expiry(expires_at: int) -> str:
    return datetime.fromtimestamp(expires_at / 1000, tz=timezone.utc).isoformat(
        timespec="seconds"
    )


async def handle_login(args: argparse.Namespace, settings: DeskAuthSettings) -> int:
    """Run a browser flow and print the connected account."""
    from .manager import AuthenticationManager

    def print_url(url: str) -> bool:
        print(f"Open this URL to sign in:\n\n  {url}\n")
        return True

    manager = AuthenticationManager(
        args.provider,
        settings=settings,
        open_browser=print_url if args.no_browser else None,
        auth_timeout=args.timeout,
    )
    async with manager:
        print(f"Waiting for {manager.profile.display_name} sign-in...")
        account = await manager.start_flow()
        print(f"Connected {account.email or account.display_name} as {account.id}")
        print(f"Access token expires {_format_expiry(account.tokens.expires_at)}")
    return 0


async def handle_accounts(args: argparse.Namespace, settings: DeskAuthSettings) -> int:
    """List stored account ids for a provider with token expiry."""
    from .providers import get_profile
    from .token_store import create_token_store

    profile = get_profile(args.provider)
    store = create_token_store(settings.store.backend, service_name=settings.store.service_name)
    prefix = f"{profile.name}_"
    stored = {k: v for k, v in (await store.get_all()).items() if k.startswith(prefix)}
    if not stored:
        print(f"No stored {profile.name} accounts.")
        return 0
    for account_id, tokens in stored.items():
        refresh = "refreshable" if tokens.refresh_token else "no refresh token"
        print(f"{account_id:<40} expires {_format_expiry(tokens.expires_at)} ({refresh})")
    return 0


async def handle_logout(args: argparse.Namespace, settings: DeskAuthSettings) -> int:
    """Disconnect a stored account."""
    from .manager import AuthenticationManager

    async with AuthenticationManager(args.provider, settings=settings) as manager:
        await manager.initialize()
        if await manager.remove_account(args.account_id):
            print(f"Removed {args.account_id}")
        else:
            print(f"{args.account_id} was not connected; cleared any stored tokens")
    return 0
