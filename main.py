"""Command-line interface for the Plex account finder."""

from __future__ import annotations
import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Awaitable, Callable, Sequence, TypeVar


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv():
        return

    root = Path(__file__).resolve().parent
    venv_dir = root / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
        venv_dir / "Scripts" / "python.exe",
        venv_dir / "Scripts" / "python",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


if __name__ == "__main__":
    _bootstrap_virtualenv()

try:
    import httpx  # noqa: F401
except ImportError as exc:  # pragma: no cover - exercised in environments missing deps
    raise SystemExit(
        "The 'httpx' package is required. Run `pip install -e .` to install dependencies."
    ) from exc

from plex_finder.config import ConfigurationError, FinderConfig, load_config, resolve_config_path
from plex_finder.logs import configure_logging
from plex_finder.manager import DEFAULT_MAX_RESULTS, PlexAccountManager
from plex_finder.plex import CredentialFlowFailure

logger = logging.getLogger("plex_finder.main")

T = TypeVar("T")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plex account finder utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration file (default: $PLEX_FINDER_CONFIG or config/plex_finder.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP tool API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for the HTTP API (default: 8080)",
    )

    status_parser = subparsers.add_parser("status", help="Validate accounts and list servers")
    status_parser.add_argument("--refresh", action="store_true", help="Bypass cached data")
    status_parser.add_argument(
        "--include-user-count",
        action="store_true",
        help="Also count users across all servers",
    )

    lookup_parser = subparsers.add_parser("lookup", help="Search for a user across all servers")
    lookup_parser.add_argument("query", help="Email, username, or partial name to search for")
    lookup_parser.add_argument(
        "--max-results",
        type=int,
        default=DEFAULT_MAX_RESULTS,
        help=f"Maximum number of matches to show (default: {DEFAULT_MAX_RESULTS})",
    )
    lookup_parser.add_argument("--refresh", action="store_true", help="Bypass cached data")

    auth_parser = subparsers.add_parser("auth-url", help="Create a PIN and print the Plex login URL")
    auth_parser.add_argument(
        "--client-identifier",
        default=None,
        help="Client identifier to associate with the login request (random when omitted)",
    )

    pin_parser = subparsers.add_parser("check-pin", help="Poll the status of an authorization PIN")
    pin_parser.add_argument("pin_id", type=int, help="PIN identifier printed by auth-url")
    pin_parser.add_argument("client_identifier", help="Client identifier printed by auth-url")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "status", "lookup", "auth-url", "check-pin"}

    global_args: list[str] = []
    if len(args_list) >= 2 and args_list[0] == "--config":
        global_args, args_list = args_list[:2], args_list[2:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args([*global_args, *args_list])
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args([*global_args, *args_list])
            args_list = ["serve", *args_list]

    return parser.parse_args([*global_args, *args_list])


def _load(config_arg: str | None) -> FinderConfig:
    path = resolve_config_path(config_arg or os.getenv("PLEX_FINDER_CONFIG"))
    try:
        return load_config(path)
    except ConfigurationError as exc:
        raise SystemExit(f"Invalid configuration in {path}: {exc}") from exc


def _serve(config: FinderConfig, *, host: str, port: int) -> None:
    from plex_finder.service import create_app
    import uvicorn

    logger.info("Starting account finder API on http://%s:%s", host, port)
    app = create_app(config=config)
    log_level = "warning" if config.log_level == "warn" else config.log_level
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def _run_with_manager(config: FinderConfig, action: Callable[[PlexAccountManager], Awaitable[T]]) -> T:
    async def runner() -> T:
        manager = PlexAccountManager.from_config(config)
        try:
            return await action(manager)
        finally:
            await manager.aclose()

    return asyncio.run(runner())


def _print_status(config: FinderConfig, *, refresh: bool, include_user_count: bool) -> None:
    from plex_finder.service import format_status_summary

    report = _run_with_manager(
        config,
        lambda manager: manager.status(refresh=refresh, include_user_count=include_user_count),
    )
    print(format_status_summary(report))
    for account in report.accounts:
        detail = f"{account.username or '?'} <{account.email or 'no email'}>" if account.valid else "invalid token"
        print(f"- {account.label}: {detail}")
    for server in report.servers:
        print(f"- {server.friendly_name} [{server.machine_identifier}] via {server.uri} (account: {server.account_label})")


def _print_lookup(config: FinderConfig, *, query: str, max_results: int, refresh: bool) -> None:
    from plex_finder.service import format_lookup_summary

    result = _run_with_manager(
        config,
        lambda manager: manager.search_users(query, max_results=max_results, refresh=refresh),
    )
    print(format_lookup_summary(result))


def _print_auth_url(config: FinderConfig, *, client_identifier: str | None) -> None:
    from plex_finder.service import format_auth_instructions

    result = _run_with_manager(config, lambda manager: manager.generate_auth_pin(client_identifier))
    print(format_auth_instructions(result))


def _print_pin_status(config: FinderConfig, *, pin_id: int, client_identifier: str) -> None:
    from plex_finder.service import format_pin_status

    pin = _run_with_manager(
        config,
        lambda manager: manager.check_auth_pin_status(pin_id, client_identifier),
    )
    print(format_pin_status(pin))
    if pin.auth_token:
        print(f"Auth Token: {pin.auth_token}")


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    args = _parse_args(argv)
    config = _load(args.config)
    configure_logging(config.log_level, secrets=config.secrets())

    if not config.accounts and args.command in {"status", "lookup"}:
        logger.warning("No Plex accounts configured; results will be empty.")

    try:
        if args.command == "serve":
            _serve(config, host=args.host, port=args.port)
        elif args.command == "status":
            _print_status(config, refresh=args.refresh, include_user_count=args.include_user_count)
        elif args.command == "lookup":
            _print_lookup(config, query=args.query, max_results=args.max_results, refresh=args.refresh)
        elif args.command == "auth-url":
            _print_auth_url(config, client_identifier=args.client_identifier)
        elif args.command == "check-pin":
            _print_pin_status(config, pin_id=args.pin_id, client_identifier=args.client_identifier)
    except CredentialFlowFailure as exc:
        raise SystemExit(str(exc)) from exc


if __name__ == "__main__":
    main()
