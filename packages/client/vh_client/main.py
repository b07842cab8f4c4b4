"""
Client entry point.

Loads configuration, configures logging, and runs the client.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from .app import VolunteerHubClient
from .config import ClientConfig, ClientSettings, load_config
from .models import Role


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )


async def _run_command(config: ClientConfig, settings: ClientSettings, args: argparse.Namespace) -> int:
    client = VolunteerHubClient(config)

    if args.command == "watch":
        await client.run_forever()
        return 0

    await client.start()
    try:
        if args.command in ("sign-in", "sign-up"):
            if not settings.email or not settings.password:
                print("Error: set VH_EMAIL and VH_PASSWORD", file=sys.stderr)
                return 1
            if args.command == "sign-up":
                await client.sign_up(settings.email, settings.password, Role(args.role))
            else:
                await client.sign_in(settings.email, settings.password)
        elif args.command == "sign-out":
            await client.sign_out()
        await client.session.drain()
        return 0 if client.session.session.identity or args.command == "sign-out" else 1
    finally:
        await client.stop()


def run() -> None:
    """CLI entry point for the client."""
    settings = ClientSettings()

    parser = argparse.ArgumentParser(description="Volunteer Hub client sync")
    parser.add_argument(
        "-c", "--config",
        default=settings.config_path,
        help="Path to configuration file (default: volunteer-hub.yaml)",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("watch", help="Restore the session and keep the dashboard in sync (default)")
    sub.add_parser("sign-in", help="Sign in with VH_EMAIL / VH_PASSWORD")
    sign_up = sub.add_parser("sign-up", help="Create an account with VH_EMAIL / VH_PASSWORD")
    sign_up.add_argument("--role", choices=[r.value for r in Role], default=Role.VOLUNTEER.value)
    sub.add_parser("sign-out", help="Sign out and forget the stored session")
    args = parser.parse_args()
    args.command = args.command or "watch"

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("client.config_loaded", config_path=args.config, command=args.command)

    try:
        code = asyncio.run(_run_command(config, settings, args))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
