"""CLI entry point for recipesync."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .app import RecipeSync
from .catalog import Source
from .config import load_config
from .sync import ShareOutcome


class JSONFormatter(logging.Formatter):
    """One JSON object per log line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        # Non-serializable message args fall back to their str()
        return json.dumps(entry, default=str)


LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def setup_logging(
    verbose: bool = False, log_level: str | None = None, json_output: bool = False
) -> None:
    """Configure the root logger for CLI runs.

    Args:
        verbose: Debug output; an explicit log_level wins over it.
        log_level: One of LOG_LEVELS.
        json_output: Emit JSONFormatter lines instead of plain text.
    """
    if log_level:
        level = LOG_LEVELS.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(
        JSONFormatter()
        if json_output
        else logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logging.basicConfig(level=level, handlers=[handler])

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _find_source(app: RecipeSync, name: str) -> Source | None:
    for source in app.coordinator.sources:
        if source.name == name or source.id.name == name:
            return source
    print(f"No collection named {name}", file=sys.stderr)
    return None


async def _run(args: argparse.Namespace, command) -> int:
    """Start the engine, run one command against it, and stop it."""
    app = RecipeSync(load_config(args.config))
    try:
        await app.start()
        return await command(app)
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 1
    finally:
        await app.stop()


async def cmd_status(args: argparse.Namespace) -> int:
    """Show account, collections and pending operations."""

    async def command(app: RecipeSync) -> int:
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "backend": app.config.remote.backend,
            **app.coordinator.status(),
            "collections": [
                {
                    "name": s.name,
                    "owner": s.owner,
                    "personal": s.is_personal,
                    "share": app.shares.share_state(s).status.value,
                }
                for s in app.coordinator.sources
            ],
        }

        if args.json:
            print(json.dumps(status_data, indent=2))
            return 0

        print(f"Account: {status_data['current_user'] or 'unknown'}")
        print(f"Remote: {'available' if status_data['remote_available'] else 'unavailable'}")
        print(f"Current collection: {status_data['current_source'] or '-'}")
        pending = status_data["pending"]
        print(
            f"Pending operations: {pending['pending']} pending, "
            f"{pending['failed']} failed, {pending['confirmed']} confirmed"
        )
        print(f"Collections ({len(status_data['collections'])}):")
        for entry in status_data["collections"]:
            kind = "personal" if entry["personal"] else f"shared by {entry['owner']}"
            print(f"  {entry['name']} ({kind}, share: {entry['share']})")
        if status_data["last_error"]:
            print(f"Last error: {status_data['last_error']}")
        return 0

    return await _run(args, command)


async def cmd_sync(args: argparse.Namespace) -> int:
    """Replay pending operations and refresh every collection."""

    async def command(app: RecipeSync) -> int:
        result = await app.coordinator.replay_pending()
        print(
            f"Replayed: {result['confirmed']} confirmed, "
            f"{result['failed']} failed, {result['pending']} still pending"
        )

        state = await app.coordinator.load_sources()
        for source in app.coordinator.sources:
            await app.coordinator.select_source(source)
            if args.refresh:
                await app.coordinator.load_recipes(source, skip_cache=True)
            recipes = app.coordinator.recipes(source)
            print(f"  {source.name}: {len(recipes)} recipes")
        if state.offline:
            print("Remote store unreachable; showing cached data")
        return 1 if result["failed"] else 0

    return await _run(args, command)


async def cmd_share(args: argparse.Namespace) -> int:
    """Share a personal collection and print its URL."""

    async def command(app: RecipeSync) -> int:
        source = _find_source(app, args.collection)
        if source is None:
            return 1
        result = await app.shares.create_share(source)
        if result.status == ShareOutcome.ACTIVE:
            print(f"Shared {source.name}: {result.url}")
        elif result.status == ShareOutcome.PENDING:
            print(f"Share for {source.name} is pending; run again later")
        else:
            print(f"Error: {result.error}", file=sys.stderr)
        return 0 if result.ok else 1

    return await _run(args, command)


async def cmd_unshare(args: argparse.Namespace) -> int:
    """Stop sharing an owned collection, or leave someone else's."""

    async def command(app: RecipeSync) -> int:
        source = _find_source(app, args.collection)
        if source is None:
            return 1
        if app.coordinator.resolver.is_owner(source):
            result = await app.shares.stop_sharing(source)
        else:
            result = await app.shares.leave_share(source)
        if not result.ok:
            print(f"Error: {result.error}", file=sys.stderr)
            return 1
        print(f"{source.name} is no longer shared")
        return 0

    return await _run(args, command)


async def cmd_accept(args: argparse.Namespace) -> int:
    """Accept a share URL."""

    async def command(app: RecipeSync) -> int:
        source = await app.shares.accept_share(args.url)
        if source is None:
            print(f"Error: {app.coordinator.last_error or 'share not available'}", file=sys.stderr)
            return 1
        print(f"Joined {source.name} (shared by {source.owner})")
        return 0

    return await _run(args, command)


async def cmd_reset(args: argparse.Namespace) -> int:
    """Delete all owned remote data and the local cache."""
    if not args.yes:
        print("Refusing to reset without --yes", file=sys.stderr)
        return 1

    async def command(app: RecipeSync) -> int:
        await app.coordinator.reset_account()
        print("Account reset")
        return 0

    return await _run(args, command)


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="recipesync",
        description="Offline-first recipe catalog sync with sharing",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=list(LOG_LEVELS),
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Sync command
    sync_parser = subparsers.add_parser(
        "sync", help="Replay pending changes and refresh collections"
    )
    sync_parser.add_argument(
        "--refresh",
        action="store_true",
        help="Discard cached recipes and images before reloading",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # Share commands
    share_parser = subparsers.add_parser("share", help="Share a collection")
    share_parser.add_argument("collection", help="Collection name or record name")
    share_parser.set_defaults(func=cmd_share)

    unshare_parser = subparsers.add_parser(
        "unshare", help="Stop sharing a collection, or leave a shared one"
    )
    unshare_parser.add_argument("collection", help="Collection name or record name")
    unshare_parser.set_defaults(func=cmd_unshare)

    accept_parser = subparsers.add_parser("accept", help="Accept a share URL")
    accept_parser.add_argument("url", help="Share URL")
    accept_parser.set_defaults(func=cmd_accept)

    # Reset command
    reset_parser = subparsers.add_parser("reset", help="Delete all owned data")
    reset_parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm the reset",
    )
    reset_parser.set_defaults(func=cmd_reset)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
