#!/usr/bin/env python3
"""
playsync command line interface.

Usage:
    python -m playsync --content            # Sync public content only
    python -m playsync --sync --token TOKEN # Full sync (or set PLAYSYNC_TOKEN)
    python -m playsync --status             # Show sync status
    python -m playsync --clear              # Wipe the local cache and queue
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone

from .config import get_settings
from .engine import sync_session
from .remote import HttpRemoteClient

logger = logging.getLogger(__name__)


def _format_time(timestamp: float) -> str:
    if not timestamp:
        return "never"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(timespec="seconds")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Offline content and progress sync client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--content", action="store_true", help="Sync public content only")
    parser.add_argument("--sync", action="store_true", help="Perform a full sync")
    parser.add_argument("--token", default=None, help="Session token for --sync")
    parser.add_argument("--force", action="store_true", help="Ignore the throttle window")
    parser.add_argument("--status", action="store_true", help="Show sync status")
    parser.add_argument("--levels", action="store_true", help="List cached levels and their state")
    parser.add_argument("--clear", action="store_true", help="Clear cached data and pending mutations")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser


async def main(argv=None) -> int:
    """CLI entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = get_settings()
    exit_code = 0

    async with sync_session(settings) as engine:
        if args.clear:
            engine.clear_local_state()
            print("Local cache cleared")

        if args.content:
            changed = await engine.sync_content_only(force=args.force)
            print(f"Content sync: {'updated' if changed else 'no changes'}")

        if args.sync:
            token = args.token or os.environ.get("PLAYSYNC_TOKEN")
            if not token:
                print("A session token is required for --sync (use --token or PLAYSYNC_TOKEN)")
                return 2

            remote = HttpRemoteClient(
                settings.rpc_base_url,
                timeout=settings.request_timeout,
                max_retries=settings.max_retries,
                base_retry_delay=settings.base_retry_delay,
                max_retry_delay=settings.max_retry_delay,
            )
            try:
                result = await engine.sync(remote, token, force=args.force)
            finally:
                await remote.close()

            if result.skipped:
                print("Sync skipped (already running or throttled; use --force)")
            else:
                print(f"Sync finished in {result.duration_seconds:.2f}s")
            if result.errors:
                exit_code = 1
                print("Errors:")
                for error in result.errors:
                    print(f"  - {error}")

        if args.levels:
            for view in engine.level_views():
                print(f"{view.level_number:>3}  {view.state.value:<12} {view.name}")

        if args.status:
            status = engine.get_sync_status()
            print("\n=== Sync Status ===")
            print(f"Last sync: {_format_time(status.last_sync_time)}")
            print(f"Cached levels: {status.cached_level_count}")
            print(f"Queued mutations: {status.queue_length}")
            print(f"Dropped mutations: {status.dropped_mutations}")
            print(f"Last error: {status.last_error or '-'}")
            if args.verbose:
                print(json.dumps(status.to_dict(), indent=2))

    return exit_code


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
