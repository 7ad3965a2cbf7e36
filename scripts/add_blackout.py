"""
Card Sync — Admin Script

Writes validated blackout windows and links catalog items to marketplace
listings. Windows are validated here (BlackoutWindowSpec) so the scheduler
never sees a malformed one.

Usage:
    python scripts/add_blackout.py blackout --day 0 --start 02:00 --end 04:00 --reason "maintenance"
    python scripts/add_blackout.py blackout --day 3 --start 12:00 --end 13:00 --venue snkrdunk
    python scripts/add_blackout.py source --item-id item-42 --ref https://snkrdunk.com/apparels/93021
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import time

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Resolve project root so this script can be run from any working directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.config import SyncMode, settings
from src.pipeline.errors import ConfigurationError
from src.pipeline.normalize import extract_product_ref
from src.pipeline.store import SqlSyncStore
from src.schedule.blackout import BlackoutWindowSpec

DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Manage Card Sync blackout windows and tracked sources.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/add_blackout.py blackout --day 0 --start 02:00 --end 04:00
  python scripts/add_blackout.py blackout --day 6 --start 22:00 --end 23:59 --venue snkrdunk
  python scripts/add_blackout.py source --item-id item-42 --ref 93021 --mode manual --interval 120
""",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    blackout = sub.add_parser("blackout", help="Add a weekly no-poll window.")
    blackout.add_argument(
        "--day",
        type=int,
        required=True,
        help="Day of week, 0=Sunday .. 6=Saturday.",
    )
    blackout.add_argument("--start", type=time.fromisoformat, required=True, help="HH:MM, local.")
    blackout.add_argument("--end", type=time.fromisoformat, required=True, help="HH:MM, local.")
    blackout.add_argument(
        "--venue",
        type=str,
        default=None,
        help="Limit the window to one venue (default: all venues).",
    )
    blackout.add_argument("--reason", type=str, default="")

    source = sub.add_parser("source", help="Link a catalog item to a marketplace listing.")
    source.add_argument("--item-id", type=str, required=True)
    source.add_argument("--ref", type=str, required=True, help="Listing URL or numeric id.")
    source.add_argument("--venue", type=str, default="snkrdunk")
    source.add_argument(
        "--mode",
        type=str,
        default=SyncMode.AUTO.value,
        choices=[m.value for m in SyncMode],
    )
    source.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Fixed interval in minutes (manual mode only).",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> str:
    """Execute the command; returns a human-readable summary."""
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    store = SqlSyncStore(session_factory)

    try:
        if args.command == "blackout":
            spec = BlackoutWindowSpec(
                day_of_week=args.day,
                start_time=args.start,
                end_time=args.end,
                scoped_source=args.venue,
                reason=args.reason,
            )
            window_id = await store.add_blackout_window(spec)
            scope = spec.scoped_source or "all venues"
            return (
                f"Blackout window {window_id}: {DAY_NAMES[spec.day_of_week]} "
                f"{spec.start_time:%H:%M}-{spec.end_time:%H:%M} ({scope})"
            )

        extract_product_ref(args.ref)
        tracked = await store.add_source(
            item_id=args.item_id,
            external_ref=args.ref,
            venue=args.venue,
            mode=SyncMode(args.mode),
            manual_interval_minutes=args.interval,
        )
        return f"Tracked source {tracked.id}: {tracked.item_id} -> {tracked.external_ref} (due now)"
    finally:
        await engine.dispose()


async def main() -> None:
    args = parse_args()
    try:
        summary = await run(args)
    except (ValidationError, ConfigurationError) as e:
        print(f"Rejected: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        print(f"Failed: {e}", file=sys.stderr)
        sys.exit(1)
    print(summary)


if __name__ == "__main__":
    asyncio.run(main())
