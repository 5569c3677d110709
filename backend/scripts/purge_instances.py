"""Remove finished orchestration instances older than a number of days."""

from __future__ import annotations

import argparse
from datetime import timedelta

from durable.container import build_container
from durable.env import load_dotenv_if_present
from durable.schemas import utc_now
from durable.settings import get_settings


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Delete finished instances last updated more than N days ago."
    )
    parser.add_argument(
        "--days",
        type=int,
        default=7,
        help="Delete instances that finished more than this many days ago",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print matching instances without deleting them",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    load_dotenv_if_present()
    container = build_container(settings=get_settings())
    cutoff = utc_now() - timedelta(days=max(args.days, 0))
    purged = container.engine.purge_instances(finished_before=cutoff, dry_run=args.dry_run)
    for instance_id in purged:
        print(f"{'[dry-run] would delete' if args.dry_run else 'Deleted'} {instance_id}")
    print(
        f"{'Would remove' if args.dry_run else 'Removed'} {len(purged)} "
        f"instance{'s' if len(purged) != 1 else ''} older than {args.days} day(s)."
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
