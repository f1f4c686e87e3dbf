"""
On-demand sync from the command line.

Usage:
    python -m exchangesync sync                         # all types, auto mode
    python -m exchangesync sync --entity matters --mode full
    python -m exchangesync sync --entity contacts --limit 25   # sample run

Ctrl+C (or SIGTERM) pauses after the record in flight; the next run of the
same entity type resumes from the page it stopped on.
"""
import argparse
import asyncio
import logging
import sys
from typing import Dict, List, Optional

from exchangesync.practicepanther.activity_log import ERROR, PAUSED
from exchangesync.practicepanther.entities import SYNC_ORDER
from exchangesync.practicepanther.errors import SyncAlreadyRunning
from exchangesync.practicepanther.sync_service import FULL, INCREMENTAL, SyncResult

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m exchangesync sync",
        description="Sync PracticePanther data into the local database",
    )
    parser.add_argument(
        "--entity",
        choices=SYNC_ORDER,
        default=None,
        help="Entity type to sync (default: all, in dependency order)",
    )
    parser.add_argument(
        "--mode",
        choices=(FULL, INCREMENTAL),
        default=None,
        help="Fetch mode (default: incremental when a previous run exists)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Stop after N records (requires --entity; does not advance the watermark)",
    )
    return parser


async def _sync(entity: Optional[str], mode: Optional[str], limit: Optional[int]) -> List[SyncResult]:
    from exchangesync.db.engine import get_engine
    from exchangesync.practicepanther.sync_service import build_sync_service

    service = build_sync_service(get_engine())
    service.install_signal_handlers()
    try:
        if entity:
            result = await service.sync_entity_type(
                entity, triggered_by="cli", mode=mode, limit=limit
            )
            return [result]
        results: Dict[str, SyncResult] = await service.sync_all(triggered_by="cli", mode=mode)
        return list(results.values())
    finally:
        await service.aclose()


def _print_results(results: List[SyncResult]) -> None:
    for result in results:
        stats = result.statistics
        print(
            f"{result.entity_type:<10} {result.status:<8} ({result.mode}) "
            f"processed={stats.processed} created={stats.created} "
            f"updated={stats.updated} skipped={stats.skipped} errors={stats.errors}"
        )
        for sample in stats.error_samples:
            print(f"    ! {sample['external_id']} [{sample['stage']}] {sample['message']}")
        if result.error_message:
            print(f"    ✗ {result.error_message}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.limit is not None and not args.entity:
        print("Error: --limit requires --entity.")
        return 2
    if args.limit is not None and args.limit < 1:
        print("Error: --limit must be positive.")
        return 2

    try:
        results = asyncio.run(_sync(args.entity, args.mode, args.limit))
    except SyncAlreadyRunning as exc:
        print(f"Error: {exc}. Wait for it to finish, or retry once it is stale.")
        return 1
    _print_results(results)
    if any(r.status == ERROR for r in results):
        return 1
    if any(r.status == PAUSED for r in results):
        print("\nPaused. Run the same command again to resume.")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(main())
