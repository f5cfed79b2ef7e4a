import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Ensure repo root is on PYTHONPATH so `import services.*` works when running from /scripts
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import CHANNEL_KEY, MARKETPLACE_ID, POLL_MAX_WAIT_SECONDS
from services.report_batches import SNAPSHOT_REPORT_TYPES, BatchNotFoundError, SnapshotRequestError, request_snapshot
from services.report_poller import poll_until_terminal

LOGGER = logging.getLogger("pull_inventory_snapshot")

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_STILL_PROCESSING = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Request an FBA inventory snapshot, poll it to completion and ingest its rows."
    )
    parser.add_argument(
        "--marketplace",
        type=str,
        default=MARKETPLACE_ID,
        help=f"Marketplace ID (default: {MARKETPLACE_ID})",
    )
    parser.add_argument(
        "--channel",
        type=str,
        default=CHANNEL_KEY,
        help=f"Channel key (default: {CHANNEL_KEY})",
    )
    parser.add_argument(
        "--kind",
        choices=sorted(SNAPSHOT_REPORT_TYPES),
        default="per-location",
        help="Snapshot kind (default: per-location)",
    )
    parser.add_argument(
        "--max-wait",
        type=int,
        default=POLL_MAX_WAIT_SECONDS,
        help=f"Max seconds to keep polling before leaving the batch processing (default: {POLL_MAX_WAIT_SECONDS})",
    )
    parser.add_argument(
        "--batch-id",
        type=str,
        help="Resume polling an existing batch instead of requesting a new report.",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress INFO logs; only warnings/errors.",
    )
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> Dict[str, Any]:
    batch_id = args.batch_id
    if not batch_id:
        batch_id = request_snapshot(args.channel, args.marketplace, args.kind)
        print(f"Requested {args.kind} snapshot: batch {batch_id}")
    return poll_until_terminal(batch_id, max_wait_seconds=args.max_wait)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    try:
        result = run(args)
    except SnapshotRequestError as exc:
        print(f"Report request failed (batch {exc.batch_id}): {exc}")
        return EXIT_FAILED
    except BatchNotFoundError as exc:
        print(f"Error: {exc}")
        return EXIT_FAILED

    status = result.get("status")
    print(
        f"Batch {result.get('batch_id')}: {status} | rows: {result.get('row_count') or 0} | "
        f"matched: {result.get('matched') or 0} | unmatched: {result.get('unmatched') or 0} | "
        f"polls: {result.get('attempts')}"
    )
    if status == "completed":
        return EXIT_COMPLETED
    if status == "failed":
        print(f"Error: {result.get('message')}")
        return EXIT_FAILED
    print(f"Still processing; resume with --batch-id {result.get('batch_id')}")
    return EXIT_STILL_PROCESSING


if __name__ == "__main__":
    sys.exit(main())
