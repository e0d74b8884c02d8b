"""
Script to run a reconciliation from the command line.

Batched mode keeps invoking the next batch until the run completes, which
makes it usable where a single call would exceed the request deadline.
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import build_engine, build_session_maker
from core.logging import setup_logging
from core.exceptions import SyncException
from models.base import SyncMode
from reconciliation.runner import SyncRunner, describe_result
from reconciliation.sources.csv_source import CSVSource
from reconciliation.sources.sheets_source import GoogleSheetsSource

setup_logging()
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Reconcile the survey sheets into the database")
    parser.add_argument("--mode", choices=[m.value for m in SyncMode], default=SyncMode.INCREMENTAL.value)
    parser.add_argument("--batch-size", type=int, default=settings.SYNC_BATCH_SIZE)
    parser.add_argument("--batch-number", type=int, default=1)
    parser.add_argument("--csv", nargs=2, metavar=("DETAIL_CSV", "SUMMARY_CSV"),
                        help="Read CSV exports instead of the Sheets API")
    parser.add_argument("--no-deadline", action="store_true",
                        help="Run without the wall-clock deadline")
    return parser.parse_args(argv)


async def run_sync(args) -> int:
    """Run the sync; returns the process exit code"""
    engine = build_engine(settings.DATABASE_URL)
    session_maker = build_session_maker(engine)

    if args.csv:
        source = CSVSource(args.csv[0], args.csv[1])
    else:
        source = GoogleSheetsSource()

    runner = SyncRunner(session_maker, source=source)
    overrides = {"deadline_seconds": None} if args.no_deadline else {}

    try:
        batch_number = args.batch_number
        while True:
            result = await runner.run(
                mode=SyncMode(args.mode),
                batch_number=batch_number,
                batch_size=args.batch_size,
                **overrides
            )
            logger.info(describe_result(result))

            if result.completed or args.mode != SyncMode.BATCHED.value:
                break
            batch_number = result.next_batch_number

        return 0 if result.errors == 0 else 2

    except SyncException as e:
        logger.error(f"Sync failed: {e}")
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(run_sync(parse_args())))
