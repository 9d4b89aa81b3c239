"""Demo entry point: run a heartbeat task through the hybrid runner.

Usage examples:
    # Heartbeat every 60 seconds, first run right away
    python -m hybrid_runner --interval 60 --now

    # Single delayed run, then exit once it has been removed
    python -m hybrid_runner --interval 5 --one-time

    # List what is registered in the database and exit
    python -m hybrid_runner --list
"""

import argparse
import asyncio
import logging
from datetime import timedelta
from pathlib import Path

from hybrid_runner.config import settings
from hybrid_runner.scheduler import HybridRunner, OverlapPolicy

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)

HEARTBEAT_TASK = "heartbeat"


async def heartbeat() -> bool:
    """Example task callback."""
    logger.info("Heartbeat")
    return True


async def _run(args: argparse.Namespace) -> None:
    runner = HybridRunner.create(args.db)
    await runner.initialize()
    try:
        if args.list:
            for task in await runner.get_registered_tasks():
                print(task)
            return

        await runner.register_task(
            HEARTBEAT_TASK,
            heartbeat,
            timedelta(seconds=args.interval),
            overlap_policy=OverlapPolicy(args.policy),
            run_immediately=args.now,
            is_one_time=args.one_time,
        )
        while True:
            await asyncio.sleep(1)
            if args.one_time and not any(
                t.name == HEARTBEAT_TASK for t in await runner.get_registered_tasks()
            ):
                logger.info("One-time heartbeat finished")
                return
    finally:
        await runner.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a heartbeat task on the hybrid runner")
    parser.add_argument("--db", type=Path, default=None, help="SQLite database path")
    parser.add_argument("--interval", type=float, default=60.0, help="Interval in seconds")
    parser.add_argument("--now", action="store_true", help="Run the first heartbeat right away")
    parser.add_argument("--one-time", action="store_true", help="Run once, then exit")
    parser.add_argument(
        "--policy",
        choices=[p.value for p in OverlapPolicy],
        default=OverlapPolicy.REPLACE.value,
        help="Overlap policy",
    )
    parser.add_argument("--list", action="store_true", help="List registered tasks and exit")
    args = parser.parse_args()

    logger.info("Starting hybrid runner (db=%s)", args.db or settings.database_path)
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
