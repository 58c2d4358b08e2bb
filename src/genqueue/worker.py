"""Background worker: periodic recovery sweep and timer-driven dispatch."""

import argparse
import asyncio
import logging
import sys

from .config import Config
from .engine import GenerationEngine
from .mqtt import shutdown_broadcaster

logger = logging.getLogger("genqueue-worker")


async def run_pass(engine: GenerationEngine) -> int:
    """One sweep followed by dispatch for every model with queued work."""
    result = await engine.sweep()
    if result.reset:
        logger.info(result.message)
    dispatched = await engine.dispatch_all()
    if dispatched:
        logger.info(f"Dispatched {dispatched} queued item(s)")
    return dispatched


async def run_forever(engine: GenerationEngine, interval: float) -> None:
    while True:
        try:
            _ = await run_pass(engine)
        except Exception as e:
            # a failed pass leaves all state consistent; the next pass retries
            logger.exception(f"Worker pass failed: {e}")
        await asyncio.sleep(interval)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the generation queue worker")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument(
        "--interval",
        type=float,
        default=Config.WORKER_POLL_INTERVAL,
        help="Seconds between passes",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=Config.LOG_LEVEL)
    logger.info(f"Worker started (database={Config.DATABASE_URL}, interval={args.interval}s)")

    engine = GenerationEngine.from_config()
    try:
        if args.once:
            _ = asyncio.run(run_pass(engine))
        else:
            asyncio.run(run_forever(engine, args.interval))
    except KeyboardInterrupt:
        logger.info("Worker stopped")
    finally:
        shutdown_broadcaster()
    return 0


if __name__ == "__main__":
    sys.exit(main())
