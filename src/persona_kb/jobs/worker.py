"""
Background worker entry point.

Run with `python -m persona_kb.jobs.worker`. Polls the job queue and indexes
uploaded files until SIGINT/SIGTERM, then stops gracefully.
"""

import argparse
import asyncio
import signal

from loguru import logger

from ..log_config import init_logger
from ..service_context import ServiceContext

SHUTDOWN_TIMEOUT_SECONDS = 30


async def run_worker() -> None:
    context = ServiceContext.create()
    await context.initialize()
    await context.scheduler.register_index_file_handler()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    logger.info("🚀 Worker started, waiting for jobs")
    await stop.wait()

    logger.info("🛑 Shutting down worker")
    context.scheduler.shutdown()
    await context.queue.stop(graceful=True, timeout=SHUTDOWN_TIMEOUT_SECONDS)
    await context.embedder.close()
    logger.info("👋 Worker stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Persona KB indexing worker")
    parser.add_argument("--log-level", default="INFO", help="Console log level")
    args = parser.parse_args()

    init_logger(args.log_level)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
