"""
Sync engine entry point.

Usage:
    python main.py

Reads configuration from the environment (and .env), validates it, starts
the scheduler and runs until SIGINT/SIGTERM.
"""
import asyncio
import signal
import sys

from shopsync.config import ConfigurationError, config, validate_config
from shopsync.engine import get_engine
from shopsync.observability import get_logger, setup_logging

logger = get_logger("shopsync.main")


async def run() -> None:
    engine = get_engine()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await engine.start()
    try:
        await stop.wait()
        logger.info("Shutdown signal received")
    finally:
        await engine.stop()


def main() -> int:
    setup_logging(level=config.log_level, json_format=config.log_format == "json")

    try:
        validate_config()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    asyncio.run(run())
    return 0


if __name__ == "__main__":
    sys.exit(main())
