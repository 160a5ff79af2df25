"""Main entry point for lodestar.

Initializes logging in two phases (defaults then config-driven),
creates the Engine, and runs until SIGTERM/SIGINT. Supports both Unix
signal handlers and the Windows SIGINT fallback.

Key functions:
    main: Async entry point -- sets up logging, config, engine and
        signal handlers, then waits for shutdown.
    run: Synchronous wrapper that calls asyncio.run(main()).
"""

import asyncio
import signal
import sys

import structlog

from . import __version__
from .logging_config import setup_logging


async def main() -> int:
    """Main async entry point. Returns the process exit code."""
    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("lodestar.core")

    logger.info("lodestar_starting", version=__version__)

    # Import here to ensure logging is configured first
    from .config import get_config
    from .engine import Engine

    config = get_config()

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)

    engine = Engine(config)

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: handle_shutdown(signal.SIGINT),
                )

    try:
        if not await engine.initialize():
            logger.error("lodestar_setup_incomplete",
                         hint="set bot.name, bot.auth and channel in config/")
            return 1
        await shutdown_event.wait()
    except Exception as e:
        logger.error("engine_error", error=str(e), error_type=type(e).__name__)
        raise
    finally:
        await engine.disconnect()
        logger.info("lodestar_stopped")
    return 0


def run():
    """Synchronous entry point for the ``lodestar`` console script."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
