"""Entry point: build the engine context and run until signalled."""

import asyncio
import signal
import sys

import structlog

from futures_engine.config import Settings
from futures_engine.engine.context import EngineContext

logger = structlog.get_logger()


async def main() -> None:
    settings = Settings()

    engine = EngineContext(settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _signal_handler)
    else:
        signal.signal(signal.SIGINT, lambda *_: loop.call_soon_threadsafe(_signal_handler))

    try:
        await engine.start()
        await stop_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await engine.stop()
        logger.info("shutdown_complete")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
