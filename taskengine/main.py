"""Entry point: run the scheduler until interrupted."""

import asyncio
import importlib
import logging
import signal

from taskengine.config import settings
from taskengine.scheduler.engine import SchedulerEngine

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
)
logger = logging.getLogger(__name__)

_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def import_handler_modules(names: list[str]) -> int:
    """Import modules that register task handlers. Returns how many loaded."""
    loaded = 0
    for name in names:
        try:
            importlib.import_module(name)
        except ImportError:
            logger.exception("Failed to import handler module %s", name)
            continue
        loaded += 1
    return loaded


async def run(engine: SchedulerEngine, stop_event: asyncio.Event | None = None) -> None:
    """Start *engine*, wait for *stop_event* (or SIGINT/SIGTERM), then stop it."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in _SIGNALS:
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers unavailable for %s", sig.name)
            continue
        installed.append(sig)

    await engine.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down scheduler...")
        await engine.stop()
        for sig in installed:
            loop.remove_signal_handler(sig)


def main() -> None:
    """Run the scheduler with tasks persisted under the configured tasks path."""
    modules = settings.get_handler_modules()
    if modules:
        logger.info("Loaded %d of %d handler module(s)", import_handler_modules(modules), len(modules))
    if not settings.persist_tasks:
        logger.warning("SCHEDULER_PERSIST_TASKS is off; no tasks will be loaded")
    logger.info("Starting scheduler (tasks_path=%s)...", settings.tasks_path)
    asyncio.run(run(SchedulerEngine()))


if __name__ == "__main__":
    main()
