"""
Match thread service entrypoint.
Runs the match check loop and the cleanup loop with asyncio; a failing pass
is logged and retried on the next tick.
"""
from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable

# Ensure backend root is on path when run as python -m reconciler.main
_backend = Path(__file__).resolve().parent.parent
if str(_backend) not in sys.path:
    sys.path.insert(0, str(_backend))

from shared.config import Settings, get_settings
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from reconciler.service import MatchThreadService
from sources.faceit import FaceitMatchSource
from store.persistent import PersistentStore
from store.repository import StateRepository
from threads.discord import DiscordThreadPlatform

logger = get_logger(__name__)


async def run_periodic(name: str, interval_s: float, fn: Callable[[], Awaitable[object]]) -> None:
    """Call ``fn`` every ``interval_s`` seconds, starting immediately."""
    while True:
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("periodic_task_error", task=name, error=str(e))
        await asyncio.sleep(interval_s)


async def build_service(settings: Settings, db: DatabaseManager) -> MatchThreadService:
    store = PersistentStore(db)
    repo = StateRepository(store)
    await repo.load()
    source = FaceitMatchSource(settings)
    platform = DiscordThreadPlatform(settings)
    await source.start()
    await platform.start()
    return MatchThreadService(repo, source, platform, settings)


async def main() -> None:
    settings = get_settings()
    setup_logging("matchthreads", settings)

    if settings.is_sqlite and "///./" in settings.database_url:
        Path("data").mkdir(exist_ok=True)

    db = DatabaseManager(settings)
    try:
        await db.connect()
        await db.create_tables()
        service = await build_service(settings, db)
    except Exception as e:
        logger.exception("startup_failed", error=str(e))
        await db.disconnect()
        raise

    start_metrics_server(settings.metrics_port)

    tasks = [
        asyncio.create_task(run_periodic("check_matches", settings.check_interval_s, service.check_matches)),
        asyncio.create_task(run_periodic("cleanup", settings.cleanup_interval_s, service.run_cleanup)),
    ]

    shutdown = asyncio.Event()

    def on_signal() -> None:
        shutdown.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, on_signal)
        except NotImplementedError:
            pass

    logger.info(
        "matchthreads_started",
        source=service.source.source_name,
        check_interval_s=settings.check_interval_s,
        cleanup_interval_s=settings.cleanup_interval_s,
    )
    await shutdown.wait()

    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass

    await service.platform.close()
    await service.source.close()
    await db.disconnect()
    logger.info("matchthreads_stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
