# backend/sca/worker.py
"""Task handler process: `python -m sca.worker`.

Runs the poller against the same database as the API. Only one worker should
run per database; tasks are claimed by a status transition, not a lease.
"""
import asyncio
import logging
import signal

from .catalog import load_catalog
from .config import settings
from .database import close_mongo_connection, connect_to_mongo, init_database
from .services.container import build_services

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_worker():
    database = await connect_to_mongo()
    try:
        await init_database(database)
        catalog = load_catalog(settings.CATALOG_PATH)
        services = build_services(database, catalog, settings)

        stopping = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stopping.set)

        services.poller.start()
        logger.info("🚀 SCA task handler started")
        await stopping.wait()

        logger.info("🔄 Stopping task handler...")
        await services.poller.stop()
    finally:
        await close_mongo_connection()
    logger.info("✅ Task handler stopped")


def main():
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
