# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chatflow.config.settings import settings
from chatflow.utils.dependencies import create_engine, create_store

# Configure basic logging for this service
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(name)s] - %(message)s')
logger = logging.getLogger("SchedulerService")


def schedule_wait_sweep(scheduler: AsyncIOScheduler, engine) -> None:
    """Resumes delays and handles expired waits every few seconds."""

    async def run_wait_sweep():
        try:
            handled = await engine.sweep_expired_waits()
            if handled:
                logger.info(f"Wait sweep resumed or expired {handled} execution(s).")
        except Exception as e:
            logger.error(f"Wait sweep failed: {e}", exc_info=True)

    scheduler.add_job(
        run_wait_sweep,
        'interval',
        seconds=settings.wait_sweep_interval_seconds,
        id="wait_sweep_job",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info(f"Scheduled job: run_wait_sweep (every {settings.wait_sweep_interval_seconds} seconds).")


async def main():
    store = create_store()
    if hasattr(store, "create_indexes"):
        await store.create_indexes()
    engine = create_engine(store)

    scheduler = AsyncIOScheduler(timezone="UTC")
    schedule_wait_sweep(scheduler, engine)

    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()
        if hasattr(store, "close"):
            store.close()

if __name__ == "__main__":
    asyncio.run(main())
