"""Entry point for the pump.fun token enricher."""

import asyncio
import signal

from loguru import logger

from config.settings import settings
from src.db.database import async_session_factory, close_engine
from src.enricher.pumpfun.client import PumpfunClient
from src.enricher.queue_store import QueueStore
from src.enricher.rate_limiter import CooldownState
from src.enricher.worker import EnrichmentWorker, stats_reporter
from src.utils.logger import setup_logger


def build_worker(client: PumpfunClient, store: QueueStore) -> EnrichmentWorker:
    return EnrichmentWorker(
        store,
        client,
        cooldown=CooldownState(
            settings.rate_limit_cooldown_sec, settings.rate_limit_cooldown_max_sec
        ),
        retry_cooldown_sec=settings.retry_cooldown_sec,
        err_cooldown_sec=settings.err_cooldown_sec,
        baseline_window_sec=settings.baseline_window_minutes * 60,
        pause_sec=settings.pause_sec,
        pause_jitter_sec=settings.pause_jitter_sec,
        idle_sec=settings.idle_sec,
        db_error_pause_sec=settings.db_error_pause_sec,
        stuck_processing_sec=settings.stuck_processing_sec,
    )


async def main() -> None:
    worker = setup_logger(
        json_logs=settings.json_logs,
        level="INFO",
        worker_name=settings.worker_name or None,
        log_dir=settings.log_dir,
    )
    logger.info(
        f"Starting enricher {worker} | min_age={settings.min_token_age_minutes}m "
        f"| pause={settings.pause_sec}s | api={settings.pumpfun_base_url}"
    )

    client = PumpfunClient(
        settings.pumpfun_base_url,
        max_rps=settings.pumpfun_max_rps,
        timeout=settings.pumpfun_timeout_sec,
        max_attempts=settings.pumpfun_max_attempts,
        backoff_base=settings.pumpfun_backoff_base_sec,
        backoff_max=settings.pumpfun_backoff_max_sec,
        candle_limit=settings.candle_limit,
        trades_limit=settings.trades_limit,
    )
    store = QueueStore(
        async_session_factory,
        min_token_age_sec=settings.min_token_age_minutes * 60,
    )
    worker = build_worker(client, store)

    # Graceful shutdown on SIGINT/SIGTERM
    loop = asyncio.get_event_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    worker_task = asyncio.create_task(worker.run(shutdown_event))
    stats_task = asyncio.create_task(
        stats_reporter(store, interval_sec=settings.stats_interval_sec)
    )

    # Wait for either the worker to finish or shutdown signal
    done, pending = await asyncio.wait(
        [worker_task, asyncio.create_task(shutdown_event.wait())],
        return_when=asyncio.FIRST_COMPLETED,
    )
    pending.add(stats_task)

    # Cancel remaining tasks
    for task in pending:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    for task in done:
        if task is worker_task and not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Worker exited with error")

    await client.close()
    await close_engine()
    logger.info("Shutdown complete")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
