"""
Entry point for the backtest worker.

The worker wires the job processor to its collaborators from the
environment (see ``backtester.config.Settings``):

* results go to ``DatabaseResultStore`` when ``BACKTEST_DB_URI`` is set,
  otherwise to an in-memory store that does not survive a restart;
* jobs, pause flags and telemetry go through Redis at
  ``REDIS_HOST``/``REDIS_PORT``;
* dataset CSV files are read from ``BACKTEST_DATA_ROOT``, using the job's
  dataset id as the path;
* the Prometheus exporter listens on ``PROMETHEUS_PORT`` when it is set.

On start-up the recovery sweep re-enqueues runs orphaned by a previous
worker, then jobs are consumed until the process is stopped.  If any task
exits with an error the others are cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

import redis.asyncio as aioredis

from .config import Settings
from .engine import BacktestEngine
from .market_data import LocalBlobStorage, MarketDataLoader
from .models import BacktestJob, BacktestRun, MarketDataset
from .processor import BacktestProcessor
from .recovery import RecoveryService
from .services.db_result_store import DatabaseResultStore
from .services.event_bus import RedisEventBus
from .services.job_queue import RedisJobQueue
from .services.metrics_service import BacktestMetricsService
from .services.pause_service import PauseService
from .services.result_store import InMemoryResultStore, ResultStore
from .services.telemetry import BacktestTelemetry
from .strategies import default_registry

logger = logging.getLogger(__name__)


def dataset_for(job: BacktestJob, run: BacktestRun) -> MarketDataset:
    config = run.config
    return MarketDataset(
        id=job.dataset_id,
        instrument_universe=list(config.instruments),
        start_at=config.start_date,
        end_at=config.end_date,
        storage_location=job.dataset_id,
    )


class BacktestWorker:
    """Pops jobs off the queue and hands them to the processor one at a time."""

    def __init__(
        self,
        store: ResultStore,
        processor: BacktestProcessor,
        queue: RedisJobQueue,
        poll_timeout: int = 5,
    ) -> None:
        self.store = store
        self.processor = processor
        self.queue = queue
        self.poll_timeout = poll_timeout

    async def handle(self, job: BacktestJob) -> None:
        run = await self.store.get_run(job.run_id)
        if run is None:
            logger.error("Backtest run %s not found; dropping job", job.run_id)
            return
        await self.processor.process(job, dataset_for(job, run))

    async def consume(self, stop: Optional[asyncio.Event] = None) -> None:
        logger.info("Backtest worker waiting for jobs on %s", self.queue.key)
        while stop is None or not stop.is_set():
            job = await self.queue.pop(self.poll_timeout)
            if job is not None:
                await self.handle(job)


async def build_store(settings: Settings) -> Union[DatabaseResultStore, InMemoryResultStore]:
    if settings.db_uri:
        store = DatabaseResultStore.from_uri(settings.db_uri)
        await store.init_db()
        return store
    logger.warning("BACKTEST_DB_URI is not set; results are kept in memory only")
    return InMemoryResultStore()


async def main() -> None:
    """Recover orphaned runs, then run the consumer and the metrics exporter concurrently."""
    settings = Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    client = aioredis.Redis(host=settings.redis_host or "localhost", port=settings.redis_port, decode_responses=True)
    bus = RedisEventBus(client=client)
    telemetry = BacktestTelemetry(bus)
    store = await build_store(settings)
    queue = RedisJobQueue(client=client)
    processor = BacktestProcessor(
        store,
        MarketDataLoader(blob_storage=LocalBlobStorage(settings.data_root)),
        BacktestEngine(default_registry(), telemetry=telemetry),
        telemetry=telemetry,
        pause_service=PauseService(client=client),
    )

    try:
        report = await RecoveryService(store, queue.push).recover_orphaned_runs()
        logger.info(
            "Recovery sweep: %d re-queued, %d failed, %d stale checkpoints",
            len(report.requeued),
            len(report.failed),
            len(report.stale_checkpoints),
        )

        tasks = [asyncio.create_task(BacktestWorker(store, processor, queue).consume())]
        if settings.prometheus_port is not None:
            metrics = BacktestMetricsService(bus, port=settings.prometheus_port)
            tasks.append(asyncio.create_task(metrics.run()))
        logger.info("Backtest worker started %d task(s)", len(tasks))

        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc:
                logger.exception("Backtest worker task raised an exception", exc_info=exc)
        logger.info("Backtest worker exiting")
    finally:
        if isinstance(store, DatabaseResultStore):
            await store.dispose()
        await client.aclose()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
