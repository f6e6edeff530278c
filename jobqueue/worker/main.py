"""
Worker process entry point.

Builds the store, retry policy and dispatcher from settings and runs until
SIGTERM/SIGINT, letting running jobs finish.
"""

import asyncio
import importlib
import logging
import signal

from jobqueue.config import Settings, get_settings
from jobqueue.db import JobStore, close_db, get_engine, init_db
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import setup_metrics
from jobqueue.observability.tracing import instrument_sqlalchemy, setup_tracing
from jobqueue.retry.policy import RetryPolicy
from jobqueue.worker.dispatcher import Dispatcher
from jobqueue.worker.handlers import default_registry

logger = logging.getLogger(__name__)


def load_handler_modules(settings: Settings) -> None:
    """Import modules whose import registers handlers in default_registry."""
    for module_name in settings.handler_modules:
        importlib.import_module(module_name)
        logger.info("Loaded handler module", extra={"module": module_name})


async def run_async(settings: Settings | None = None) -> None:
    """Run the worker asynchronously."""
    settings = settings or get_settings()
    setup_logging(settings)
    metrics = setup_metrics()
    if settings.prometheus_port is not None:
        metrics.serve(settings.prometheus_port)

    engine = get_engine(settings)
    if settings.tracing_enabled:
        setup_tracing(settings)
        instrument_sqlalchemy(engine)

    await init_db(engine, create_tables=settings.database_create_tables)
    load_handler_modules(settings)

    store = JobStore(engine, RetryPolicy.from_settings(settings))
    dispatcher = Dispatcher(store, settings, registry=default_registry, metrics=metrics)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(dispatcher.stop())
        )

    try:
        await dispatcher.start()
    finally:
        await close_db(engine)


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
