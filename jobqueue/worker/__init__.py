"""
Worker module.
Contains the handler registry, worker pool, dispatcher and process entry point.
"""

from jobqueue.worker.dispatcher import Dispatcher
from jobqueue.worker.handlers import HandlerRegistry, default_registry, execute_job
from jobqueue.worker.pool import WorkerPool, WorkerSlot

__all__ = [
    "Dispatcher",
    "HandlerRegistry",
    "WorkerPool",
    "WorkerSlot",
    "default_registry",
    "execute_job",
]
