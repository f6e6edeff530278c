"""
Database module.
Contains database connection, models, and the durable queue store.
"""

from jobqueue.db.connection import (
    close_db,
    create_session_factory,
    get_engine,
    init_db,
    session_scope,
)
from jobqueue.db.models import Base, Job
from jobqueue.db.repository import JobStore

__all__ = [
    "get_engine",
    "create_session_factory",
    "init_db",
    "close_db",
    "session_scope",
    "Job",
    "Base",
    "JobStore",
]
