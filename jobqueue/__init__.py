"""
Background Job Queue

A durable, at-least-once background job execution system: producers enqueue
jobs into a SQL-backed queue store, a dispatcher runs a fixed pool of worker
slots that claim and execute them, and a retry policy reschedules failures
with backoff or moves them to the dead set.
"""

__version__ = "1.0.0"
