"""
Client module.
Contains the producer-side Enqueuer.
"""

from jobqueue.client.enqueuer import EnqueueListener, Enqueuer

__all__ = ["Enqueuer", "EnqueueListener"]
