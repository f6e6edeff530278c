"""
Reaper module.
Contains the maintenance loop for scheduled retries and stale claims.
"""

from jobqueue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
