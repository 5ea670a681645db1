"""
Workers package for background queue processing.

Contains the sync worker that consumes issue sync jobs from RabbitMQ.
"""

from .queue_manager import QueueManager, SyncQueue
from .sync_worker import SyncWorker

__all__ = [
    'QueueManager',
    'SyncQueue',
    'SyncWorker'
]
