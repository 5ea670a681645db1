"""
Base worker class for queue processing.

Polls one queue and runs each message's async handler in its own event loop.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict

from issue_sync.core.http_client import cleanup_async_client
from issue_sync.core.logging_config import get_logger
from issue_sync.workers.queue_manager import QueueManager

logger = get_logger(__name__)


class BaseWorker(ABC):
    """
    Base class for queue workers.

    Provides:
    - Polling consume loop with graceful stop
    - A fresh event loop per message
    - Error logging around message handling
    """

    POLL_TIMEOUT_SECONDS = 1.0
    IDLE_SLEEP_SECONDS = 0.1
    ERROR_SLEEP_SECONDS = 1.0

    def __init__(self, queue_name: str, queue_manager: QueueManager):
        self.queue_name = queue_name
        self.queue_manager = queue_manager
        self.running = False

        logger.info(f"Initialized {self.__class__.__name__} for queue: {queue_name}")

    @abstractmethod
    async def process_message(self, message: Dict[str, Any]) -> Any:
        """Handles one message. Raising marks the attempt as failed."""
        pass

    def start_consuming(self):
        """Consumes messages until stop() is called."""
        logger.info(f"Starting {self.__class__.__name__} consumer for queue: {self.queue_name}")
        self.running = True

        try:
            while self.running:
                try:
                    self.run_periodic_tasks()
                    message = self.queue_manager.get_single_message(self.queue_name, timeout=self.POLL_TIMEOUT_SECONDS)
                    if message:
                        self._handle_message(message)
                    else:
                        time.sleep(self.IDLE_SLEEP_SECONDS)
                except Exception as e:
                    logger.error(f"Error processing message in {self.__class__.__name__}: {e}")
                    time.sleep(self.ERROR_SLEEP_SECONDS)

        except KeyboardInterrupt:
            logger.info(f"Received shutdown signal for {self.__class__.__name__}")
            self.stop()

        logger.info(f"{self.__class__.__name__} consumer stopped")

    def run_periodic_tasks(self):
        """Called before every poll; subclasses hook housekeeping in here."""
        pass

    def stop(self):
        logger.info(f"Stopping {self.__class__.__name__}")
        self.running = False

    def _handle_message(self, message: Dict[str, Any]):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self.process_message(message))
        except Exception as e:
            logger.error(f"Error processing message in {self.__class__.__name__}: {e}")
        finally:
            # The shared HTTP client is bound to this loop
            loop.run_until_complete(cleanup_async_client())
            loop.close()
            asyncio.set_event_loop(None)
