"""Worker manager for coordinating background tasks."""

import asyncio
import logging
from typing import Dict, Optional

from .base import BaseWorker
from .hold_expiry_worker import build_hold_expiry_worker
from .idempotency_cleanup_worker import IdempotencyCleanupWorker

logger = logging.getLogger(__name__)


class WorkerManager:
    """Starts, stops and reports on the application's background workers."""

    def __init__(self, workers: Optional[Dict[str, BaseWorker]] = None):
        self.workers: Dict[str, BaseWorker] = workers if workers is not None else self._default_workers()

    @staticmethod
    def _default_workers() -> Dict[str, BaseWorker]:
        return {
            "hold_expiry": build_hold_expiry_worker(),
            "idempotency_cleanup": IdempotencyCleanupWorker(),
        }

    async def start_all(self) -> None:
        for name, worker in self.workers.items():
            try:
                await worker.start()
            except Exception as e:
                logger.error("Failed to start worker", exc_info=True, extra={"worker": name, "error": str(e)})

        logger.info("Workers started", extra={"workers": list(self.workers)})

    async def stop_all(self) -> None:
        """Stop all workers, logging rather than raising on individual failures."""
        results = await asyncio.gather(
            *(worker.stop() for worker in self.workers.values()),
            return_exceptions=True,
        )
        for name, result in zip(self.workers, results):
            if isinstance(result, Exception):
                logger.error("Error stopping worker", extra={"worker": name, "error": str(result)})

        logger.info("All workers stopped")

    def get_worker(self, name: str) -> BaseWorker:
        return self.workers[name]

    def get_worker_status(self) -> Dict[str, bool]:
        return {name: worker.is_running for name, worker in self.workers.items()}


# Global worker manager instance
worker_manager = WorkerManager()
