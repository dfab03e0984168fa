"""
Worker Scheduler Configuration

Registers and schedules background workers: periodic order sync for every active channel account.
"""

import logging
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import Session

from channelsync.config import settings
from channelsync.connectors import ConnectorRegistry
from channelsync.errors import ChannelSyncError
from channelsync.models import SyncTrigger
from channelsync.services.sync_engine import sync_active_accounts

logger = logging.getLogger(__name__)

TICK_SECONDS = 60


class WorkerScheduler:
    """Scheduler for running background workers at specified intervals."""

    def __init__(self, session_factory: Callable[[], Session], registry: ConnectorRegistry):
        self.session_factory = session_factory
        self.registry = registry
        self.workers: Dict[str, Dict[str, Any]] = {
            "order_sync": {
                "func": self._sync_orders,
                "interval": settings.SYNC_INTERVAL_SECONDS,
                "last_run": None,
                "enabled": True,
            },
        }
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._in_flight: set[str] = set()
        self._worker_tasks: set[asyncio.Task] = set()

    async def _sync_orders(self) -> Dict[str, Any]:
        results = await sync_active_accounts(self.session_factory, self.registry, trigger=SyncTrigger.SCHEDULED)
        failed = [r for r in results if r.aborted]
        return {
            "success": not failed,
            "message": f"{len(results)} accounts synced, {len(failed)} aborted",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def run_worker(self, worker_name: str, worker_config: Dict[str, Any]) -> Dict[str, Any]:
        """Run a single worker and log results."""
        func: Callable[[], Awaitable[Dict[str, Any]]] = worker_config["func"]
        self._in_flight.add(worker_name)
        try:
            logger.info("Starting worker: %s", worker_name)
            result = await func()
            if result.get("success", False):
                logger.info("Worker %s completed: %s", worker_name, result.get("message", "No message"))
            else:
                logger.error("Worker %s finished with failures: %s", worker_name, result.get("message", "Unknown error"))
            return result
        except Exception as e:
            logger.exception("Worker %s failed", worker_name)
            message = e.message if isinstance(e, ChannelSyncError) else str(e)
            return {
                "success": False,
                "message": f"Worker failed: {message}",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        finally:
            worker_config["last_run"] = datetime.now(timezone.utc)
            self._in_flight.discard(worker_name)

    async def start_scheduler(self):
        """Start the background worker scheduler."""
        self.running = True
        logger.info("Worker scheduler started")

        while self.running:
            current_time = datetime.now(timezone.utc)

            for worker_name, worker_config in self.workers.items():
                if not worker_config["enabled"] or worker_name in self._in_flight:
                    continue

                last_run = worker_config["last_run"]
                interval = worker_config["interval"]

                if last_run is None or (current_time - last_run).total_seconds() >= interval:
                    task = asyncio.create_task(self.run_worker(worker_name, worker_config))
                    self._worker_tasks.add(task)
                    task.add_done_callback(self._worker_tasks.discard)

            await asyncio.sleep(TICK_SECONDS)

    def start(self) -> None:
        """Schedule the loop on the running event loop (FastAPI startup)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.start_scheduler())
            logger.info("Background workers started")

    def stop_scheduler(self):
        """Stop the background worker scheduler."""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        for task in list(self._worker_tasks):
            task.cancel()
        logger.info("Worker scheduler stopped")

    def get_worker_status(self) -> Dict[str, Any]:
        """Get current status of all workers."""
        status = {}

        for worker_name, worker_config in self.workers.items():
            last_run = worker_config["last_run"]
            next_run = None

            if last_run:
                next_run = last_run + timedelta(seconds=worker_config["interval"])

            status[worker_name] = {
                "enabled": worker_config["enabled"],
                "last_run": last_run.isoformat() if last_run else None,
                "next_run": next_run.isoformat() if next_run else None,
                "interval_seconds": worker_config["interval"],
                "status": "running" if self.running else "stopped",
            }

        return status
