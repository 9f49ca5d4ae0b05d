"""
Worker Scheduler Configuration

Runs the job queue workers and the periodic maintenance tasks: releasing jobs
whose worker died mid-run, enqueueing per-store inventory syncs and purging
old succeeded jobs and audit rows.
"""

import logging
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Set

from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.models import JobPriority, JobType, Store
from app.services.integration_log import purge_integration_logs
from app.services.job_queue import JobQueue
from app.workers.job_worker import JobWorker

logger = logging.getLogger(__name__)


def enqueue_inventory_syncs(session_factory: sessionmaker, job_queue: JobQueue) -> Dict[str, Any]:
    """Enqueue one inventory_sync job per store with the integration enabled."""
    with session_factory() as db:
        store_ids = [
            store_id
            for (store_id,) in db.query(Store.id)
            .filter(Store.is_active.is_(True), Store.integration_enabled.is_(True))
            .all()
        ]
    hour_bucket = datetime.now(timezone.utc).strftime("%Y%m%d%H")
    for store_id in store_ids:
        job_queue.enqueue(
            JobType.INVENTORY_SYNC,
            {"store_id": store_id},
            JobPriority.LOW,
            store_id=store_id,
            idempotency_key=f"inventory_sync:{store_id}:{hour_bucket}",
            dedupe=True,
        )
    return {
        "success": True,
        "message": f"Enqueued inventory sync for {len(store_ids)} store(s)",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class WorkerScheduler:
    """Scheduler for the job workers and interval-based maintenance tasks."""

    def __init__(self, job_queue: JobQueue, workers: List[JobWorker], session_factory: sessionmaker):
        self.job_queue = job_queue
        self.job_workers = workers
        self.session_factory = session_factory
        self.workers = {
            "stale_job_release": {
                "func": lambda: {
                    "success": True,
                    "message": f"Released {self.job_queue.release_stale()} stale job(s)",
                },
                "interval": max(settings.JOB_LEASE_SECONDS // 2, 30),
                "last_run": None,
                "enabled": True
            },
            "inventory_sync": {
                "func": lambda: enqueue_inventory_syncs(self.session_factory, self.job_queue),
                "interval": settings.INVENTORY_SYNC_INTERVAL,
                "last_run": None,
                "enabled": settings.INVENTORY_SYNC_INTERVAL > 0
            },
            "job_retention": {
                "func": lambda: {
                    "success": True,
                    "message": f"Purged {self.job_queue.purge_finished()} succeeded job(s)",
                },
                "interval": settings.RETENTION_CLEANUP_INTERVAL,
                "last_run": None,
                "enabled": settings.RETENTION_CLEANUP_INTERVAL > 0
            },
            "integration_log_retention": {
                "func": lambda: {
                    "success": True,
                    "message": f"Purged {purge_integration_logs(self.session_factory)} integration log row(s)",
                },
                "interval": settings.RETENTION_CLEANUP_INTERVAL,
                "last_run": None,
                "enabled": settings.RETENTION_CLEANUP_INTERVAL > 0
            }
        }
        self.running = False
        self._tasks: List[asyncio.Task] = []
        self._periodic_runs: Set[asyncio.Task] = set()

    async def run_worker(self, worker_name: str, worker_config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run a single periodic task and log results.

        Args:
            worker_name: Name of the task
            worker_config: Task configuration

        Returns:
            Task result
        """
        try:
            logger.info(f"Starting worker: {worker_name}")
            result = await asyncio.get_running_loop().run_in_executor(
                None, worker_config["func"]
            )

            worker_config["last_run"] = datetime.now(timezone.utc)

            if result.get("success", False):
                logger.info(f"Worker {worker_name} completed: {result.get('message', 'No message')}")
            else:
                logger.error(f"Worker {worker_name} failed: {result.get('message', 'Unknown error')}")

            return result

        except Exception as e:
            logger.error(f"Worker {worker_name} crashed: {e}")
            worker_config["last_run"] = datetime.now(timezone.utc)
            return {
                "success": False,
                "message": f"Worker crashed: {str(e)}",
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    async def run_job_worker(self, worker: JobWorker):
        """Poll the queue continuously; sleep only when there is nothing to do."""
        loop = asyncio.get_running_loop()
        while self.running:
            try:
                outcome = await loop.run_in_executor(None, worker.run_once)
            except Exception as e:
                logger.error(f"Job worker {worker.name} crashed: {e}")
                outcome = {"job_id": None}
            if outcome.get("job_id") is None:
                await asyncio.sleep(settings.JOB_POLL_INTERVAL)

    async def start_scheduler(self):
        """Start the job workers and the periodic task loop."""
        self.running = True
        logger.info("Worker scheduler started with %s job worker(s)", len(self.job_workers))

        for worker in self.job_workers:
            self._tasks.append(asyncio.create_task(self.run_job_worker(worker)))

        while self.running:
            current_time = datetime.now(timezone.utc)

            for worker_name, worker_config in self.workers.items():
                if not worker_config["enabled"]:
                    continue

                last_run = worker_config["last_run"]
                interval = worker_config["interval"]

                if last_run is None or (current_time - last_run).total_seconds() >= interval:
                    # Mark as started so a slow run is not scheduled twice
                    worker_config["last_run"] = current_time
                    task = asyncio.create_task(
                        self.run_worker(worker_name, worker_config)
                    )
                    self._periodic_runs.add(task)
                    task.add_done_callback(self._periodic_runs.discard)

            await asyncio.sleep(30)

    def stop_scheduler(self):
        """Stop the workers and the periodic task loop."""
        self.running = False
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        for task in list(self._periodic_runs):
            task.cancel()
        logger.info("Worker scheduler stopped")

    def get_worker_status(self) -> Dict[str, Any]:
        """Get current status of all periodic tasks and job workers."""
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
                "status": "running" if self.running else "stopped"
            }

        status["job_workers"] = {
            "count": len(self.job_workers),
            "names": [w.name for w in self.job_workers],
            "status": "running" if self.running else "stopped"
        }
        return status


_scheduler: Optional[WorkerScheduler] = None
_scheduler_task: Optional[asyncio.Task] = None


def start_background_workers(job_queue: JobQueue, registry, session_factory: sessionmaker) -> Optional[WorkerScheduler]:
    """Start the background worker scheduler."""
    global _scheduler, _scheduler_task
    try:
        workers = [
            JobWorker(job_queue, registry, session_factory, name=f"job-worker-{i + 1}")
            for i in range(max(settings.JOB_WORKER_COUNT, 1))
        ]
        _scheduler = WorkerScheduler(job_queue, workers, session_factory)
        _scheduler_task = asyncio.create_task(_scheduler.start_scheduler())
        logger.info("Background workers started successfully")
    except Exception as e:
        logger.error(f"Failed to start background workers: {e}")
    return _scheduler


def stop_background_workers():
    """Stop the background worker scheduler."""
    global _scheduler_task
    if _scheduler is not None:
        _scheduler.stop_scheduler()
    if _scheduler_task is not None:
        _scheduler_task.cancel()
        _scheduler_task = None


def get_workers_status() -> Dict[str, Any]:
    """Get status of all background workers."""
    if _scheduler is None:
        return {}
    return _scheduler.get_worker_status()
