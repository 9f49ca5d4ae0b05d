"""
Job Worker

Claims one job at a time from the job queue, runs its handler and records the
outcome. Nothing a handler does can crash the loop: unexpected exceptions are
recorded as transient failures.
"""

import logging
import socket
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy.orm import sessionmaker

from app.errors import ErrorKind, HandlerResult
from app.models import JobStatus
from app.services.job_handlers import JobHandlerRegistry, audit_dead_letter
from app.services.job_queue import JobQueue

logger = logging.getLogger(__name__)


class JobWorker:
    """Pulls jobs from the queue and dispatches them to handlers."""

    def __init__(self, job_queue: JobQueue, registry: JobHandlerRegistry, session_factory: sessionmaker, name: str = None):
        self.job_queue = job_queue
        self.registry = registry
        self.session_factory = session_factory
        self.name = name or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

    def run_once(self) -> Dict[str, Any]:
        """
        Process at most one job.

        Returns:
            Summary dict with success, message, job_id and timestamp
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            job = self.job_queue.dequeue_next(self.name)
        except Exception as e:
            logger.exception("Worker %s could not claim a job", self.name)
            return {"success": False, "message": f"Dequeue failed: {e}", "job_id": None, "timestamp": timestamp}

        if job is None:
            return {"success": True, "message": "No jobs available", "job_id": None, "timestamp": timestamp}

        logger.info("Worker %s running %s job %s (attempt %s)", self.name, job.job_type.value, job.id, job.attempts + 1)
        try:
            result = self.registry.dispatch(job)
        except Exception as e:
            logger.exception("Job %s raised an unexpected error", job.id)
            result = HandlerResult.failure(ErrorKind.TRANSIENT, f"{type(e).__name__}: {e}")

        try:
            if result.ok:
                if not self.job_queue.complete(job.id, worker_id=self.name):
                    return {"success": False, "message": "Lease lost before completion", "job_id": job.id,
                            "timestamp": timestamp}
                return {"success": True, "message": result.message, "job_id": job.id, "timestamp": timestamp}

            new_status = self.job_queue.fail(
                job.id, result.message, result.error_kind or ErrorKind.TRANSIENT, worker_id=self.name
            )
            if new_status == JobStatus.DEAD_LETTERED:
                audit_dead_letter(self.session_factory, job, result.message)
        except Exception as e:
            logger.exception("Worker %s could not record the outcome of job %s", self.name, job.id)
            return {"success": False, "message": f"Outcome not recorded: {e}", "job_id": job.id, "timestamp": timestamp}

        return {
            "success": False,
            "message": result.message,
            "job_id": job.id,
            "status": new_status.value if new_status else None,
            "timestamp": timestamp,
        }

    def drain(self, max_jobs: int = 100) -> int:
        """Run jobs until the queue has nothing eligible. Returns how many ran."""
        processed = 0
        while processed < max_jobs:
            outcome = self.run_once()
            if outcome["job_id"] is None:
                break
            processed += 1
        return processed
