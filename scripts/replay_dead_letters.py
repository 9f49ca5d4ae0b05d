#!/usr/bin/env python3
"""
List or replay dead-lettered jobs from the command line.
"""
import sys
import os
import logging

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.database import SessionLocal
from app.errors import IntegrationError
from app.models import Job, JobStatus
from app.services.job_queue import JobQueue

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def dead_letters(store_id: str = None) -> list:
    """Dead-lettered jobs that have not been replayed yet, oldest first."""
    db = SessionLocal()
    try:
        query = db.query(Job).filter(Job.status == JobStatus.DEAD_LETTERED, Job.replayed_job_id.is_(None))
        if store_id:
            query = query.filter(Job.store_id == store_id)
        jobs = query.order_by(Job.enqueued_at.asc()).all()
        db.expunge_all()
        return jobs
    finally:
        db.close()


def list_dead_letters(store_id: str = None):
    jobs = dead_letters(store_id)
    logger.info(f"{len(jobs)} dead-lettered job(s)")
    for job in jobs:
        logger.info(
            f"  {job.id} {job.job_type.value} store={job.store_id} "
            f"attempts={job.attempts} error={(job.last_error or '')[:120]}"
        )


def replay_dead_letters(store_id: str = None) -> int:
    job_queue = JobQueue(SessionLocal)
    replayed = 0
    for job in dead_letters(store_id):
        try:
            new_id = job_queue.replay(job.id)
            logger.info(f"Replayed {job.id} as {new_id}")
            replayed += 1
        except IntegrationError as e:
            logger.error(f"Could not replay {job.id}: {e.message}")
    logger.info(f"Replayed {replayed} job(s)")
    return replayed


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python replay_dead_letters.py [command] [store_id]")
        print("Commands:")
        print("  list   - Show dead-lettered jobs")
        print("  replay - Re-enqueue every dead-lettered job")
        sys.exit(1)

    command = sys.argv[1].lower()
    store_id = sys.argv[2] if len(sys.argv) > 2 else None

    if command == "list":
        list_dead_letters(store_id)

    elif command == "replay":
        replay_dead_letters(store_id)

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
