"""
Tests for the durable job queue: priority order, retries, dead letters, replay.
"""
import random

import pytest

from app.errors import ErrorKind, ResourceNotFound, ValidationFailure
from app.models import Job, JobPriority, JobStatus, JobType
from app.services import job_queue
from app.services.job_queue import JobQueue


@pytest.fixture
def queue(session_factory, clock):
    return JobQueue(
        session_factory,
        clock=clock,
        rng=random.Random(7),
        max_attempts=2,
        backoff_base=10,
        backoff_max=300,
        backoff_jitter=0,
    )


def _enqueue(queue, priority=JobPriority.MEDIUM, **kwargs):
    return queue.enqueue(JobType.INVENTORY_SYNC, {"store_id": "s1"}, priority, **kwargs)


def _status(db_session, job_id):
    db_session.expire_all()
    return db_session.get(Job, job_id).status


class TestOrdering:
    def test_priority_tiers(self, queue):
        low = _enqueue(queue, JobPriority.LOW)
        urgent = _enqueue(queue, JobPriority.URGENT)
        medium = _enqueue(queue, JobPriority.MEDIUM)

        claimed = [queue.dequeue_next("w1").id for _ in range(3)]
        assert claimed == [urgent, medium, low]
        assert queue.dequeue_next("w1") is None

    def test_fifo_within_tier(self, queue, clock):
        first = _enqueue(queue, JobPriority.HIGH)
        clock.advance(1)
        second = _enqueue(queue, JobPriority.HIGH)
        assert queue.dequeue_next("w1").id == first
        assert queue.dequeue_next("w1").id == second


class TestClaiming:
    def test_a_job_is_claimed_once(self, queue, db_session):
        job_id = _enqueue(queue)
        record = queue.dequeue_next("w1")
        assert record.id == job_id
        assert record.status == JobStatus.RUNNING
        assert queue.dequeue_next("w2") is None

        job = db_session.get(Job, job_id)
        assert job.locked_by == "w1"

    def test_complete_only_from_running(self, queue, db_session):
        job_id = _enqueue(queue)
        assert queue.complete(job_id) is False
        queue.dequeue_next("w1")
        assert queue.complete(job_id) is True
        assert queue.complete(job_id) is False
        assert _status(db_session, job_id) == JobStatus.SUCCEEDED


class TestFailures:
    def test_transient_failure_backs_off(self, queue, clock, db_session):
        job_id = _enqueue(queue)
        queue.dequeue_next("w1")
        assert queue.fail(job_id, "timeout") == JobStatus.PENDING

        assert queue.dequeue_next("w1") is None
        clock.advance(9)
        assert queue.dequeue_next("w1") is None
        clock.advance(1)
        assert queue.dequeue_next("w1").id == job_id

        job = db_session.get(Job, job_id)
        assert job.attempts == 1
        assert job.error_kind == ErrorKind.TRANSIENT.value

    def test_three_failures_with_ceiling_two_dead_letters(self, queue, clock, db_session):
        job_id = _enqueue(queue)
        outcomes = []
        for _ in range(3):
            clock.advance(3600)
            queue.dequeue_next("w1")
            outcomes.append(queue.fail(job_id, "remote unavailable", ErrorKind.TRANSIENT))

        assert outcomes == [JobStatus.PENDING, JobStatus.DEAD_LETTERED, None]
        assert _status(db_session, job_id) == JobStatus.DEAD_LETTERED
        assert db_session.get(Job, job_id).attempts == 2

    def test_permanent_failure_is_not_retried(self, queue, db_session):
        job_id = _enqueue(queue)
        queue.dequeue_next("w1")
        assert queue.fail(job_id, "bad payload", ErrorKind.VALIDATION_FAILURE) == JobStatus.FAILED
        assert queue.dequeue_next("w1") is None

    def test_backoff_is_exponential_and_capped(self, session_factory):
        queue = JobQueue(session_factory, backoff_base=5, backoff_max=60, backoff_jitter=0)
        assert [queue.backoff_delay(n) for n in (1, 2, 3, 4, 5)] == [5, 10, 20, 40, 60]

    def test_jitter_stays_in_band(self, session_factory):
        queue = JobQueue(session_factory, rng=random.Random(1), backoff_base=100, backoff_max=1000, backoff_jitter=0.2)
        delays = [queue.backoff_delay(1) for _ in range(50)]
        assert all(80 <= d <= 120 for d in delays)

    def test_stale_running_jobs_are_released(self, queue, clock, db_session):
        job_id = _enqueue(queue)
        queue.dequeue_next("w1")
        clock.advance(30)
        assert queue.release_stale(lease_seconds=60) == 0
        clock.advance(60)
        assert queue.release_stale(lease_seconds=60) == 1
        assert _status(db_session, job_id) == JobStatus.PENDING

    def test_expired_holder_cannot_settle_a_reclaimed_job(self, queue, clock, db_session):
        job_id = _enqueue(queue)
        assert queue.dequeue_next("worker-a").id == job_id
        clock.advance(400)
        assert queue.release_stale(lease_seconds=300) == 1
        clock.advance(10)
        assert queue.dequeue_next("worker-b").id == job_id

        assert queue.complete(job_id, worker_id="worker-a") is False
        assert queue.fail(job_id, "late failure", worker_id="worker-a") is None
        db_session.expire_all()
        job = db_session.get(Job, job_id)
        assert job.status == JobStatus.RUNNING
        assert job.locked_by == "worker-b"

        assert queue.complete(job_id, worker_id="worker-b") is True
        assert _status(db_session, job_id) == JobStatus.SUCCEEDED

    def test_holder_can_fail_its_own_claim(self, queue, db_session):
        job_id = _enqueue(queue)
        queue.dequeue_next("worker-a")
        assert queue.fail(job_id, "timeout", worker_id="worker-b") is None
        assert queue.fail(job_id, "timeout", worker_id="worker-a") == JobStatus.PENDING


class TestReplayAndDedupe:
    def test_replay_dead_letter(self, queue, clock, db_session):
        job_id = _enqueue(queue, JobPriority.HIGH)
        for _ in range(2):
            clock.advance(3600)
            queue.dequeue_next("w1")
            queue.fail(job_id, "boom")

        new_id = queue.replay(job_id)
        assert new_id != job_id
        db_session.expire_all()
        original = db_session.get(Job, job_id)
        replayed = db_session.get(Job, new_id)
        assert original.status == JobStatus.DEAD_LETTERED
        assert original.replayed_job_id == new_id
        assert replayed.status == JobStatus.PENDING
        assert replayed.attempts == 0
        assert replayed.priority == JobPriority.HIGH
        assert replayed.payload == original.payload

    def test_only_terminal_failures_can_be_replayed(self, queue):
        job_id = _enqueue(queue)
        with pytest.raises(ValidationFailure):
            queue.replay(job_id)
        with pytest.raises(ResourceNotFound):
            queue.replay("missing")

    def test_dedupe_by_idempotency_key(self, queue):
        first = _enqueue(queue, idempotency_key="k1", dedupe=True)
        second = _enqueue(queue, idempotency_key="k1", dedupe=True)
        assert first == second
        with pytest.raises(ValidationFailure):
            _enqueue(queue, idempotency_key="k1")

    def test_concurrent_dedupe_returns_the_first_insert(self, queue, monkeypatch):
        winner = _enqueue(queue, idempotency_key="k3")
        real_lookup = job_queue._keyed_job_id
        lookups = []

        def lookup_missing_the_race(db, key):
            lookups.append(key)
            return None if len(lookups) == 1 else real_lookup(db, key)

        monkeypatch.setattr(job_queue, "_keyed_job_id", lookup_missing_the_race)
        assert _enqueue(queue, idempotency_key="k3", dedupe=True) == winner
        assert lookups == ["k3", "k3"]

    def test_replay_blocked_while_key_is_active(self, queue):
        job_id = _enqueue(queue, idempotency_key="k4")
        queue.dequeue_next("w1")
        queue.fail(job_id, "bad", ErrorKind.VALIDATION_FAILURE)
        _enqueue(queue, idempotency_key="k4", dedupe=True)
        with pytest.raises(ValidationFailure):
            queue.replay(job_id)

    def test_dedupe_ignores_failed_jobs(self, queue):
        first = _enqueue(queue, idempotency_key="k2", dedupe=True)
        queue.dequeue_next("w1")
        queue.fail(first, "bad", ErrorKind.VALIDATION_FAILURE)
        assert _enqueue(queue, idempotency_key="k2", dedupe=True) != first


def test_stats(queue, db_session):
    _enqueue(queue, JobPriority.LOW)
    done = _enqueue(queue, JobPriority.URGENT)
    queue.dequeue_next("w1")
    queue.complete(done)

    stats = queue.stats(db_session)
    assert stats["pending"] == 1
    assert stats["succeeded"] == 1
    assert stats["dead_lettered"] == 0
    assert stats["total"] == 2


class TestRetention:
    def test_purge_removes_only_old_succeeded_jobs(self, queue, clock, db_session):
        old_done = _enqueue(queue, JobPriority.URGENT)
        queue.dequeue_next("w1")
        queue.complete(old_done)
        old_failed = _enqueue(queue, JobPriority.URGENT)
        queue.dequeue_next("w1")
        queue.fail(old_failed, "bad", ErrorKind.VALIDATION_FAILURE)

        clock.advance(31 * 86400)
        recent_done = _enqueue(queue, JobPriority.URGENT)
        queue.dequeue_next("w1")
        queue.complete(recent_done)
        pending = _enqueue(queue, JobPriority.LOW)

        assert queue.purge_finished(older_than_days=30) == 1
        db_session.expire_all()
        remaining = {job.id for job in db_session.query(Job).all()}
        assert remaining == {old_failed, recent_done, pending}
        assert queue.purge_finished(older_than_days=30) == 0
