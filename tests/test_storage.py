"""
Tests for storage.py

Covers the job store's queue operations (claim, complete, fail, reclaim)
and the helper tables for signals, events and config.
"""

import threading

import pytest

from errors import InvalidJobError, JobNotFoundError, JobStateError, SignalNotFoundError
from models import CLAIMED, COMPLETED, FAILED, MAX_ERROR_LENGTH, PENDING
from storage import Storage


SIGNAL = {"symbol": "BTCUSDT", "side": "buy"}


class TestEnqueue:
    """Tests for enqueue_job()."""

    def test_enqueue_embedded_signal(self, db):
        job = db.enqueue_job(signal=SIGNAL, job_id="j1")
        assert job.id == "j1"
        assert job.status == PENDING
        assert job.attempt == 0
        assert job.signal == SIGNAL
        assert job.signal_id is None
        assert job.claimed_at is None

    def test_enqueue_signal_reference(self, db):
        job = db.enqueue_job(signal_id="sig-1")
        assert job.signal_id == "sig-1"
        assert job.signal is None
        assert len(job.id) == 32

    def test_enqueue_requires_exactly_one_source(self, db):
        with pytest.raises(InvalidJobError):
            db.enqueue_job()
        with pytest.raises(InvalidJobError):
            db.enqueue_job(signal=SIGNAL, signal_id="sig-1")

    def test_enqueue_rejects_non_object_signal(self, db):
        with pytest.raises(InvalidJobError):
            db.enqueue_job(signal=["BTCUSDT"])

    def test_enqueue_duplicate_id(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        with pytest.raises(InvalidJobError):
            db.enqueue_job(signal=SIGNAL, job_id="j1")

    def test_list_jobs_order_and_limit(self, db):
        for i in range(5):
            db.enqueue_job(signal=SIGNAL, job_id=f"j{i}")

        assert [j.id for j in db.list_jobs(limit=2)] == ["j0", "j1"]
        assert [j.id for j in db.list_jobs(limit=2, newest_first=True)] == ["j4", "j3"]


class TestClaimJobs:
    """Tests for claim_jobs()."""

    def test_claim_happy_path(self, db, clock):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        jobs = db.claim_jobs(10)
        assert [j.id for j in jobs] == ["j1"]
        assert jobs[0].status == CLAIMED
        assert jobs[0].attempt == 1
        assert jobs[0].claimed_at is not None

    def test_claim_empty_queue_returns_empty_list(self, db):
        assert db.claim_jobs(10) == []

    def test_claim_non_positive_limit(self, db):
        db.enqueue_job(signal=SIGNAL)
        assert db.claim_jobs(0) == []
        assert db.count_by_status() == {PENDING: 1}

    def test_claim_respects_limit_and_order(self, db):
        for i in range(5):
            db.enqueue_job(signal=SIGNAL, job_id=f"j{i}")
        first = db.claim_jobs(2)
        second = db.claim_jobs(10)
        assert [j.id for j in first] == ["j0", "j1"]
        assert [j.id for j in second] == ["j2", "j3", "j4"]
        assert db.claim_jobs(10) == []

    def test_claimed_job_not_claimed_again(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        assert db.claim_jobs(10) == []

    def test_concurrent_claimers_get_disjoint_jobs(self, db_path):
        """Separate connections racing on one database never share a job."""
        setup = Storage(db_path)
        for i in range(60):
            setup.enqueue_job(signal=SIGNAL, job_id=f"j{i:02d}")
        setup.close()

        stores = [Storage(db_path) for _ in range(4)]
        barrier = threading.Barrier(len(stores))
        results = {i: [] for i in range(len(stores))}

        def claimer(i):
            barrier.wait()
            while True:
                jobs = stores[i].claim_jobs(3)
                if not jobs:
                    return
                results[i].extend(j.id for j in jobs)

        threads = [threading.Thread(target=claimer, args=(i,)) for i in range(len(stores))]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        for s in stores:
            s.close()

        all_ids = [job_id for ids in results.values() for job_id in ids]
        assert len(all_ids) == 60
        assert len(set(all_ids)) == 60
        for a in results:
            for b in results:
                if a != b:
                    assert not set(results[a]) & set(results[b])

    def test_shared_store_across_threads(self, db):
        for i in range(30):
            db.enqueue_job(signal=SIGNAL, job_id=f"j{i:02d}")
        claimed = []
        lock = threading.Lock()

        def claimer():
            jobs = db.claim_jobs(4)
            while jobs:
                with lock:
                    claimed.extend(j.id for j in jobs)
                jobs = db.claim_jobs(4)

        threads = [threading.Thread(target=claimer) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        assert sorted(claimed) == [f"j{i:02d}" for i in range(30)]


class TestCompleteAndFail:
    """Tests for complete_job() and fail_job()."""

    def test_complete_claimed_job(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        assert db.complete_job("j1") is True
        job = db.get_job("j1")
        assert job.status == COMPLETED
        assert job.claimed_at is None
        assert job.finished_at is not None

    def test_complete_is_idempotent(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        db.complete_job("j1")
        assert db.complete_job("j1") is False
        assert db.get_job("j1").status == COMPLETED

    def test_complete_pending_job_rejected(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        with pytest.raises(JobStateError):
            db.complete_job("j1")

    def test_complete_unknown_job(self, db):
        with pytest.raises(JobNotFoundError):
            db.complete_job("missing")

    def test_fail_records_error(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        assert db.fail_job("j1", "insufficient margin") is True
        job = db.get_job("j1")
        assert job.status == FAILED
        assert "insufficient margin" in job.last_error
        assert job.claimed_at is None

    def test_fail_truncates_long_message(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        db.fail_job("j1", "x" * 5000)
        assert len(db.get_job("j1").last_error) == MAX_ERROR_LENGTH

    def test_fail_twice_is_noop(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        db.fail_job("j1", "first")
        assert db.fail_job("j1", "second") is False
        assert db.get_job("j1").last_error == "first"

    def test_fail_completed_job_rejected(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        db.complete_job("j1")
        with pytest.raises(JobStateError):
            db.fail_job("j1", "late failure")
        assert db.get_job("j1").status == COMPLETED

    def test_stale_claim_cannot_finish_reissued_job(self, db, clock):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        first = db.claim_jobs(1)[0]
        clock.advance(61)
        assert db.reclaim_stale(60) == 1
        second = db.claim_jobs(1)[0]
        assert (first.attempt, second.attempt) == (1, 2)

        with pytest.raises(JobStateError):
            db.fail_job("j1", "timeout from first worker", attempt=first.attempt)
        with pytest.raises(JobStateError):
            db.complete_job("j1", attempt=first.attempt)
        job = db.get_job("j1")
        assert job.status == CLAIMED
        assert job.last_error is None

        assert db.complete_job("j1", attempt=second.attempt) is True
        assert db.get_job("j1").status == COMPLETED

    def test_stale_complete_after_new_claim_finished_is_noop(self, db, clock):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        first = db.claim_jobs(1)[0]
        clock.advance(61)
        db.reclaim_stale(60)
        second = db.claim_jobs(1)[0]
        db.complete_job("j1", attempt=second.attempt)

        assert db.complete_job("j1", attempt=first.attempt) is False
        assert db.get_job("j1").status == COMPLETED


class TestReclaimStale:
    """Tests for reclaim_stale()."""

    def test_reclaim_after_visibility_timeout(self, db, clock):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)

        clock.advance(61)
        assert db.reclaim_stale(60) == 1

        job = db.get_job("j1")
        assert job.status == PENDING
        assert job.attempt == 1
        assert job.claimed_at is None

        again = db.claim_jobs(10)
        assert [j.id for j in again] == ["j1"]
        assert again[0].attempt == 2

    def test_reclaim_before_timeout_leaves_job(self, db, clock):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        claimed_at = db.get_job("j1").claimed_at

        clock.advance(59)
        assert db.reclaim_stale(60) == 0

        job = db.get_job("j1")
        assert job.status == CLAIMED
        assert job.claimed_at == claimed_at

    def test_reclaim_at_exact_timeout(self, db, clock):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        clock.advance(60)
        assert db.reclaim_stale(60) == 1

    def test_reclaim_ignores_finished_jobs(self, db, clock):
        db.enqueue_job(signal=SIGNAL, job_id="done")
        db.enqueue_job(signal=SIGNAL, job_id="bad")
        db.claim_jobs(10)
        db.complete_job("done")
        db.fail_job("bad", "rejected")

        clock.advance(3600)
        assert db.reclaim_stale(60) == 0
        assert db.get_job("done").status == COMPLETED
        assert db.get_job("bad").status == FAILED

    def test_reclaim_with_max_attempts_fails_exhausted_jobs(self, db, clock):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        clock.advance(61)
        db.reclaim_stale(60)
        db.claim_jobs(10)  # attempt 2

        clock.advance(61)
        assert db.reclaim_stale(60, max_attempts=2) == 0
        job = db.get_job("j1")
        assert job.status == FAILED
        assert "max attempts" in job.last_error
        assert job.claimed_at is None


class TestResubmit:
    """Tests for resubmit_job()."""

    def test_resubmit_failed_job_creates_new_job(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        db.claim_jobs(10)
        db.fail_job("j1", "rejected")

        new_job = db.resubmit_job("j1")
        assert new_job.id != "j1"
        assert new_job.status == PENDING
        assert new_job.signal == SIGNAL
        assert db.get_job("j1").status == FAILED

    def test_resubmit_keeps_signal_reference(self, db):
        db.enqueue_job(signal_id="sig-1", job_id="j1")
        db.claim_jobs(10)
        db.complete_job("j1")
        assert db.resubmit_job("j1").signal_id == "sig-1"

    def test_resubmit_pending_job_rejected(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="j1")
        with pytest.raises(JobStateError):
            db.resubmit_job("j1")

    def test_resubmit_unknown_job(self, db):
        with pytest.raises(JobNotFoundError):
            db.resubmit_job("missing")


class TestSignalsEventsConfig:
    """Tests for the signal, event and config helpers."""

    def test_signal_roundtrip(self, db):
        signal_id = db.add_signal(SIGNAL, signal_id="sig-1")
        assert signal_id == "sig-1"
        assert db.get_signal("sig-1") == SIGNAL

    def test_missing_signal(self, db):
        with pytest.raises(SignalNotFoundError):
            db.get_signal("nope")

    def test_events_newest_first(self, db):
        db.log_event("exec-worker", "batch_done", {"claimed": 1})
        db.log_event("exec-worker", "job_error", {"job_id": "j1", "message": "boom"})
        events = db.recent_events()
        assert [e["stage"] for e in events] == ["job_error", "batch_done"]
        assert events[0]["payload"] == {"job_id": "j1", "message": "boom"}
        assert [e["stage"] for e in db.recent_events(stage="batch_done")] == ["batch_done"]

    def test_config_set_get(self, db):
        assert db.get_config("batch_limit", default="50") == "50"
        db.set_config("batch_limit", 10)
        db.set_config("batch_limit", 20)
        assert db.get_config("batch_limit") == "20"
        assert [row["key"] for row in db.list_config()] == ["batch_limit"]

    def test_count_by_status(self, db):
        db.enqueue_job(signal=SIGNAL, job_id="a")
        db.enqueue_job(signal=SIGNAL, job_id="b")
        db.claim_jobs(1)
        assert db.count_by_status() == {CLAIMED: 1, PENDING: 1}
