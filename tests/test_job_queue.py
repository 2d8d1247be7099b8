from __future__ import annotations

import tempfile
import threading
import time

import pytest

from src.storage.sqlite_store import SQLiteStore
from src.utils.errors import InvalidInputError, NoWorkAvailable, NotFoundError, PersistenceFailure


def _seed_run(store: SQLiteStore, *, user_id: str = "u1") -> str:
    resume = store.create_resume(user_id=user_id, title="cv", content_text="Python developer\n\nSQL, FastAPI")
    run = store.create_run(user_id=user_id, resume_id=resume.resume_id, job_text="Senior Python engineer")
    return run.run_id


def test_claim_empty_queue_raises_and_writes_nothing() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            with pytest.raises(NoWorkAvailable):
                store.claim_next_job("w1")
            assert store.count_jobs_by_status() == {}
        finally:
            store.close()


def test_enqueue_then_claim_locks_and_increments_attempts() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run_id = _seed_run(store)
            job_id = store.enqueue(run_id, max_attempts=3)

            queued = store.get_job(job_id=job_id)
            assert queued is not None
            assert queued.status == "queued"
            assert queued.attempts == 0
            assert queued.locked_by is None

            job = store.claim_next_job("w1")
            assert job.job_id == job_id
            assert job.run_id == run_id
            assert job.status == "running"
            assert job.attempts == 1
            assert job.locked_by == "w1"
            assert job.locked_at is not None

            with pytest.raises(NoWorkAvailable):
                store.claim_next_job("w2")
        finally:
            store.close()


def test_claim_is_fifo_by_creation_time() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            job_ids = [store.enqueue(_seed_run(store)) for _ in range(3)]
            claimed = [store.claim_next_job("w1").job_id for _ in range(3)]
            assert claimed == job_ids
        finally:
            store.close()


def test_enqueue_allows_duplicates_for_same_run() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run_id = _seed_run(store)
            a = store.enqueue(run_id)
            b = store.enqueue(run_id)
            assert a != b
            assert [j.job_id for j in store.list_jobs_for_run(run_id=run_id)] == [a, b]
        finally:
            store.close()


def test_enqueue_rejects_invalid_input() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            with pytest.raises(InvalidInputError):
                store.enqueue("")
            with pytest.raises(InvalidInputError):
                store.enqueue(_seed_run(store), max_attempts=0)
            with pytest.raises(NotFoundError):
                store.enqueue("run_missing")
            with pytest.raises(InvalidInputError):
                store.claim_next_job("  ")
            assert store.count_jobs_by_status() == {}
        finally:
            store.close()


def test_create_run_with_job_is_atomic() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            resume = store.create_resume(user_id="u1", title="cv", content_text="text")
            run, job = store.create_run_with_job(
                user_id="u1", resume_id=resume.resume_id, job_text="job", max_attempts=2
            )
            assert run.status == "created"
            assert job.run_id == run.run_id
            assert job.max_attempts == 2

            with pytest.raises(NotFoundError):
                store.create_run_with_job(user_id="u1", resume_id="resume_missing", job_text="job")
            assert store.count_runs_by_status() == {"created": 1}
            assert store.count_jobs_by_status() == {"queued": 1}
        finally:
            store.close()


def test_concurrent_claimers_never_share_a_job() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        seed = SQLiteStore(db_path)
        try:
            expected = {seed.enqueue(_seed_run(seed)) for _ in range(12)}
        finally:
            seed.close()

        n_workers = 4
        barrier = threading.Barrier(n_workers)
        claimed: dict[str, list[str]] = {}
        errors: list[BaseException] = []

        def _claim_all(worker_id: str) -> None:
            store = SQLiteStore(db_path, busy_timeout_s=30.0)
            mine: list[str] = []
            try:
                barrier.wait()
                while True:
                    try:
                        mine.append(store.claim_next_job(worker_id).job_id)
                    except NoWorkAvailable:
                        break
            except BaseException as e:  # surfaced to the main thread below
                errors.append(e)
            finally:
                claimed[worker_id] = mine
                store.close()

        threads = [threading.Thread(target=_claim_all, args=(f"w{i}",)) for i in range(n_workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert not errors
        all_claimed = [j for ids in claimed.values() for j in ids]
        assert len(all_claimed) == len(set(all_claimed))
        assert set(all_claimed) == expected

        check = SQLiteStore(db_path)
        try:
            for worker_id, ids in claimed.items():
                for job_id in ids:
                    job = check.get_job(job_id=job_id)
                    assert job is not None
                    assert job.locked_by == worker_id
                    assert job.attempts == 1
        finally:
            check.close()


def test_mark_job_done_requires_completed_run() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run_id = _seed_run(store)
            store.enqueue(run_id)
            job = store.claim_next_job("w1")

            store.update_run_status(run_id, "processing")
            with pytest.raises(PersistenceFailure):
                store.mark_job_done(job.job_id, worker_id="w1")

            store.update_run_status(run_id, "completed")
            store.mark_job_done(job.job_id, worker_id="w1")
            done = store.get_job(job_id=job.job_id)
            assert done is not None
            assert done.status == "done"
            assert done.locked_by is None

            with pytest.raises(NotFoundError):
                store.mark_job_done("job_missing", worker_id="w1")
        finally:
            store.close()


def test_mark_job_failed_requeue_vs_terminal() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run_id = _seed_run(store)
            store.enqueue(run_id, max_attempts=2)

            job = store.claim_next_job("w1")
            assert store.mark_job_failed(job.job_id, "boom", requeue=True, worker_id="w1") == "queued"
            requeued = store.get_job(job_id=job.job_id)
            assert requeued is not None
            assert requeued.status == "queued"
            assert requeued.locked_by is None
            assert requeued.last_error == "boom"

            job = store.claim_next_job("w2")
            assert job.attempts == 2
            assert not job.can_retry
            assert store.mark_job_failed(job.job_id, "boom again", requeue=False, worker_id="w2") == "failed"

            with pytest.raises(PersistenceFailure):
                store.mark_job_failed(job.job_id, "not running", requeue=True, worker_id="w2")
            with pytest.raises(NoWorkAvailable):
                store.claim_next_job("w1")
        finally:
            store.close()


def test_release_jobs_locked_by_applies_retry_policy() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            retryable = store.enqueue(_seed_run(store), max_attempts=3)
            exhausted = store.enqueue(_seed_run(store), max_attempts=1)
            other = store.enqueue(_seed_run(store), max_attempts=3)

            store.claim_next_job("w1")
            store.claim_next_job("w1")
            store.claim_next_job("w2")

            released = {j.job_id: j for j in store.release_jobs_locked_by("w1", reason="worker_restarted")}
            assert set(released) == {retryable, exhausted}
            assert released[retryable].status == "queued"
            assert released[exhausted].status == "failed"
            assert released[exhausted].last_error == "worker_restarted"

            untouched = store.get_job(job_id=other)
            assert untouched is not None
            assert untouched.status == "running"
            assert untouched.locked_by == "w2"
        finally:
            store.close()


def test_stale_owner_cannot_finish_a_reclaimed_job() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run_id = _seed_run(store)
            store.enqueue(run_id, max_attempts=3)

            stale = store.claim_next_job("w1")
            store.release_jobs_locked_by("w1", reason="worker_restarted")
            current = store.claim_next_job("w2")
            assert current.job_id == stale.job_id
            store.update_run_status(run_id, "completed")

            with pytest.raises(PersistenceFailure):
                store.mark_job_done(stale.job_id, worker_id="w1")
            with pytest.raises(PersistenceFailure):
                store.mark_job_failed(stale.job_id, "late failure", requeue=True, worker_id="w1")

            job = store.get_job(job_id=stale.job_id)
            assert job is not None
            assert job.status == "running"
            assert job.locked_by == "w2"

            store.mark_job_done(current.job_id, worker_id="w2")
            done = store.get_job(job_id=current.job_id)
            assert done is not None
            assert done.status == "done"
        finally:
            store.close()


def test_release_skips_jobs_locked_within_lease() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            job_id = store.enqueue(_seed_run(store))
            store.claim_next_job("w1")

            assert store.release_jobs_locked_by("w1", reason="worker_restarted", locked_before=time.time() - 300) == []
            held = store.get_job(job_id=job_id)
            assert held is not None
            assert held.status == "running"
            assert held.locked_by == "w1"

            released = store.release_jobs_locked_by("w1", reason="worker_restarted", locked_before=time.time() + 1)
            assert [j.job_id for j in released] == [job_id]
            assert released[0].status == "queued"
        finally:
            store.close()


def test_release_closes_job_whose_run_already_completed() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            run_id = _seed_run(store)
            job_id = store.enqueue(run_id, max_attempts=3)
            store.claim_next_job("w1")
            # Crash between the run's completed write and the job's done write.
            store.update_run_status(run_id, "completed")

            released = store.release_jobs_locked_by("w1", reason="worker_restarted")
            assert [j.status for j in released] == ["done"]

            run = store.get_run(run_id=run_id)
            assert run is not None
            assert run.status == "completed"
            with pytest.raises(NoWorkAvailable):
                store.claim_next_job("w1")
            assert store.get_job(job_id=job_id) is not None
        finally:
            store.close()


def test_create_run_with_job_reports_vanished_job(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            resume = store.create_resume(user_id="u1", title="cv", content_text="text")
            monkeypatch.setattr(store, "get_job", lambda *, job_id: None)
            with pytest.raises(PersistenceFailure):
                store.create_run_with_job(user_id="u1", resume_id=resume.resume_id, job_text="job")
        finally:
            store.close()
