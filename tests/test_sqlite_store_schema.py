from __future__ import annotations

import sqlite3
import tempfile

import pytest

from src.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore
from src.utils.errors import InvalidInputError, NotFoundError


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def test_migration_creates_all_tables() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            for name in ("meta", "resumes", "runs", "jobs", "events", "run_reports", "run_artifacts"):
                assert _table_exists(store._conn, name), name
            assert store._get_schema_version() == SCHEMA_VERSION
        finally:
            store.close()

        # Reopening an up-to-date database is a no-op.
        store = SQLiteStore(db_path)
        try:
            assert store._get_schema_version() == SCHEMA_VERSION
        finally:
            store.close()


def test_update_run_status_stamps_times_and_error() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            resume = store.create_resume(user_id="u1", title="cv", content_text="text")
            run = store.create_run(user_id="u1", resume_id=resume.resume_id, job_text="job")

            store.update_run_status(run.run_id, "processing")
            r = store.get_run(run_id=run.run_id)
            assert r is not None
            assert r.status == "processing"
            assert r.started_at is not None
            assert r.ended_at is None
            started_at = r.started_at

            store.update_run_status(run.run_id, "failed", error="upstream down")
            r = store.get_run(run_id=run.run_id)
            assert r is not None
            assert r.status == "failed"
            assert r.error_message == "upstream down"
            assert r.ended_at is not None

            # Retry: processing again keeps the first start time and clears the end time.
            store.update_run_status(run.run_id, "processing")
            store.update_run_status(run.run_id, "completed")
            r = store.get_run(run_id=run.run_id)
            assert r is not None
            assert r.status == "completed"
            assert r.error_message is None
            assert r.started_at == started_at

            with pytest.raises(InvalidInputError):
                store.update_run_status(run.run_id, "paused")
            with pytest.raises(NotFoundError):
                store.update_run_status("run_missing", "failed", error="x")
        finally:
            store.close()


def test_upsert_run_report_keeps_one_row_last_write_wins() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            resume = store.create_resume(user_id="u1", title="cv", content_text="text")
            run = store.create_run(user_id="u1", resume_id=resume.resume_id, job_text="job")

            store.upsert_run_report(run_id=run.run_id, ats_report={"score": 0.1, "notes": []}, change_plan={"changes": []})
            store.upsert_run_report(
                run_id=run.run_id,
                ats_report={"score": 0.8, "notes": ["good"]},
                change_plan={"changes": ["add SQL"]},
            )

            assert store.count_run_reports(run_id=run.run_id) == 1
            report = store.get_run_report(run_id=run.run_id)
            assert report is not None
            assert report.ats_report == {"score": 0.8, "notes": ["good"]}
            assert report.change_plan == {"changes": ["add SQL"]}
        finally:
            store.close()


def test_create_run_requires_existing_resume() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            with pytest.raises(NotFoundError):
                store.create_run(user_id="u1", resume_id="resume_missing", job_text="job")
            with pytest.raises(InvalidInputError):
                store.create_run(user_id="u1", resume_id="resume_x", job_text="   ")
        finally:
            store.close()


def test_list_runs_page_is_scoped_to_user_and_paginates() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            mine = store.create_resume(user_id="u1", title="cv", content_text="text")
            theirs = store.create_resume(user_id="u2", title="cv", content_text="text")
            ids = [store.create_run(user_id="u1", resume_id=mine.resume_id, job_text=f"job {i}").run_id for i in range(3)]
            store.create_run(user_id="u2", resume_id=theirs.resume_id, job_text="other")

            page1 = store.list_runs_page(user_id="u1", limit=2, cursor=None)
            assert page1["has_more"] is True
            assert len(page1["items"]) == 2
            page2 = store.list_runs_page(user_id="u1", limit=2, cursor=page1["next_cursor"])
            assert page2["has_more"] is False
            assert page2["next_cursor"] is None

            seen = [r["run_id"] for r in page1["items"] + page2["items"]]
            assert sorted(seen) == sorted(ids)
        finally:
            store.close()
