from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from src.utils.errors import InvalidInputError, NoWorkAvailable, NotFoundError, PersistenceFailure


SCHEMA_VERSION = 2

JOB_TYPE_PROCESS_RUN = "process_run"

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_RUNNING = "running"
JOB_STATUS_FAILED = "failed"
JOB_STATUS_DONE = "done"
JOB_STATUSES = (JOB_STATUS_QUEUED, JOB_STATUS_RUNNING, JOB_STATUS_FAILED, JOB_STATUS_DONE)

RUN_STATUS_CREATED = "created"
RUN_STATUS_QUEUED = "queued"
RUN_STATUS_PROCESSING = "processing"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"
RUN_STATUSES = (
    RUN_STATUS_CREATED,
    RUN_STATUS_QUEUED,
    RUN_STATUS_PROCESSING,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
)
TERMINAL_RUN_STATUSES = frozenset({RUN_STATUS_COMPLETED, RUN_STATUS_FAILED})

DEFAULT_MAX_ATTEMPTS = 3

# Upper bound on queued rows inspected per claim.
_CLAIM_SCAN_LIMIT = 16


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_loads(raw: Any) -> Any:
    if raw is None:
        return None
    return json.loads(str(raw))


def _require_id(value: str | None, *, name: str) -> str:
    s = (value or "").strip()
    if not s:
        raise InvalidInputError(f"{name} is required.")
    return s


def default_db_path() -> str:
    return os.getenv("RESUME_TAILOR_SQLITE_PATH", "data/app.db")


@dataclass(frozen=True)
class ResumeRecord:
    resume_id: str
    user_id: str
    title: str
    content_text: str
    created_at: float
    updated_at: float


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    user_id: str
    resume_id: str
    job_text: str
    status: str
    error_message: str | None
    created_at: float
    updated_at: float
    started_at: float | None = None
    ended_at: float | None = None


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    type: str
    run_id: str
    status: str
    attempts: int
    max_attempts: int
    locked_by: str | None
    locked_at: float | None
    last_error: str | None
    created_at: float
    updated_at: float

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts


@dataclass(frozen=True)
class RunReportRecord:
    run_id: str
    ats_report: dict[str, Any]
    change_plan: dict[str, Any]
    created_at: float


@dataclass(frozen=True)
class RunArtifactRecord:
    run_id: str
    resume_spec: dict[str, Any]
    latex_path: str
    pdf_path: str
    created_at: float


def _row_to_resume(row: sqlite3.Row) -> ResumeRecord:
    return ResumeRecord(
        resume_id=str(row["resume_id"]),
        user_id=str(row["user_id"]),
        title=str(row["title"]),
        content_text=str(row["content_text"]),
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
    )


def _row_to_run(row: sqlite3.Row) -> RunRecord:
    return RunRecord(
        run_id=str(row["run_id"]),
        user_id=str(row["user_id"]),
        resume_id=str(row["resume_id"]),
        job_text=str(row["job_text"]),
        status=str(row["status"]),
        error_message=row["error_message"],
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
        started_at=float(row["started_at"]) if row["started_at"] is not None else None,
        ended_at=float(row["ended_at"]) if row["ended_at"] is not None else None,
    )


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        job_id=str(row["job_id"]),
        type=str(row["type"]),
        run_id=str(row["run_id"]),
        status=str(row["status"]),
        attempts=int(row["attempts"]),
        max_attempts=int(row["max_attempts"]),
        locked_by=row["locked_by"],
        locked_at=float(row["locked_at"]) if row["locked_at"] is not None else None,
        last_error=row["last_error"],
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
    )


def run_to_dict(run: RunRecord) -> dict[str, Any]:
    return {
        "run_id": run.run_id,
        "user_id": run.user_id,
        "resume_id": run.resume_id,
        "job_text": run.job_text,
        "status": run.status,
        "error_message": run.error_message,
        "created_at": run.created_at,
        "updated_at": run.updated_at,
        "started_at": run.started_at,
        "ended_at": run.ended_at,
    }


_JOB_COLUMNS = (
    "job_id, type, run_id, status, attempts, max_attempts, locked_by, locked_at, "
    "last_error, created_at, updated_at"
)
_RUN_COLUMNS = (
    "run_id, user_id, resume_id, job_text, status, error_message, created_at, updated_at, "
    "started_at, ended_at"
)


class SQLiteStore:
    """SQLite-backed store for resumes, runs, the job queue and per-run reports.

    Several worker processes may share one database file. WAL mode keeps
    readers off the writer lock; every claim runs inside a short
    `BEGIN IMMEDIATE` transaction so two claimers never take the same job.
    """

    def __init__(self, db_path: str | Path | None = None, *, busy_timeout_s: float = 5.0) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # The connection is owned by one thread at a time (API request or worker
        # loop); it is created on one thread and handed to the worker thread.
        self._conn = sqlite3.connect(str(self.db_path), timeout=busy_timeout_s, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, so a concurrent claimer
        cannot read the same queued row between our SELECT and UPDATE.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1): resumes/runs/jobs/events.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS resumes (
              resume_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              title TEXT NOT NULL,
              content_text TEXT NOT NULL,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              resume_id TEXT NOT NULL,
              job_text TEXT NOT NULL,
              status TEXT NOT NULL,
              error_message TEXT,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              started_at REAL,
              ended_at REAL,
              FOREIGN KEY (resume_id) REFERENCES resumes(resume_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              type TEXT NOT NULL,
              run_id TEXT NOT NULL,
              status TEXT NOT NULL,
              attempts INTEGER NOT NULL DEFAULT 0,
              max_attempts INTEGER NOT NULL DEFAULT 3,
              locked_by TEXT,
              locked_at REAL,
              last_error TEXT,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              FOREIGN KEY (run_id) REFERENCES runs(run_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              event_id TEXT PRIMARY KEY,
              run_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              FOREIGN KEY (run_id) REFERENCES runs(run_id)
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_resumes_user_created ON resumes(user_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_user_created ON runs(user_id, created_at, run_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(type, status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_run ON jobs(run_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_locked_by ON jobs(locked_by, status);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_run_ts ON events(run_id, created_at, event_id);")

        # New databases start at schema_version=1 and migrate forward explicitly.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN IMMEDIATE;")
        try:
            # Another process may have migrated while we waited for the lock.
            current = self._get_schema_version()
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Worker outputs: one report and one artifact row per run (upserted).
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS run_reports (
              run_id TEXT PRIMARY KEY,
              ats_report_json TEXT NOT NULL,
              change_plan_json TEXT NOT NULL,
              created_at REAL NOT NULL,
              FOREIGN KEY (run_id) REFERENCES runs(run_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS run_artifacts (
              run_id TEXT PRIMARY KEY,
              resume_spec_json TEXT NOT NULL,
              latex_path TEXT NOT NULL,
              pdf_path TEXT NOT NULL,
              created_at REAL NOT NULL,
              FOREIGN KEY (run_id) REFERENCES runs(run_id)
            );
            """
        )

    # --- Resumes
    def create_resume(self, *, user_id: str, title: str, content_text: str) -> ResumeRecord:
        uid = _require_id(user_id, name="user_id")
        title_s = (title or "").strip()
        if not title_s:
            raise InvalidInputError("title is required.")
        if not (content_text or "").strip():
            raise InvalidInputError("content_text is required.")

        resume_id = _new_id("resume")
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO resumes(resume_id, user_id, title, content_text, created_at, updated_at)
            VALUES(?, ?, ?, ?, ?, ?);
            """,
            (resume_id, uid, title_s, content_text, ts, ts),
        )
        self._conn.commit()
        return ResumeRecord(
            resume_id=resume_id,
            user_id=uid,
            title=title_s,
            content_text=content_text,
            created_at=ts,
            updated_at=ts,
        )

    def get_resume(self, *, resume_id: str) -> ResumeRecord | None:
        rid = _require_id(resume_id, name="resume_id")
        row = self._conn.execute(
            """
            SELECT resume_id, user_id, title, content_text, created_at, updated_at
            FROM resumes
            WHERE resume_id = ?
            LIMIT 1;
            """,
            (rid,),
        ).fetchone()
        return _row_to_resume(row) if row is not None else None

    def list_resumes_for_user(self, *, user_id: str, limit: int = 20, offset: int = 0) -> list[ResumeRecord]:
        uid = _require_id(user_id, name="user_id")
        limit = min(max(int(limit), 1), 100)
        offset = max(int(offset), 0)
        rows = self._conn.execute(
            """
            SELECT resume_id, user_id, title, content_text, created_at, updated_at
            FROM resumes
            WHERE user_id = ?
            ORDER BY created_at DESC, resume_id DESC
            LIMIT ? OFFSET ?;
            """,
            (uid, limit, offset),
        ).fetchall()
        return [_row_to_resume(r) for r in rows]

    # --- Runs
    def create_run(self, *, user_id: str, resume_id: str, job_text: str, commit: bool = True) -> RunRecord:
        uid = _require_id(user_id, name="user_id")
        rid = _require_id(resume_id, name="resume_id")
        text = (job_text or "").strip()
        if not text:
            raise InvalidInputError("job_text is required.")

        run_id = _new_id("run")
        ts = _utc_ts()
        try:
            self._conn.execute(
                """
                INSERT INTO runs(run_id, user_id, resume_id, job_text, status, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?);
                """,
                (run_id, uid, rid, text, RUN_STATUS_CREATED, ts, ts),
            )
        except sqlite3.IntegrityError as e:
            if commit:
                self._conn.rollback()
            raise NotFoundError(f"Resume not found: {rid}") from e
        if commit:
            self._conn.commit()
        return RunRecord(
            run_id=run_id,
            user_id=uid,
            resume_id=rid,
            job_text=text,
            status=RUN_STATUS_CREATED,
            error_message=None,
            created_at=ts,
            updated_at=ts,
        )

    def create_run_with_job(
        self,
        *,
        user_id: str,
        resume_id: str,
        job_text: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> tuple[RunRecord, JobRecord]:
        """Submission path: create the run and its single job atomically."""
        with self.transaction(mode="IMMEDIATE"):
            run = self.create_run(user_id=user_id, resume_id=resume_id, job_text=job_text, commit=False)
            job_id = self.enqueue(run.run_id, max_attempts=max_attempts, commit=False)
            job = self.get_job(job_id=job_id)
        if job is None:
            raise PersistenceFailure(f"Job {job_id} missing right after enqueue for run {run.run_id}.")
        return run, job

    def get_run(self, *, run_id: str) -> RunRecord | None:
        rid = _require_id(run_id, name="run_id")
        row = self._conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = ? LIMIT 1;",
            (rid,),
        ).fetchone()
        return _row_to_run(row) if row is not None else None

    def update_run_status(self, run_id: str, status: str, *, error: str | None = None) -> None:
        """Set run status and error message.

        `error` replaces the stored message, so passing None clears it.
        Terminal statuses stamp `ended_at`; re-entering `processing` on a retry
        clears it again.
        """
        rid = _require_id(run_id, name="run_id")
        if status not in RUN_STATUSES:
            raise InvalidInputError(f"Invalid run status: {status!r}")

        ts = _utc_ts()
        started_at = ts if status == RUN_STATUS_PROCESSING else None
        ended_at = ts if status in TERMINAL_RUN_STATUSES else None
        cur = self._conn.execute(
            """
            UPDATE runs
            SET
              status = ?,
              error_message = ?,
              updated_at = ?,
              started_at = COALESCE(started_at, ?),
              ended_at = ?
            WHERE run_id = ?;
            """,
            (status, error, ts, started_at, ended_at, rid),
        )
        self._conn.commit()
        if cur.rowcount == 0:
            raise NotFoundError(f"Run not found: {rid}")

    def list_runs_page(
        self,
        *,
        user_id: str,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None = None,
    ) -> dict[str, Any]:
        uid = _require_id(user_id, name="user_id")
        where = ["user_id = ?"]
        params: list[Any] = [uid]

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, run_id = cursor
            where.append("(created_at < ? OR (created_at = ? AND run_id < ?))")
            params.extend([float(created_at), float(created_at), str(run_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT {_RUN_COLUMNS}
            FROM runs
            WHERE {where_sql}
            ORDER BY created_at DESC, run_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [run_to_dict(_row_to_run(r)) for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["run_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_runs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM runs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Job queue
    def enqueue(
        self,
        run_id: str,
        *,
        job_type: str = JOB_TYPE_PROCESS_RUN,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        commit: bool = True,
    ) -> str:
        """Insert a queued job for `run_id` and return its id.

        Calling this twice for the same run creates two jobs.
        """
        rid = _require_id(run_id, name="run_id")
        if int(max_attempts) < 1:
            raise InvalidInputError(f"max_attempts must be >= 1, got {max_attempts}")

        job_id = _new_id("job")
        ts = _utc_ts()
        try:
            self._conn.execute(
                """
                INSERT INTO jobs(job_id, type, run_id, status, attempts, max_attempts, created_at, updated_at)
                VALUES(?, ?, ?, ?, 0, ?, ?, ?);
                """,
                (job_id, job_type, rid, JOB_STATUS_QUEUED, int(max_attempts), ts, ts),
            )
        except sqlite3.IntegrityError as e:
            if commit:
                self._conn.rollback()
            raise NotFoundError(f"Run not found: {rid}") from e
        if commit:
            self._conn.commit()
        return job_id

    def get_job(self, *, job_id: str) -> JobRecord | None:
        jid = _require_id(job_id, name="job_id")
        row = self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ? LIMIT 1;",
            (jid,),
        ).fetchone()
        return _row_to_job(row) if row is not None else None

    def list_jobs_for_run(self, *, run_id: str) -> list[JobRecord]:
        rid = _require_id(run_id, name="run_id")
        rows = self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE run_id = ? ORDER BY created_at ASC, rowid ASC;",
            (rid,),
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    def count_jobs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def claim_next_job(self, worker_id: str, *, job_type: str = JOB_TYPE_PROCESS_RUN) -> JobRecord:
        """Atomically claim the oldest queued job and mark it running.

        The update is conditional on the row still being queued and unlocked,
        so a row another claimer already took is skipped, never waited on.
        Raises NoWorkAvailable (without writing anything) when the queue is empty.
        """
        wid = _require_id(worker_id, name="worker_id")

        with self.transaction(mode="IMMEDIATE"):
            candidates = self._conn.execute(
                """
                SELECT job_id
                FROM jobs
                WHERE type = ? AND status = ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?;
                """,
                (job_type, JOB_STATUS_QUEUED, _CLAIM_SCAN_LIMIT),
            ).fetchall()

            ts = _utc_ts()
            for row in candidates:
                job_id = str(row["job_id"])
                updated = self._conn.execute(
                    """
                    UPDATE jobs
                    SET
                      status = ?,
                      locked_by = ?,
                      locked_at = ?,
                      attempts = attempts + 1,
                      updated_at = ?
                    WHERE job_id = ? AND status = ? AND locked_by IS NULL;
                    """,
                    (JOB_STATUS_RUNNING, wid, ts, ts, job_id, JOB_STATUS_QUEUED),
                )
                if updated.rowcount == 1:
                    return self.get_job(job_id=job_id)  # type: ignore[return-value]

        raise NoWorkAvailable(f"No queued {job_type} jobs.")

    def mark_job_done(self, job_id: str, *, worker_id: str) -> None:
        """running -> done, only for the worker holding the lock and only once the run is completed."""
        jid = _require_id(job_id, name="job_id")
        wid = _require_id(worker_id, name="worker_id")
        cur = self._conn.execute(
            """
            UPDATE jobs
            SET
              status = ?,
              locked_by = NULL,
              locked_at = NULL,
              updated_at = ?
            WHERE job_id = ?
              AND status = ?
              AND locked_by = ?
              AND EXISTS (
                SELECT 1 FROM runs WHERE runs.run_id = jobs.run_id AND runs.status = ?
              );
            """,
            (JOB_STATUS_DONE, _utc_ts(), jid, JOB_STATUS_RUNNING, wid, RUN_STATUS_COMPLETED),
        )
        self._conn.commit()
        if cur.rowcount == 1:
            return

        job = self.get_job(job_id=jid)
        if job is None:
            raise NotFoundError(f"Job not found: {jid}")
        raise PersistenceFailure(
            f"Job {jid} cannot be marked done by {wid} "
            f"(status={job.status!r}, locked_by={job.locked_by!r}, or run not completed)."
        )

    def mark_job_failed(self, job_id: str, error: str, *, requeue: bool, worker_id: str) -> str:
        """running -> queued (requeue=True) or running -> failed. Returns the new status.

        Refused unless `worker_id` still holds the lock, so a worker whose job
        was released and re-claimed cannot overwrite the new owner's outcome.
        """
        jid = _require_id(job_id, name="job_id")
        wid = _require_id(worker_id, name="worker_id")
        new_status = JOB_STATUS_QUEUED if requeue else JOB_STATUS_FAILED
        cur = self._conn.execute(
            """
            UPDATE jobs
            SET
              status = ?,
              last_error = ?,
              locked_by = NULL,
              locked_at = NULL,
              updated_at = ?
            WHERE job_id = ? AND status = ? AND locked_by = ?;
            """,
            (new_status, str(error), _utc_ts(), jid, JOB_STATUS_RUNNING, wid),
        )
        self._conn.commit()
        if cur.rowcount == 0:
            job = self.get_job(job_id=jid)
            if job is None:
                raise NotFoundError(f"Job not found: {jid}")
            raise PersistenceFailure(
                f"Job {jid} is not held by {wid} (status={job.status!r}, locked_by={job.locked_by!r})."
            )
        return new_status

    def release_jobs_locked_by(
        self,
        worker_id: str,
        *,
        reason: str,
        locked_before: float | None = None,
    ) -> list[JobRecord]:
        """Release jobs left running under `worker_id` (e.g. after a crash).

        Only jobs locked before `locked_before` (when given) are touched, so a
        live process sharing the id keeps its in-flight job. A job whose run
        already completed is closed as done; any other goes back to queued if
        it has attempts left, else to failed. Returns the released jobs in
        their new state.
        """
        wid = _require_id(worker_id, name="worker_id")
        ts = _utc_ts()
        where = ["locked_by = ?", "status = ?"]
        params: list[Any] = [wid, JOB_STATUS_RUNNING]
        if locked_before is not None:
            where.append("locked_at < ?")
            params.append(float(locked_before))

        with self.transaction(mode="IMMEDIATE"):
            rows = self._conn.execute(
                f"SELECT job_id FROM jobs WHERE {' AND '.join(where)};",
                params,
            ).fetchall()
            job_ids = [str(r["job_id"]) for r in rows]
            for jid in job_ids:
                self._conn.execute(
                    """
                    UPDATE jobs
                    SET
                      status = CASE
                        WHEN EXISTS (
                          SELECT 1 FROM runs WHERE runs.run_id = jobs.run_id AND runs.status = ?
                        ) THEN ?
                        WHEN attempts < max_attempts THEN ?
                        ELSE ?
                      END,
                      last_error = ?,
                      locked_by = NULL,
                      locked_at = NULL,
                      updated_at = ?
                    WHERE job_id = ? AND status = ?;
                    """,
                    (
                        RUN_STATUS_COMPLETED,
                        JOB_STATUS_DONE,
                        JOB_STATUS_QUEUED,
                        JOB_STATUS_FAILED,
                        reason,
                        ts,
                        jid,
                        JOB_STATUS_RUNNING,
                    ),
                )
            released = [self.get_job(job_id=jid) for jid in job_ids]
        return [j for j in released if j is not None]

    # --- Reports / artifacts (one row per run, last write wins)
    def upsert_run_report(self, *, run_id: str, ats_report: dict[str, Any], change_plan: dict[str, Any]) -> None:
        rid = _require_id(run_id, name="run_id")
        self._conn.execute(
            """
            INSERT INTO run_reports(run_id, ats_report_json, change_plan_json, created_at)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
              ats_report_json = excluded.ats_report_json,
              change_plan_json = excluded.change_plan_json,
              created_at = excluded.created_at;
            """,
            (rid, _json_dumps(ats_report), _json_dumps(change_plan), _utc_ts()),
        )
        self._conn.commit()

    def get_run_report(self, *, run_id: str) -> RunReportRecord | None:
        rid = _require_id(run_id, name="run_id")
        row = self._conn.execute(
            """
            SELECT run_id, ats_report_json, change_plan_json, created_at
            FROM run_reports
            WHERE run_id = ?
            LIMIT 1;
            """,
            (rid,),
        ).fetchone()
        if row is None:
            return None
        return RunReportRecord(
            run_id=str(row["run_id"]),
            ats_report=_json_loads(row["ats_report_json"]) or {},
            change_plan=_json_loads(row["change_plan_json"]) or {},
            created_at=float(row["created_at"]),
        )

    def count_run_reports(self, *, run_id: str) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM run_reports WHERE run_id = ?;", (run_id,)).fetchone()
        return int(row["n"])

    def upsert_run_artifact(
        self,
        *,
        run_id: str,
        resume_spec: dict[str, Any],
        latex_path: str,
        pdf_path: str,
    ) -> None:
        rid = _require_id(run_id, name="run_id")
        self._conn.execute(
            """
            INSERT INTO run_artifacts(run_id, resume_spec_json, latex_path, pdf_path, created_at)
            VALUES(?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
              resume_spec_json = excluded.resume_spec_json,
              latex_path = excluded.latex_path,
              pdf_path = excluded.pdf_path,
              created_at = excluded.created_at;
            """,
            (rid, _json_dumps(resume_spec), latex_path, pdf_path, _utc_ts()),
        )
        self._conn.commit()

    def get_run_artifact(self, *, run_id: str) -> RunArtifactRecord | None:
        rid = _require_id(run_id, name="run_id")
        row = self._conn.execute(
            """
            SELECT run_id, resume_spec_json, latex_path, pdf_path, created_at
            FROM run_artifacts
            WHERE run_id = ?
            LIMIT 1;
            """,
            (rid,),
        ).fetchone()
        if row is None:
            return None
        return RunArtifactRecord(
            run_id=str(row["run_id"]),
            resume_spec=_json_loads(row["resume_spec_json"]) or {},
            latex_path=str(row["latex_path"]),
            pdf_path=str(row["pdf_path"]),
            created_at=float(row["created_at"]),
        )

    # --- Events (trace)
    def append_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = _new_id("evt")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO events(event_id, run_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, run_id, created_at, event_type, _json_dumps(payload)),
        )
        self._conn.commit()
        return event_id

    def list_events(self, *, run_id: str, limit: int = 200) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT event_id, run_id, created_at, event_type, payload_json
            FROM events
            WHERE run_id = ?
            ORDER BY created_at ASC, event_id ASC
            LIMIT ?;
            """,
            (run_id, int(limit)),
        ).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "run_id": r["run_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": _json_loads(r["payload_json"]),
            }
            for r in rows
        ]
