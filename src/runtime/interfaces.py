from __future__ import annotations

from typing import Any, Protocol

from src.agents.report_generator import ChangePlan, ScoreReport
from src.storage.sqlite_store import JobRecord, ResumeRecord, RunRecord, RunReportRecord


class JobStore(Protocol):
    def claim_next_job(self, worker_id: str) -> JobRecord: ...

    def mark_job_done(self, job_id: str, *, worker_id: str) -> None: ...

    def mark_job_failed(self, job_id: str, error: str, *, requeue: bool, worker_id: str) -> str: ...

    def release_jobs_locked_by(
        self,
        worker_id: str,
        *,
        reason: str,
        locked_before: float | None = None,
    ) -> list[JobRecord]: ...


class RunLookup(Protocol):
    def get_run(self, *, run_id: str) -> RunRecord | None: ...

    def update_run_status(self, run_id: str, status: str, *, error: str | None = None) -> None: ...


class ResumeLookup(Protocol):
    def get_resume(self, *, resume_id: str) -> ResumeRecord | None: ...


class ReportStore(Protocol):
    def upsert_run_report(self, *, run_id: str, ats_report: dict[str, Any], change_plan: dict[str, Any]) -> None: ...

    def upsert_run_artifact(
        self,
        *,
        run_id: str,
        resume_spec: dict[str, Any],
        latex_path: str,
        pdf_path: str,
    ) -> None: ...

    def get_run_report(self, *, run_id: str) -> RunReportRecord | None: ...


class TraceSink(Protocol):
    def append_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> str: ...


class Scorer(Protocol):
    def __call__(self, resume_text: str, job_text: str) -> dict[str, Any]: ...


class ReportGeneratorLike(Protocol):
    def generate(
        self,
        resume_text: str,
        job_text: str,
        signals: dict[str, Any] | None,
    ) -> tuple[ScoreReport, ChangePlan]: ...
