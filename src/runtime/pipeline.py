from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any

from src.runtime.interfaces import ReportGeneratorLike, ReportStore, ResumeLookup, RunLookup, Scorer, TraceSink
from src.tools.bm25_signals import compute_signals
from src.utils.errors import NotFoundError, PersistenceFailure, UpstreamFailure


logger = logging.getLogger(__name__)


MISSING_CREDENTIALS_ERROR = "OPENAI_API_KEY missing"


def artifact_paths(base_dir: str, run_id: str) -> tuple[str, str]:
    base = (base_dir or "/generated").rstrip("/")
    return f"{base}/{run_id}/resume.tex", f"{base}/{run_id}/resume.pdf"


def placeholder_resume_spec() -> dict[str, Any]:
    # LaTeX/PDF rendering is not implemented; the artifact row only reserves paths.
    return {"version": "1.0", "sections": ["placeholder section"], "timestamp": int(time.time())}


class ReportPipeline:
    """Produces and persists the report for one run.

    Steps: load run + resume, compute lexical signals (best effort), generate
    the report, upsert the report, upsert the placeholder artifact. Any step
    but the signal computation aborts the run by raising.
    """

    def __init__(
        self,
        *,
        runs: RunLookup,
        resumes: ResumeLookup,
        reports: ReportStore,
        generator: ReportGeneratorLike | None,
        scorer: Scorer = compute_signals,
        trace: TraceSink | None = None,
        artifacts_dir: str = "/generated",
    ) -> None:
        self._runs = runs
        self._resumes = resumes
        self._reports = reports
        self._generator = generator
        self._scorer = scorer
        self._trace = trace
        self._artifacts_dir = artifacts_dir

    def process(self, run_id: str) -> None:
        # Checked before any lookup: without credentials no job can succeed.
        if self._generator is None:
            raise UpstreamFailure(MISSING_CREDENTIALS_ERROR)

        run = self._runs.get_run(run_id=run_id)
        if run is None:
            raise NotFoundError(f"failed to load run: run not found: {run_id}")
        resume = self._resumes.get_resume(resume_id=run.resume_id)
        if resume is None:
            raise NotFoundError(f"failed to load resume: resume not found: {run.resume_id}")

        resume_text = resume.content_text
        job_text = run.job_text

        signals: dict[str, Any] | None
        try:
            signals = self._scorer(resume_text, job_text)
        except Exception as e:
            logger.warning("BM25 computation failed, continuing without signals run_id=%s error=%r", run_id, e)
            self._emit(run_id, "signals_failed", {"error": f"{type(e).__name__}: {e}"})
            signals = None

        report, plan = self._generator.generate(resume_text, job_text, signals)
        self._emit(
            run_id,
            "report_generated",
            {"score": report.score, "n_notes": len(report.notes), "n_changes": len(plan.changes)},
        )

        try:
            self._reports.upsert_run_report(run_id=run_id, ats_report=report.to_dict(), change_plan=plan.to_dict())
        except sqlite3.Error as e:
            raise PersistenceFailure(f"failed to upsert run report: {e}") from e

        latex_path, pdf_path = artifact_paths(self._artifacts_dir, run_id)
        try:
            self._reports.upsert_run_artifact(
                run_id=run_id,
                resume_spec=placeholder_resume_spec(),
                latex_path=latex_path,
                pdf_path=pdf_path,
            )
        except sqlite3.Error as e:
            raise PersistenceFailure(f"failed to upsert run artifact: {e}") from e

    def _emit(self, run_id: str, event_type: str, payload: dict[str, Any]) -> None:
        if self._trace is None:
            return
        try:
            self._trace.append_event(run_id, event_type, payload)
        except sqlite3.Error:
            logger.exception("failed to record trace event %s run_id=%s", event_type, run_id)
