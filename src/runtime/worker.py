from __future__ import annotations

import logging
import sqlite3
import threading
import time
from enum import Enum
from typing import Any

from src.agents.report_generator import ReportGenerator
from src.config.load_config import AppConfig, WorkerConfig
from src.llm.openai_compat import LLMConfigError, OpenAICompatibleChatClient
from src.runtime.interfaces import JobStore, RunLookup, TraceSink
from src.runtime.pipeline import ReportPipeline
from src.runtime.run_status import RunStatusTracker
from src.runtime.scheduler import PollingScheduler
from src.storage.sqlite_store import (
    JOB_STATUS_DONE,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_PROCESSING,
    JobRecord,
    SQLiteStore,
)
from src.utils.cancel import CancellationToken
from src.utils.errors import NoWorkAvailable


logger = logging.getLogger(__name__)


WORKER_RESTARTED = "worker_restarted"


class CycleOutcome(str, Enum):
    IDLE = "idle"
    COMPLETED = "completed"
    REQUEUED = "requeued"
    FAILED = "failed"


def build_report_generator(cfg: AppConfig) -> ReportGenerator | None:
    """Missing credentials are not fatal: the worker runs and fails each job with a clear error."""
    try:
        llm = OpenAICompatibleChatClient.from_config(cfg.llm)
    except LLMConfigError as e:
        logger.warning("%s Worker will fail jobs that require report generation.", e)
        return None
    logger.info("report generator initialized model=%s timeout_s=%.1f", cfg.llm.model, cfg.llm.timeout_s)
    return ReportGenerator(llm, temperature=cfg.llm.temperature)


class RunWorker:
    """Polling worker: claims one job per tick and drives it to a terminal state.

    Cycle: claim -> run "processing" -> pipeline -> run "completed"/"failed"
    -> job done / requeued / failed. Exceptions inside a cycle never escape
    the loop; they are logged and turned into a job outcome.
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        runs: RunLookup,
        pipeline: ReportPipeline,
        config: WorkerConfig,
        trace: TraceSink | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._jobs = jobs
        self._tracker = RunStatusTracker(runs)
        self._pipeline = pipeline
        self._config = config
        self._trace = trace
        self._cancel = cancel or CancellationToken()
        self._scheduler = PollingScheduler(interval_s=config.poll_interval_s, cancel=self._cancel)
        self._thread: threading.Thread | None = None
        self._cycles = 0
        self._last_outcome: CycleOutcome | None = None

    @classmethod
    def from_app_config(
        cls,
        cfg: AppConfig,
        store: SQLiteStore,
        *,
        cancel: CancellationToken | None = None,
    ) -> "RunWorker":
        pipeline = ReportPipeline(
            runs=store,
            resumes=store,
            reports=store,
            generator=build_report_generator(cfg),
            trace=store,
            artifacts_dir=cfg.artifacts.base_dir,
        )
        return cls(jobs=store, runs=store, pipeline=pipeline, config=cfg.worker, trace=store, cancel=cancel)

    @property
    def worker_id(self) -> str:
        return self._config.worker_id

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "worker_id": self.worker_id,
            "poll_interval_s": self._scheduler.interval_s,
            "cycles": self._cycles,
            "last_outcome": self._last_outcome.value if self._last_outcome is not None else None,
        }

    # --- Background thread mode (embedded in the API process)
    def start(self) -> None:
        """Run the loop in a daemon thread. A token cancelled before start stops it at once."""
        if self.running:
            return
        self._thread = threading.Thread(target=self.run_forever, name=f"run-worker-{self.worker_id}", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> bool:
        """Request cancellation and wait up to `timeout_s`. Returns True if the loop exited."""
        self._cancel.request_cancel()
        t = self._thread
        if t is None:
            return True
        t.join(timeout=timeout_s)
        return not t.is_alive()

    # --- Loop
    def run_forever(self, *, max_ticks: int | None = None) -> int:
        logger.info(
            "worker started worker_id=%s poll_interval_s=%.2f", self.worker_id, self._config.poll_interval_s
        )
        if self._config.reconcile_on_startup:
            try:
                released = self.reconcile_orphaned_jobs()
                if released:
                    logger.warning("released %d orphaned jobs worker_id=%s", released, self.worker_id)
            except Exception:
                logger.exception("startup reconciliation failed worker_id=%s", self.worker_id)

        ticks = self._scheduler.run(self._tick, max_ticks=max_ticks)
        logger.info("worker stopping worker_id=%s cycles=%d", self.worker_id, ticks)
        return ticks

    def _tick(self) -> None:
        try:
            self.run_once()
        except Exception:
            # Never crash the worker loop.
            logger.exception("error processing job worker_id=%s", self.worker_id)

    def reconcile_orphaned_jobs(self) -> int:
        """Release jobs a previous process left running under this worker id.

        Only locks older than `reconcile_lease_s` are released, so another live
        process configured with the same id keeps its in-flight job. Jobs whose
        run already completed are closed as done and the run is left alone;
        the others follow the normal retry policy and their runs are marked failed.
        """
        locked_before = time.time() - self._config.reconcile_lease_s
        released = self._jobs.release_jobs_locked_by(
            self.worker_id,
            reason=WORKER_RESTARTED,
            locked_before=locked_before,
        )
        for job in released:
            if job.status != JOB_STATUS_DONE:
                try:
                    self._tracker.set_status(job.run_id, RUN_STATUS_FAILED, WORKER_RESTARTED)
                except Exception as e:
                    logger.error("failed to mark orphaned run failed run_id=%s error=%s", job.run_id, e)
            self._emit(job.run_id, "job_released", {"job_id": job.job_id, "status": job.status, "reason": WORKER_RESTARTED})
        return len(released)

    def run_once(self) -> CycleOutcome:
        """One claim-and-process cycle."""
        outcome = self._cycle()
        self._cycles += 1
        self._last_outcome = outcome
        return outcome

    def _cycle(self) -> CycleOutcome:
        try:
            job = self._jobs.claim_next_job(self.worker_id)
        except NoWorkAvailable:
            logger.debug("no work available worker_id=%s", self.worker_id)
            return CycleOutcome.IDLE
        except sqlite3.Error as e:
            logger.error("claim failed worker_id=%s error=%s", self.worker_id, e)
            return CycleOutcome.IDLE

        logger.info(
            "claimed job job_id=%s run_id=%s attempt=%d/%d worker_id=%s",
            job.job_id,
            job.run_id,
            job.attempts,
            job.max_attempts,
            self.worker_id,
        )
        self._emit(
            job.run_id,
            "job_claimed",
            {"job_id": job.job_id, "worker_id": self.worker_id, "attempt": job.attempts, "max_attempts": job.max_attempts},
        )

        try:
            self._tracker.set_status(job.run_id, RUN_STATUS_PROCESSING)
        except Exception as e:
            logger.error("failed to update run status to processing run_id=%s error=%s", job.run_id, e)
            return self._fail_job(job, f"failed to update run status: {e}", requeue=job.can_retry)

        try:
            self._pipeline.process(job.run_id)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error("failed to process run run_id=%s error=%s", job.run_id, error)
            try:
                self._tracker.set_status(job.run_id, RUN_STATUS_FAILED, error)
            except Exception as e2:
                logger.error("failed to update run status to failed run_id=%s error=%s", job.run_id, e2)
            self._emit(job.run_id, "run_failed", {"job_id": job.job_id, "error": error, "error_type": type(e).__name__})
            return self._fail_job(job, error, requeue=job.can_retry)

        try:
            self._tracker.set_status(job.run_id, RUN_STATUS_COMPLETED)
        except Exception as e:
            logger.error("failed to update run status to completed run_id=%s error=%s", job.run_id, e)
            error = f"failed to update run status: {e}"
            try:
                self._tracker.set_status(job.run_id, RUN_STATUS_FAILED, error)
            except Exception as e2:
                logger.error("failed to update run status to failed run_id=%s error=%s", job.run_id, e2)
            self._emit(job.run_id, "run_failed", {"job_id": job.job_id, "error": error, "error_type": type(e).__name__})
            # Report already persisted; retrying would only repeat side effects.
            return self._fail_job(job, error, requeue=False)

        try:
            self._jobs.mark_job_done(job.job_id, worker_id=self.worker_id)
        except Exception as e:
            # Job stays running under this worker id until startup reconciliation.
            logger.error("failed to mark job as done job_id=%s error=%s", job.job_id, e)
            return CycleOutcome.FAILED

        self._emit(job.run_id, "run_completed", {"job_id": job.job_id, "attempt": job.attempts})
        logger.info("job completed job_id=%s run_id=%s worker_id=%s", job.job_id, job.run_id, self.worker_id)
        return CycleOutcome.COMPLETED

    def _fail_job(self, job: JobRecord, error: str, *, requeue: bool) -> CycleOutcome:
        try:
            self._jobs.mark_job_failed(job.job_id, error, requeue=requeue, worker_id=self.worker_id)
        except Exception as e:
            logger.error("failed to mark job as failed job_id=%s error=%s", job.job_id, e)
            return CycleOutcome.FAILED

        if requeue:
            logger.info(
                "job requeued job_id=%s attempt=%d/%d error=%s", job.job_id, job.attempts, job.max_attempts, error
            )
            self._emit(job.run_id, "job_requeued", {"job_id": job.job_id, "attempt": job.attempts, "error": error})
            return CycleOutcome.REQUEUED

        logger.warning(
            "job failed job_id=%s attempt=%d/%d error=%s", job.job_id, job.attempts, job.max_attempts, error
        )
        self._emit(job.run_id, "job_failed", {"job_id": job.job_id, "attempt": job.attempts, "error": error})
        return CycleOutcome.FAILED

    def _emit(self, run_id: str, event_type: str, payload: dict[str, Any]) -> None:
        if self._trace is None:
            return
        try:
            self._trace.append_event(run_id, event_type, payload)
        except Exception:
            # Trace is best effort; it must not change the job outcome.
            logger.exception("failed to record trace event %s run_id=%s", event_type, run_id)
