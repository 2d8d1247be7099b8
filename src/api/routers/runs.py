from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.api.dependencies import get_app_config, get_user_id
from src.api.errors import APIError
from src.api.pagination import Cursor, CursorError, decode_cursor, encode_next_cursor
from src.config.load_config import AppConfig
from src.storage.sqlite_store import RUN_STATUSES, RunRecord, SQLiteStore, run_to_dict


router = APIRouter()


class CreateRunRequest(BaseModel):
    resume_id: str = Field(min_length=1)
    job_text: str = Field(min_length=1, description="Job description to tailor the resume against.")


def _get_owned_run(store: SQLiteStore, *, run_id: str, user_id: str) -> RunRecord:
    run = store.get_run(run_id=run_id)
    if run is None or run.user_id != user_id:
        raise APIError(status_code=404, code="not_found", message="Run not found.")
    return run


@router.post("/runs", status_code=201)
def create_run(
    body: CreateRunRequest,
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore(cfg.storage.sqlite_path)
    try:
        resume = store.get_resume(resume_id=body.resume_id)
        if resume is None or resume.user_id != user_id:
            raise APIError(status_code=404, code="not_found", message="Resume not found.")
        if not body.job_text.strip():
            raise APIError(status_code=400, code="invalid_argument", message="job_text is required.")

        run, job = store.create_run_with_job(
            user_id=user_id,
            resume_id=resume.resume_id,
            job_text=body.job_text,
            max_attempts=cfg.worker.max_attempts,
        )
        store.append_event(run.run_id, "run_submitted", {"job_id": job.job_id, "max_attempts": job.max_attempts})
        return {"run": run_to_dict(run), "job_id": job.job_id}
    finally:
        store.close()


@router.get("/runs")
def list_runs(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    bad = [s for s in (status or []) if s not in RUN_STATUSES]
    if bad:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message="Invalid status filter.",
            details={"invalid": bad, "allowed": list(RUN_STATUSES)},
        )

    store = SQLiteStore(cfg.storage.sqlite_path)
    try:
        cursor_obj: Cursor | None = None
        if cursor:
            try:
                cursor_obj = decode_cursor(cursor)
            except CursorError as e:
                raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

        page = store.list_runs_page(
            user_id=user_id,
            limit=int(limit),
            cursor=cursor_obj.as_tuple() if cursor_obj is not None else None,
            statuses=status or None,
        )
        page["next_cursor"] = encode_next_cursor(page.get("next_cursor"))
        return page
    finally:
        store.close()


@router.get("/runs/{run_id}")
def get_run(
    run_id: str,
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore(cfg.storage.sqlite_path)
    try:
        run = _get_owned_run(store, run_id=run_id, user_id=user_id)
        jobs = store.list_jobs_for_run(run_id=run.run_id)
        return {
            "run": run_to_dict(run),
            "jobs": [
                {
                    "job_id": j.job_id,
                    "status": j.status,
                    "attempts": j.attempts,
                    "max_attempts": j.max_attempts,
                    "last_error": j.last_error,
                    "updated_at": j.updated_at,
                }
                for j in jobs
            ],
        }
    finally:
        store.close()


@router.get("/runs/{run_id}/report")
def get_run_report(
    run_id: str,
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore(cfg.storage.sqlite_path)
    try:
        run = _get_owned_run(store, run_id=run_id, user_id=user_id)
        report = store.get_run_report(run_id=run.run_id)
        if report is None:
            raise APIError(status_code=404, code="not_found", message="Report not ready.")
        artifact = store.get_run_artifact(run_id=run.run_id)
        return {
            "run_id": run.run_id,
            "status": run.status,
            "ats_report": report.ats_report,
            "change_plan": report.change_plan,
            "created_at": report.created_at,
            "artifact": (
                {"latex_path": artifact.latex_path, "pdf_path": artifact.pdf_path}
                if artifact is not None
                else None
            ),
        }
    finally:
        store.close()


@router.get("/runs/{run_id}/events")
def list_run_events(
    run_id: str,
    limit: int = Query(default=200, ge=1, le=1000),
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore(cfg.storage.sqlite_path)
    try:
        run = _get_owned_run(store, run_id=run_id, user_id=user_id)
        return {"run_id": run.run_id, "items": store.list_events(run_id=run.run_id, limit=int(limit))}
    finally:
        store.close()
