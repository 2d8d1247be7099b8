from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.api.dependencies import get_app_config, get_user_id
from src.api.errors import APIError
from src.config.load_config import AppConfig
from src.storage.sqlite_store import ResumeRecord, SQLiteStore


router = APIRouter()


class CreateResumeRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    content_text: str = Field(min_length=1, description="Plain-text resume content.")


def _resume_to_dict(resume: ResumeRecord, *, include_content: bool) -> dict[str, Any]:
    out: dict[str, Any] = {
        "resume_id": resume.resume_id,
        "user_id": resume.user_id,
        "title": resume.title,
        "created_at": resume.created_at,
        "updated_at": resume.updated_at,
    }
    if include_content:
        out["content_text"] = resume.content_text
    return out


@router.post("/resumes", status_code=201)
def create_resume(
    body: CreateResumeRequest,
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore(cfg.storage.sqlite_path)
    try:
        resume = store.create_resume(user_id=user_id, title=body.title, content_text=body.content_text)
        return {"resume": _resume_to_dict(resume, include_content=False)}
    finally:
        store.close()


@router.get("/resumes")
def list_resumes(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore(cfg.storage.sqlite_path)
    try:
        items = store.list_resumes_for_user(user_id=user_id, limit=int(limit), offset=int(offset))
        return {"items": [_resume_to_dict(r, include_content=False) for r in items]}
    finally:
        store.close()


@router.get("/resumes/{resume_id}")
def get_resume(
    resume_id: str,
    user_id: str = Depends(get_user_id),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore(cfg.storage.sqlite_path)
    try:
        resume = store.get_resume(resume_id=resume_id)
        # Another user's resume is indistinguishable from a missing one.
        if resume is None or resume.user_id != user_id:
            raise APIError(status_code=404, code="not_found", message="Resume not found.")
        return {"resume": _resume_to_dict(resume, include_content=True)}
    finally:
        store.close()
