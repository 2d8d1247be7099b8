from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from src.storage.sqlite_store import SCHEMA_VERSION
from src.storage.sqlite_store import SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "resume-tailor",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "pydantic": _pkg_version("pydantic"),
            "openai": _pkg_version("openai"),
        },
        "ts": time.time(),
    }


@router.get("/system/worker")
def system_worker(request: Request) -> dict[str, Any]:
    # Embedded worker state (if any) plus queue depth for debugging.
    worker = getattr(request.app.state, "run_worker", None)
    worker_snapshot: dict[str, Any] = {"enabled": worker is not None, "running": False}
    if worker is not None:
        worker_snapshot.update(worker.status_snapshot())

    store = SQLiteStore(request.app.state.config.storage.sqlite_path)
    try:
        return {
            "ts": time.time(),
            "worker": worker_snapshot,
            "queue": {
                "jobs_by_status": store.count_jobs_by_status(),
                "runs_by_status": store.count_runs_by_status(),
            },
        }
    finally:
        store.close()
