from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.api.errors import (
    APIError,
    api_error_handler,
    run_queue_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from src.config.load_config import AppConfig, load_app_config
from src.runtime.worker import RunWorker
from src.storage.sqlite_store import SQLiteStore
from src.utils.errors import RunQueueError
from src.utils.log import configure_logging

from .routers.health import router as health_router
from .routers.resumes import router as resumes_router
from .routers.runs import router as runs_router


logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("RESUME_TAILOR_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app(cfg: AppConfig | None = None) -> FastAPI:
    """Build the app. The config is resolved once here and shared through `app.state.config`."""
    cfg = cfg or load_app_config()

    def _env_bool(name: str, default: bool) -> bool:
        raw = os.getenv(name)
        if raw is None:
            return default
        v = raw.strip().lower()
        if v in {"1", "true", "yes", "y", "on"}:
            return True
        if v in {"0", "false", "no", "n", "off"}:
            return False
        return default

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        configure_logging()
        # Creates/migrates the schema before the first request.
        SQLiteStore(cfg.storage.sqlite_path).close()

        # Optional in-process worker; production runs `src.cli.worker` separately.
        if _env_bool("RESUME_TAILOR_ENABLE_WORKER", False):
            worker_store = SQLiteStore(cfg.storage.sqlite_path)
            worker = RunWorker.from_app_config(cfg, worker_store)
            worker.start()
            app.state.run_worker = worker
            app.state.run_worker_store = worker_store
            logger.info("embedded worker started worker_id=%s", worker.worker_id)
        try:
            yield
        finally:
            worker = getattr(app.state, "run_worker", None)
            if worker is not None:
                if not worker.stop():
                    logger.warning("embedded worker did not stop in time worker_id=%s", worker.worker_id)
                else:
                    app.state.run_worker_store.close()

    app = FastAPI(title="Resume Tailor API", version="0.1.0", lifespan=lifespan)
    app.state.config = cfg

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RunQueueError, run_queue_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # CORS (for a browser frontend in dev / local deployments).
    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(resumes_router, prefix="/api/v1", tags=["resumes"])
    app.include_router(runs_router, prefix="/api/v1", tags=["runs"])

    return app


app = create_app()
