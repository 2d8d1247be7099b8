from __future__ import annotations

from fastapi import Header, Request

from src.api.errors import APIError
from src.config.load_config import AppConfig


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """FastAPI dependency: caller identity from the `X-User-Id` header.

    Session auth is out of scope; the header is trusted as-is.
    """
    uid = (x_user_id or "").strip()
    if not uid:
        raise APIError(status_code=401, code="unauthenticated", message="Missing X-User-Id header.")
    return uid


def get_app_config(request: Request) -> AppConfig:
    """FastAPI dependency: the config resolved once by `create_app()`."""
    return request.app.state.config
