from __future__ import annotations

import os
import socket
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    v = str(value).strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _env(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


@dataclass(frozen=True)
class StorageConfig:
    sqlite_path: str


@dataclass(frozen=True)
class WorkerConfig:
    worker_id: str
    poll_interval_s: float
    max_attempts: int
    reconcile_on_startup: bool
    shutdown_grace_s: float
    # Only jobs locked longer ago than this are released at startup.
    reconcile_lease_s: float = 300.0


@dataclass(frozen=True)
class LLMConfig:
    model: str
    api_base: str
    api_key: str | None
    timeout_s: float
    temperature: float


@dataclass(frozen=True)
class ArtifactsConfig:
    base_dir: str


@dataclass(frozen=True)
class AppConfig:
    storage: StorageConfig
    worker: WorkerConfig
    llm: LLMConfig
    artifacts: ArtifactsConfig


DEFAULT_CONFIG_PATH = "config/default.toml"


def default_worker_id() -> str:
    """Unique per process, so replicas started from the same config never share locks."""
    return f"{socket.gethostname()}-{os.getpid()}"


def default_config_path() -> Path:
    return Path(os.getenv("RESUME_TAILOR_CONFIG_PATH", DEFAULT_CONFIG_PATH)).expanduser().resolve()


def _read_toml(path: Path | None) -> dict[str, Any]:
    explicit = path is not None or _env("RESUME_TAILOR_CONFIG_PATH") is not None
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {cfg_path}")
        # Running outside the repo root: built-in defaults only.
        return {}
    try:
        return tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e


def load_app_config(path: Path | None = None) -> AppConfig:
    """Load config from TOML, then apply environment overrides.

    Precedence: environment > TOML file > built-in defaults.
    `OPENAI_API_KEY` is read from the environment only.
    """
    raw = _read_toml(path)

    storage = raw.get("storage", {})
    worker = raw.get("worker", {})
    llm = raw.get("llm", {})
    artifacts = raw.get("artifacts", {})

    sqlite_path = _env("RESUME_TAILOR_SQLITE_PATH") or storage.get("sqlite_path", "data/app.db")

    worker_id = _env("WORKER_ID") or worker.get("worker_id") or default_worker_id()
    poll_interval_s = _as_float(
        _env("RESUME_TAILOR_POLL_INTERVAL_S") or worker.get("poll_interval_s", 1.0),
        key="worker.poll_interval_s",
    )
    max_attempts = _as_int(
        _env("RESUME_TAILOR_MAX_ATTEMPTS") or worker.get("max_attempts", 3),
        key="worker.max_attempts",
    )
    reconcile_on_startup = _as_bool(
        _env("RESUME_TAILOR_RECONCILE_ON_STARTUP") or worker.get("reconcile_on_startup", True),
        key="worker.reconcile_on_startup",
    )
    shutdown_grace_s = _as_float(worker.get("shutdown_grace_s", 30.0), key="worker.shutdown_grace_s")
    reconcile_lease_s = _as_float(worker.get("reconcile_lease_s", 300.0), key="worker.reconcile_lease_s")

    if not str(worker_id).strip():
        raise ConfigError("Invalid worker.worker_id: empty string")
    if poll_interval_s <= 0:
        raise ConfigError(f"Invalid worker.poll_interval_s: must be > 0, got {poll_interval_s}")
    if max_attempts < 1:
        raise ConfigError(f"Invalid worker.max_attempts: must be >= 1, got {max_attempts}")
    if shutdown_grace_s < 0:
        raise ConfigError(f"Invalid worker.shutdown_grace_s: must be >= 0, got {shutdown_grace_s}")
    if reconcile_lease_s < 0:
        raise ConfigError(f"Invalid worker.reconcile_lease_s: must be >= 0, got {reconcile_lease_s}")

    timeout_s = _as_float(llm.get("timeout_s", 60.0), key="llm.timeout_s")
    if timeout_s <= 0:
        raise ConfigError(f"Invalid llm.timeout_s: must be > 0, got {timeout_s}")

    return AppConfig(
        storage=StorageConfig(sqlite_path=_as_str(sqlite_path, key="storage.sqlite_path")),
        worker=WorkerConfig(
            worker_id=str(worker_id).strip(),
            poll_interval_s=poll_interval_s,
            max_attempts=max_attempts,
            reconcile_on_startup=reconcile_on_startup,
            shutdown_grace_s=shutdown_grace_s,
            reconcile_lease_s=reconcile_lease_s,
        ),
        llm=LLMConfig(
            model=_env("OPENAI_MODEL") or _as_str(llm.get("model", "gpt-4o-mini"), key="llm.model"),
            api_base=_env("OPENAI_API_BASE")
            or _env("OPENAI_BASE_URL")
            or _as_str(llm.get("api_base", "https://api.openai.com/v1"), key="llm.api_base"),
            api_key=_env("OPENAI_API_KEY"),
            timeout_s=timeout_s,
            temperature=_as_float(llm.get("temperature", 0.2), key="llm.temperature"),
        ),
        artifacts=ArtifactsConfig(
            base_dir=_as_str(artifacts.get("base_dir", "/generated"), key="artifacts.base_dir"),
        ),
    )
