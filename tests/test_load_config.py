from __future__ import annotations

import os
import socket
import tempfile
from pathlib import Path

import pytest

from src.config.load_config import ConfigError, default_worker_id, load_app_config


_ENV_KEYS = (
    "RESUME_TAILOR_CONFIG_PATH",
    "RESUME_TAILOR_SQLITE_PATH",
    "WORKER_ID",
    "RESUME_TAILOR_POLL_INTERVAL_S",
    "RESUME_TAILOR_MAX_ATTEMPTS",
    "RESUME_TAILOR_RECONCILE_ON_STARTUP",
    "OPENAI_MODEL",
    "OPENAI_API_BASE",
    "OPENAI_BASE_URL",
    "OPENAI_API_KEY",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def _write(td: str, body: str) -> Path:
    path = Path(td) / "cfg.toml"
    path.write_text(body, encoding="utf-8")
    return path


def test_defaults_without_config_file(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        monkeypatch.chdir(td)
        cfg = load_app_config()
        assert cfg.storage.sqlite_path == "data/app.db"
        assert cfg.worker.worker_id == f"{socket.gethostname()}-{os.getpid()}"
        assert cfg.worker.reconcile_lease_s == 300.0
        assert cfg.worker.poll_interval_s == 1.0
        assert cfg.worker.max_attempts == 3
        assert cfg.worker.reconcile_on_startup is True
        assert cfg.llm.model == "gpt-4o-mini"
        assert cfg.llm.api_key is None
        assert cfg.llm.timeout_s == 60.0
        assert cfg.artifacts.base_dir == "/generated"


def test_toml_values_then_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        path = _write(
            td,
            """
            [storage]
            sqlite_path = "var/queue.db"

            [worker]
            worker_id = "toml-worker"
            poll_interval_s = 2.5
            max_attempts = 5
            reconcile_on_startup = false
            reconcile_lease_s = 45

            [llm]
            model = "toml-model"
            timeout_s = 15
            """,
        )
        cfg = load_app_config(path)
        assert cfg.storage.sqlite_path == "var/queue.db"
        assert cfg.worker.worker_id == "toml-worker"
        assert cfg.worker.poll_interval_s == 2.5
        assert cfg.worker.max_attempts == 5
        assert cfg.worker.reconcile_on_startup is False
        assert cfg.worker.reconcile_lease_s == 45.0
        assert cfg.llm.model == "toml-model"
        assert cfg.llm.timeout_s == 15.0

        monkeypatch.setenv("WORKER_ID", "env-worker")
        monkeypatch.setenv("RESUME_TAILOR_POLL_INTERVAL_S", "0.25")
        monkeypatch.setenv("RESUME_TAILOR_MAX_ATTEMPTS", "2")
        monkeypatch.setenv("RESUME_TAILOR_SQLITE_PATH", os.path.join(td, "env.db"))
        monkeypatch.setenv("OPENAI_MODEL", "env-model")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        cfg = load_app_config(path)
        assert cfg.worker.worker_id == "env-worker"
        assert cfg.worker.poll_interval_s == 0.25
        assert cfg.worker.max_attempts == 2
        assert cfg.storage.sqlite_path == os.path.join(td, "env.db")
        assert cfg.llm.model == "env-model"
        assert cfg.llm.api_key == "sk-test"


def test_config_path_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        path = _write(td, '[worker]\nworker_id = "from-env-path"\n')
        monkeypatch.setenv("RESUME_TAILOR_CONFIG_PATH", str(path))
        assert load_app_config().worker.worker_id == "from-env-path"


def test_explicit_missing_file_is_an_error(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        with pytest.raises(ConfigError):
            load_app_config(Path(td) / "missing.toml")
        monkeypatch.setenv("RESUME_TAILOR_CONFIG_PATH", os.path.join(td, "missing.toml"))
        with pytest.raises(ConfigError):
            load_app_config()


@pytest.mark.parametrize(
    "body,key",
    [
        ("[worker]\npoll_interval_s = 0\n", "worker.poll_interval_s"),
        ("[worker]\nmax_attempts = 0\n", "worker.max_attempts"),
        ("[worker]\nmax_attempts = \"many\"\n", "worker.max_attempts"),
        ("[worker]\nreconcile_on_startup = \"maybe\"\n", "worker.reconcile_on_startup"),
        ("[worker]\nshutdown_grace_s = -1\n", "worker.shutdown_grace_s"),
        ("[worker]\nreconcile_lease_s = -5\n", "worker.reconcile_lease_s"),
        ("[worker]\nworker_id = \"  \"\n", "worker.worker_id"),
        ("[llm]\ntimeout_s = 0\n", "llm.timeout_s"),
        ("[worker\n", "Invalid TOML"),
    ],
)
def test_invalid_values_raise_config_error(body: str, key: str) -> None:
    with tempfile.TemporaryDirectory() as td:
        with pytest.raises(ConfigError) as e:
            load_app_config(_write(td, body))
        assert key in str(e.value)


def test_default_worker_id_is_unique_per_process() -> None:
    assert default_worker_id() == f"{socket.gethostname()}-{os.getpid()}"
