from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sqlite3
import sys

from src.config.load_config import ConfigError, load_app_config
from src.runtime.worker import RunWorker
from src.storage.sqlite_store import SQLiteStore
from src.utils.cancel import CancellationToken
from src.utils.log import configure_logging


logger = logging.getLogger("src.cli.worker")


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the resume analysis worker (SQLite-backed job queue).")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env RESUME_TAILOR_SQLITE_PATH or storage.sqlite_path).",
    )
    parser.add_argument("--worker-id", default="", help="Override WORKER_ID / worker.worker_id.")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between claim attempts.")
    parser.add_argument("--max-attempts", type=int, default=None, help="Override worker.max_attempts.")
    parser.add_argument("--log-level", default="", help="Override RESUME_TAILOR_LOG_LEVEL (default INFO).")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single claim-and-process cycle, print its outcome and exit.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    configure_logging(args.log_level or None)

    try:
        cfg = load_app_config()
    except ConfigError as e:
        logger.error("invalid configuration: %s", e)
        return 2

    worker_cfg = cfg.worker
    if args.worker_id:
        worker_cfg = dataclasses.replace(worker_cfg, worker_id=str(args.worker_id).strip())
    if args.poll_interval is not None:
        if args.poll_interval <= 0:
            raise SystemExit(f"poll_interval must be > 0, got {args.poll_interval}")
        worker_cfg = dataclasses.replace(worker_cfg, poll_interval_s=float(args.poll_interval))
    if args.max_attempts is not None:
        if args.max_attempts < 1:
            raise SystemExit(f"max_attempts must be >= 1, got {args.max_attempts}")
        worker_cfg = dataclasses.replace(worker_cfg, max_attempts=int(args.max_attempts))
    cfg = dataclasses.replace(cfg, worker=worker_cfg)

    db_path = args.db_path or cfg.storage.sqlite_path
    try:
        store = SQLiteStore(db_path)
    except sqlite3.Error as e:
        logger.error("failed to open store db_path=%s error=%s", db_path, e)
        return 1

    cancel = CancellationToken()
    worker = RunWorker.from_app_config(cfg, store, cancel=cancel)
    try:
        if args.once:
            outcome = worker.run_once()
            print(outcome.value)
            return 0

        def _handle_signal(signum: int, _frame: object) -> None:
            logger.info("received %s, finishing in-flight job", signal.Signals(signum).name)
            cancel.request_cancel()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

        worker.start()
        while worker.running and not cancel.wait(0.5):
            pass

        if not worker.stop(timeout_s=cfg.worker.shutdown_grace_s):
            logger.warning(
                "worker did not stop within %.1fs; abandoning in-flight job worker_id=%s",
                cfg.worker.shutdown_grace_s,
                worker.worker_id,
            )
            return 1
        logger.info("worker stopped worker_id=%s", worker.worker_id)
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
