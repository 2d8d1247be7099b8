from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from src.config.load_config import load_app_config
from src.storage.sqlite_store import SQLiteStore
from src.utils.errors import RunQueueError


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a resume + run and enqueue it for the worker.")
    parser.add_argument("--user-id", required=True, help="Owner of the resume and run.")
    parser.add_argument("--resume-file", default="", help="Plain-text resume to upload.")
    parser.add_argument("--resume-id", default="", help="Reuse an existing resume instead of uploading.")
    parser.add_argument("--title", default="", help="Resume title (default: file name).")
    parser.add_argument("--job-file", default="", help="File with the job description.")
    parser.add_argument("--job-text", default="", help="Job description text (alternative to --job-file).")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env RESUME_TAILOR_SQLITE_PATH or storage.sqlite_path).",
    )
    return parser.parse_args(argv)


def _read_text(path: str) -> str:
    p = Path(path).expanduser()
    if not p.exists():
        raise SystemExit(f"File not found: {p}")
    return p.read_text(encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    if bool(args.resume_file) == bool(args.resume_id):
        raise SystemExit("Provide exactly one of --resume-file or --resume-id.")

    job_text = _read_text(args.job_file) if args.job_file else str(args.job_text)
    if not job_text.strip():
        raise SystemExit("Provide a non-empty job description (--job-file or --job-text).")

    cfg = load_app_config()
    store = SQLiteStore(args.db_path or cfg.storage.sqlite_path)
    try:
        resume_id = str(args.resume_id)
        if args.resume_file:
            title = args.title or Path(args.resume_file).name
            resume = store.create_resume(
                user_id=str(args.user_id),
                title=title,
                content_text=_read_text(args.resume_file),
            )
            resume_id = resume.resume_id
        run, job = store.create_run_with_job(
            user_id=str(args.user_id),
            resume_id=resume_id,
            job_text=job_text,
            max_attempts=cfg.worker.max_attempts,
        )
    except RunQueueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(json.dumps({"resume_id": resume_id, "run_id": run.run_id, "job_id": job.job_id}))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
