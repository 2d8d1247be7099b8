from __future__ import annotations

import sqlite3

from src.runtime.interfaces import RunLookup
from src.storage.sqlite_store import RUN_STATUS_COMPLETED, RUN_STATUSES
from src.utils.errors import InvalidInputError, PersistenceFailure


class RunStatusTracker:
    """Writes run lifecycle status on behalf of the worker.

    Only mutates status/error; retry decisions belong to the worker.
    """

    def __init__(self, runs: RunLookup) -> None:
        self._runs = runs

    def set_status(self, run_id: str, status: str, error_message: str | None = None) -> None:
        if status not in RUN_STATUSES:
            raise InvalidInputError(f"Invalid run status: {status!r}")
        if status == RUN_STATUS_COMPLETED:
            error_message = None
        try:
            self._runs.update_run_status(run_id, status, error=error_message)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"failed to set run {run_id} status={status}: {e}") from e
