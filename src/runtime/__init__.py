"""Runtime orchestration (worker loop, report pipeline).

This layer is responsible for:
- claiming queued jobs from SQLite
- producing and persisting the report for the claimed run
- updating run/job statuses and applying the retry policy

It should remain independent from the HTTP layer (`src/api`), so both CLI and API
can reuse the same execution logic.
"""

