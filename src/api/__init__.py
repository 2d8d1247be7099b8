"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface to:
- upload and list resumes
- submit runs and poll their status
- fetch the finished report and the run trace

The API is intentionally thin: core behavior lives in `src/runtime` and `src/storage`.
"""

