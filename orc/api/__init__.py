"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface to:
- submit jobs and read their status
- list jobs by status and read a job's event trace
- request cancellation

The API is intentionally thin: core behavior lives in `orc/runtime` and `orc/storage`.
"""
