"""Runtime orchestration (scheduler, queue, worker pool).

This layer is responsible for:
- persisting job state transitions through a JobStore
- handing queued jobs to a bounded pool of worker threads
- enforcing per-attempt timeouts, retries and startup recovery

It should remain independent from the HTTP layer (`orc/api`), so both scripts
and the API can reuse the same execution logic.
"""
