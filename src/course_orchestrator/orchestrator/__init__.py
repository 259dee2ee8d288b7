"""Control plane for course generation jobs.

A submitted job becomes a fixed graph of tasks in SQLite. The scheduler claims
ready tasks with compare-and-set updates, gates each dispatch through the
per-user rate limiter and runs them on a bounded thread pool. Every outcome
goes through the recovery manager, which owns retries, escalation and the
operator actions (retry, skip, pause, resume, smart recovery).
"""
