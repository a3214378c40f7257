"""
Generic background jobs.

This package provides the push-dispatched side of the orchestrator:
- Postgres-backed queue with a one-active-job-per-type mutex
- Dispatcher tick that reaps stuck jobs and claims the next one
- Fixed-ladder retry policy
- Worker contract (outbound execute call and inbound callbacks)
"""
