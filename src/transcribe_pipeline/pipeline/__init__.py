"""Job pipeline core: admission, durable queue, workers and stall recovery.

Why not Celery / RQ / Dramatiq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Lease ownership, quota metering and provider fallback are the hard parts of
this package, not message transport.  A claim here is a single conditional
UPDATE against the job row, so the job store stays the only source of truth:
status, attempts, stall counts and the audit trail live together and every
transition is guarded by the expected status and lease token.  A broker would
add a second system of record for a single-node, SQLite-backed service that
still needs all of the above as custom logic inside the broker's worker.
"""
