"""Agent task orchestrator: scheduler, durable queue, workers, and executor.

Why not Celery / Dramatiq / RQ?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not moving job ids between processes. It is keeping a
multi-step task row consistent while jobs are redelivered: claiming a task
so two workers never advance it together, checkpointing the step cursor and
the credit charge in one transaction, and letting a paused task resume from
exactly the step it stopped at. All of that lives next to the task row.

The queue table sits in the same SQLite database, so enqueue, claim, and
checkpoint share one storage policy and one migration history. A separate
broker would add an operational dependency while the worker would still
need the claim and checkpoint logic below.
"""
