"""Task orchestration core: cron jobs, agent task queue and sub-agents.

Why not APScheduler / Celery beat?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Scheduling itself is the easy part; `croniter` computes the next fire time.
What no generic scheduler gives us is the ledger around each run:

- One running execution per job, enforced by a partial unique index and a
  compare-and-set claim on the job row, so two pollers cannot double-fire.
- Retries folded into a single ledger row with summed token usage.
- Tenant scoping on every read and write, applied in one place.
- A startup sweep that turns runs orphaned by a crash into `interrupted`
  failures instead of leaving them `running` forever.

A job store plugged into a third-party scheduler would still need all of this
as custom code, plus a second source of truth for `next_run_at`. One asyncio
poll loop over SQLite keeps the state in one file and one process.
"""
