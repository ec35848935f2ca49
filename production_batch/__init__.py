"""
production_batch -- Production run orchestration.

Turns workflow templates into batches with a step snapshot, advances steps
through their state machine, derives batch outcome from step outcomes, and
groups batches under day-level schedules.

Architecture:
    production_batch/ is a top-level package.  It imports from
    production_kernel and production_config; neither imports back.

Invariants:
    - Batch terminal status (completed/failed) is written only by
      the ProgressionEngine completion check; cancelled only by
      ProgressionEngine.cancel_batch.
    - Every mutating engine call locks its batch row first.
    - No service calls datetime.now(); time comes from the injected Clock.
    - No service commits; the caller's transaction is the unit of work.
"""
