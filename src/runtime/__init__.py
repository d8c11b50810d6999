"""Runtime orchestration (background reconciliation).

This layer is responsible for:
- claiming due resources from SQLite on a fixed tick per resource kind
- dispatching each claimed row's intent on the event bus
- bounding per-batch parallelism

It should remain independent from the HTTP layer (`src/api`), so both CLI and API
can reuse the same reconciliation loop.
"""
