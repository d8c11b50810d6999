"""Reconciliation core: resource states, intents, event bus and handlers.

This package drives cluster-backed resources (sandboxes, databases) toward the
desired state recorded in SQLite:
  claim (storage) -> derive intent -> emit on the bus -> handler calls the
  cluster backend -> update status -> recompute project status

It has no HTTP dependency, so the API process and the standalone CLI share it.
"""
