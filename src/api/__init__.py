"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface to:
- create/list projects and read their resources
- request start/stop/delete of a project or a single resource
- fetch resource trace events and reconciler status

The API is intentionally thin: core behavior lives in `src/reconcile`, `src/runtime` and `src/storage`.
"""
