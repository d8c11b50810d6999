from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from src.reconcile.types import ResourceKind
from src.storage.sqlite_store import SCHEMA_VERSION
from src.storage.sqlite_store import SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "devenv-reconciler",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "pydantic": _pkg_version("pydantic"),
            "uvicorn": _pkg_version("uvicorn"),
        },
        "ts": time.time(),
    }


@router.get("/system/reconciler")
def system_reconciler(request: Request) -> dict[str, Any]:
    scheduler = getattr(request.app.state, "reconciler", None)
    snapshot: dict[str, Any] = {"enabled": scheduler is not None, "running": False}
    if scheduler is not None:
        snapshot.update(scheduler.status_snapshot())

    store = SQLiteStore()
    try:
        return {
            "ts": time.time(),
            "reconciler": snapshot,
            "resources": {kind.value: store.count_resources_by_status(kind) for kind in ResourceKind},
            "projects_by_status": store.count_projects_by_status(),
        }
    finally:
        store.close()
