from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from fastapi import Query
from pydantic import BaseModel, Field

from src.api.errors import APIError, api_error_from_store
from src.reconcile.state_machine import REQUESTABLE_STATUSES
from src.reconcile.types import ResourceKind, parse_kind, parse_status
from src.storage.sqlite_store import SQLiteStore, StoreError


router = APIRouter()


class ResourceTransitionRequest(BaseModel):
    target: str = Field(description="STARTING, STOPPING or TERMINATING.")
    reason: str | None = Field(default=None, max_length=500)


def _kind(value: str) -> ResourceKind:
    try:
        return parse_kind(value)
    except ValueError as e:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=str(e),
            details={"allowed": [k.value for k in ResourceKind]},
        ) from e


@router.get("/resources/{kind}/{resource_id}")
def get_resource(kind: str, resource_id: str) -> dict[str, Any]:
    resource_kind = _kind(kind)
    store = SQLiteStore()
    try:
        record = store.get_resource(resource_kind, resource_id)
        if record is None:
            raise APIError(status_code=404, code="not_found", message="Resource not found.")
        return {"resource": record.to_public_dict()}
    finally:
        store.close()


@router.get("/resources/{kind}/{resource_id}/events")
def list_resource_events(
    kind: str,
    resource_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    event_type: str | None = Query(default=None),
) -> dict[str, Any]:
    resource_kind = _kind(kind)
    store = SQLiteStore()
    try:
        if store.get_resource(resource_kind, resource_id) is None:
            raise APIError(status_code=404, code="not_found", message="Resource not found.")
        return {"items": store.list_events(resource_id=resource_id, event_type=event_type, limit=int(limit))}
    finally:
        store.close()


@router.post("/resources/{kind}/{resource_id}/transition")
def request_transition(kind: str, resource_id: str, body: ResourceTransitionRequest) -> dict[str, Any]:
    resource_kind = _kind(kind)
    try:
        target = parse_status(body.target)
    except ValueError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
    if target not in REQUESTABLE_STATUSES:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"Status {target.value} cannot be requested.",
            details={"allowed": sorted(s.value for s in REQUESTABLE_STATUSES)},
        )

    store = SQLiteStore()
    try:
        try:
            record = store.request_transition(resource_kind, resource_id, target, reason=body.reason)
        except (StoreError, ValueError) as e:
            raise api_error_from_store(e) from e
        return {"resource": record.to_public_dict()}
    finally:
        store.close()
