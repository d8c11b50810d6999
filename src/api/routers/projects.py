from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi import Query
from pydantic import BaseModel, Field

from src.api.dependencies import get_app_config
from src.api.errors import APIError, api_error_from_store
from src.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor
from src.config.load_config import AppConfig
from src.reconcile.types import ResourceStatus
from src.storage.sqlite_store import SQLiteStore, StoreError
from src.utils.names import is_valid_cluster_name


router = APIRouter()


class CreateProjectRequest(BaseModel):
    user_id: str = Field(min_length=1, description="Owner of the project (no authentication; passed explicitly).")
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    namespace: str | None = Field(default=None, description="Cluster namespace; defaults to cluster.default_namespace.")
    runtime_image: str | None = Field(default=None)
    storage_size: str | None = Field(default=None)


class TransitionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


def _project_view(store: SQLiteStore, project_id: str) -> dict[str, Any]:
    project = store.get_project(project_id)
    if project is None:
        raise APIError(status_code=404, code="not_found", message="Project not found.")
    return {
        "project": project.to_public_dict(),
        "resources": [r.to_public_dict() for r in store.list_resources_for_project(project_id)],
    }


@router.get("/projects")
def list_projects(
    user_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        cursor_obj: Cursor | None = None
        if cursor:
            try:
                cursor_obj = decode_cursor(cursor)
            except CursorError as e:
                raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

        page = store.list_projects_page(
            user_id=user_id,
            limit=int(limit),
            cursor=cursor_obj.as_key() if cursor_obj is not None else None,
            statuses=status or None,
        )
        next_cursor = page.get("next_cursor")
        if next_cursor is not None:
            page["next_cursor"] = encode_cursor(Cursor.from_key(next_cursor))
        return page
    finally:
        store.close()


@router.post("/projects")
def create_project(body: CreateProjectRequest, cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    namespace = (body.namespace or cfg.cluster.default_namespace).strip()
    if not is_valid_cluster_name(namespace):
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message="namespace must be a lowercase RFC 1123 label.",
            details={"namespace": namespace},
        )

    sandbox_settings = cfg.sandbox.settings()
    if body.runtime_image:
        sandbox_settings["runtime_image"] = body.runtime_image.strip()
    database_settings = cfg.database.settings()
    if body.storage_size:
        database_settings["storage_size"] = body.storage_size.strip()

    store = SQLiteStore()
    try:
        try:
            project, resources = store.create_project(
                user_id=body.user_id.strip(),
                name=body.name.strip(),
                namespace=namespace,
                description=body.description,
                sandbox_settings=sandbox_settings,
                database_settings=database_settings,
            )
        except (StoreError, ValueError) as e:
            raise api_error_from_store(e) from e
        return {
            "project": project.to_public_dict(),
            "resources": [r.to_public_dict() for r in resources],
        }
    finally:
        store.close()


@router.get("/projects/{project_id}")
def get_project(project_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return _project_view(store, project_id)
    finally:
        store.close()


def _request(project_id: str, target: ResourceStatus, body: TransitionRequest | None) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        try:
            store.request_project_transition(project_id, target, reason=body.reason if body else None)
        except (StoreError, ValueError) as e:
            raise api_error_from_store(e) from e
        return _project_view(store, project_id)
    finally:
        store.close()


@router.post("/projects/{project_id}/start")
def start_project(project_id: str, body: TransitionRequest | None = None) -> dict[str, Any]:
    return _request(project_id, ResourceStatus.STARTING, body)


@router.post("/projects/{project_id}/stop")
def stop_project(project_id: str, body: TransitionRequest | None = None) -> dict[str, Any]:
    return _request(project_id, ResourceStatus.STOPPING, body)


@router.post("/projects/{project_id}/delete")
def delete_project(project_id: str, body: TransitionRequest | None = None) -> dict[str, Any]:
    return _request(project_id, ResourceStatus.TERMINATING, body)
