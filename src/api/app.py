from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.api.errors import APIError, api_error_handler, unhandled_error_handler, validation_error_handler
from src.cluster.factory import build_backend
from src.config.load_config import load_app_config
from src.runtime.scheduler import ReconcileScheduler
from src.storage.sqlite_store import SQLiteStore

from .routers.health import router as health_router
from .routers.projects import router as projects_router
from .routers.resources import router as resources_router


logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("DEVENV_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        cfg = load_app_config()
        app.state.app_config = cfg

        # Start the reconciler in-process (single-instance assumption; separate
        # reconciler processes on the same DB file are also safe).
        if _env_bool("DEVENV_ENABLE_RECONCILER", True):
            store = SQLiteStore()
            scheduler = ReconcileScheduler.from_config(cfg, store=store, backend=build_backend(cfg.cluster))
            scheduler.start()
            app.state.reconciler = scheduler
            app.state.reconciler_store = store
        else:
            logger.info("Reconciler disabled (DEVENV_ENABLE_RECONCILER)")
        try:
            yield
        finally:
            scheduler = getattr(app.state, "reconciler", None)
            if scheduler is not None:
                scheduler.stop()
            store = getattr(app.state, "reconciler_store", None)
            if store is not None:
                store.close()

    app = FastAPI(title="Dev Environment Reconciler API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(projects_router, prefix="/api/v1", tags=["projects"])
    app.include_router(resources_router, prefix="/api/v1", tags=["resources"])

    return app


app = create_app()
