from __future__ import annotations

import threading

from fastapi import Request

from src.api.errors import APIError
from src.config.load_config import AppConfig, ConfigError, load_app_config


_CONFIG_INIT_LOCK = threading.Lock()


def get_app_config(request: Request) -> AppConfig:
    """FastAPI dependency: returns the AppConfig cached on `app.state` (lazy load).

    The lifespan hook normally loads it at startup; this covers apps created
    without running the lifespan (e.g. a TestClient used outside `with`).
    """
    cached = getattr(request.app.state, "app_config", None)
    if isinstance(cached, AppConfig):
        return cached

    with _CONFIG_INIT_LOCK:
        cached2 = getattr(request.app.state, "app_config", None)
        if isinstance(cached2, AppConfig):
            return cached2
        try:
            cfg = load_app_config()
        except ConfigError as e:
            raise APIError(status_code=500, code="config_error", message=str(e)) from e
        request.app.state.app_config = cfg
        return cfg
