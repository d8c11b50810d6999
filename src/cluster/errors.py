from __future__ import annotations

from typing import Any


class BackendError(RuntimeError):
    """Base class for failures reported by the cluster orchestration backend."""

    permanent = False


class TransientBackendError(BackendError):
    """Network / timeout / rate-limit failure. Retrying later can succeed."""


class PermanentConfigError(BackendError):
    """Missing cluster scope or credentials, invalid resource name.

    Retrying cannot succeed until someone fixes the configuration.
    """

    permanent = True

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ResourceNotFoundError(BackendError):
    """The cluster has no object for the given reference."""

    status_code = 404


def is_not_found(error: BaseException) -> bool:
    """True when an error carries an HTTP 404 the way cluster API clients report it.

    Accepts `code`, `status_code`, `status` or `response.status_code` attributes.
    """
    if isinstance(error, ResourceNotFoundError):
        return True
    for attr in ("code", "status_code", "status"):
        value = getattr(error, attr, None)
        if value == 404:
            return True
    response = getattr(error, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None)
        if code is None and isinstance(response, dict):
            code = response.get("status_code")
        return code == 404
    return False
