from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from src.reconcile.types import ResourceKind
from src.utils.names import is_valid_cluster_name


_REPO_ROOT = Path(__file__).resolve().parents[2]


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_positive_int(value: Any, *, key: str) -> int:
    n = _as_int(value, key=key)
    if n <= 0:
        raise ConfigError(f"Invalid {key}: must be > 0, got {n}")
    return n


def _as_non_negative_int(value: Any, *, key: str) -> int:
    n = _as_int(value, key=key)
    if n < 0:
        raise ConfigError(f"Invalid {key}: must be >= 0, got {n}")
    return n


def _as_positive_float(value: Any, *, key: str) -> float:
    x = _as_float(value, key=key)
    if x <= 0:
        raise ConfigError(f"Invalid {key}: must be > 0, got {x}")
    return x


def _as_kinds(value: Any, *, key: str) -> tuple[ResourceKind, ...]:
    if not isinstance(value, list) or not value:
        raise ConfigError(f"Invalid {key}: expected a non-empty list of resource kinds")
    out: list[ResourceKind] = []
    for item in value:
        try:
            kind = ResourceKind(str(item).strip().lower())
        except ValueError as e:
            raise ConfigError(f"Invalid {key}: unknown resource kind {item!r}") from e
        if kind not in out:
            out.append(kind)
    return tuple(out)


@dataclass(frozen=True)
class ReconcilerConfig:
    tick_interval_s: float = 5.0
    batch_size: int = 10
    lease_s: float = 60.0
    max_concurrency: int = 4
    kinds: tuple[ResourceKind, ...] = (ResourceKind.SANDBOX, ResourceKind.DATABASE)


@dataclass(frozen=True)
class BackoffConfig:
    base_s: float = 5.0
    factor: float = 2.0
    max_s: float = 300.0


@dataclass(frozen=True)
class SandboxConfig:
    """Default sizing written onto new sandbox rows."""

    runtime_image: str
    cpu_request: str
    cpu_limit: str
    memory_request: str
    memory_limit: str

    def settings(self) -> dict[str, str]:
        return {
            "runtime_image": self.runtime_image,
            "cpu_request": self.cpu_request,
            "cpu_limit": self.cpu_limit,
            "memory_request": self.memory_request,
            "memory_limit": self.memory_limit,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """Default sizing written onto new database rows."""

    storage_size: str
    cpu_request: str
    cpu_limit: str
    memory_request: str
    memory_limit: str

    def settings(self) -> dict[str, str]:
        return {
            "storage_size": self.storage_size,
            "cpu_request": self.cpu_request,
            "cpu_limit": self.cpu_limit,
            "memory_request": self.memory_request,
            "memory_limit": self.memory_limit,
        }


@dataclass(frozen=True)
class ClusterConfig:
    backend: str
    ingress_domain: str
    default_namespace: str
    settle_after: int


@dataclass(frozen=True)
class AppConfig:
    reconciler: ReconcilerConfig
    backoff: BackoffConfig
    sandbox: SandboxConfig
    database: DatabaseConfig
    cluster: ClusterConfig


_SUPPORTED_BACKENDS = {"simulated"}

_KNOWN_KEYS: dict[str, frozenset[str]] = {
    "reconciler": frozenset({"tick_interval_s", "batch_size", "lease_s", "max_concurrency", "kinds"}),
    "backoff": frozenset({"base_s", "factor", "max_s"}),
    "sandbox": frozenset({"runtime_image", "cpu_request", "cpu_limit", "memory_request", "memory_limit"}),
    "database": frozenset({"storage_size", "cpu_request", "cpu_limit", "memory_request", "memory_limit"}),
    "cluster": frozenset({"backend", "ingress_domain", "default_namespace", "settle_after"}),
}


def _check_keys(raw: dict[str, Any]) -> None:
    """Reject unknown sections and keys."""
    extra = sorted(set(raw) - set(_KNOWN_KEYS))
    if extra:
        raise ConfigError(f"Unknown config section(s): {', '.join(extra)}")
    for section, allowed in _KNOWN_KEYS.items():
        table = raw.get(section, {})
        if not isinstance(table, dict):
            raise ConfigError(f"Invalid config section [{section}]: expected a table")
        unknown = sorted(set(table) - allowed)
        if unknown:
            raise ConfigError(f"Unknown config key(s) in [{section}]: {', '.join(unknown)}")


def default_config_path() -> Path:
    override = os.getenv("DEVENV_CONFIG_PATH")
    if override:
        return Path(override).expanduser().resolve()
    return _REPO_ROOT / "config" / "default.toml"


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    _check_keys(raw)

    reconciler = raw.get("reconciler", {})
    backoff = raw.get("backoff", {})
    sandbox = raw.get("sandbox", {})
    database = raw.get("database", {})
    cluster = raw.get("cluster", {})

    backend = _as_str(cluster.get("backend"), key="cluster.backend").strip().lower()
    if backend not in _SUPPORTED_BACKENDS:
        raise ConfigError(f"Invalid cluster.backend: {backend!r} (supported: {sorted(_SUPPORTED_BACKENDS)})")

    default_namespace = _as_str(cluster.get("default_namespace"), key="cluster.default_namespace").strip()
    if not is_valid_cluster_name(default_namespace):
        raise ConfigError(f"Invalid cluster.default_namespace: {default_namespace!r}")

    backoff_cfg = BackoffConfig(
        base_s=_as_positive_float(backoff.get("base_s"), key="backoff.base_s"),
        factor=_as_float(backoff.get("factor"), key="backoff.factor"),
        max_s=_as_positive_float(backoff.get("max_s"), key="backoff.max_s"),
    )
    if backoff_cfg.factor < 1.0:
        raise ConfigError(f"Invalid backoff.factor: must be >= 1, got {backoff_cfg.factor}")
    if backoff_cfg.max_s < backoff_cfg.base_s:
        raise ConfigError("Invalid backoff: max_s must be >= base_s")

    return AppConfig(
        reconciler=ReconcilerConfig(
            tick_interval_s=_as_positive_float(
                reconciler.get("tick_interval_s"), key="reconciler.tick_interval_s"
            ),
            batch_size=_as_positive_int(reconciler.get("batch_size"), key="reconciler.batch_size"),
            lease_s=_as_positive_float(reconciler.get("lease_s"), key="reconciler.lease_s"),
            max_concurrency=_as_positive_int(
                reconciler.get("max_concurrency"), key="reconciler.max_concurrency"
            ),
            kinds=_as_kinds(reconciler.get("kinds"), key="reconciler.kinds"),
        ),
        backoff=backoff_cfg,
        sandbox=SandboxConfig(
            runtime_image=_as_str(sandbox.get("runtime_image"), key="sandbox.runtime_image"),
            cpu_request=_as_str(sandbox.get("cpu_request"), key="sandbox.cpu_request"),
            cpu_limit=_as_str(sandbox.get("cpu_limit"), key="sandbox.cpu_limit"),
            memory_request=_as_str(sandbox.get("memory_request"), key="sandbox.memory_request"),
            memory_limit=_as_str(sandbox.get("memory_limit"), key="sandbox.memory_limit"),
        ),
        database=DatabaseConfig(
            storage_size=_as_str(database.get("storage_size"), key="database.storage_size"),
            cpu_request=_as_str(database.get("cpu_request"), key="database.cpu_request"),
            cpu_limit=_as_str(database.get("cpu_limit"), key="database.cpu_limit"),
            memory_request=_as_str(database.get("memory_request"), key="database.memory_request"),
            memory_limit=_as_str(database.get("memory_limit"), key="database.memory_limit"),
        ),
        cluster=ClusterConfig(
            backend=backend,
            ingress_domain=_as_str(cluster.get("ingress_domain"), key="cluster.ingress_domain").strip(),
            default_namespace=default_namespace,
            settle_after=_as_non_negative_int(cluster.get("settle_after", 1), key="cluster.settle_after"),
        ),
    )
