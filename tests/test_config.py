from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

from src.config.load_config import ConfigError, default_config_path, load_app_config
from src.reconcile.types import ResourceKind


_BASE = """
[reconciler]
tick_interval_s = 2.5
batch_size = 7
lease_s = 45.0
max_concurrency = 3
kinds = ["database"]

[backoff]
base_s = 1.0
factor = 3.0
max_s = 60.0

[sandbox]
runtime_image = "img:test"
cpu_request = "10m"
cpu_limit = "500m"
memory_request = "16Mi"
memory_limit = "1Gi"

[database]
storage_size = "1Gi"
cpu_request = "50m"
cpu_limit = "500m"
memory_request = "64Mi"
memory_limit = "512Mi"

[cluster]
backend = "simulated"
ingress_domain = "example.test"
default_namespace = "team-a"
"""


def _write(td: str, text: str) -> Path:
    p = Path(td) / "config.toml"
    p.write_text(text, encoding="utf-8")
    return p


def test_repo_default_config_loads() -> None:
    cfg = load_app_config()
    assert cfg.reconciler.batch_size > 0
    assert cfg.reconciler.kinds == (ResourceKind.SANDBOX, ResourceKind.DATABASE)
    assert cfg.cluster.backend == "simulated"
    assert cfg.sandbox.settings()["runtime_image"]


def test_explicit_path_and_values() -> None:
    with tempfile.TemporaryDirectory() as td:
        cfg = load_app_config(_write(td, _BASE))
        assert cfg.reconciler.tick_interval_s == pytest.approx(2.5)
        assert cfg.reconciler.batch_size == 7
        assert cfg.reconciler.lease_s == pytest.approx(45.0)
        assert cfg.reconciler.max_concurrency == 3
        assert cfg.reconciler.kinds == (ResourceKind.DATABASE,)
        assert cfg.backoff.factor == pytest.approx(3.0)
        assert cfg.database.settings()["storage_size"] == "1Gi"
        assert cfg.cluster.default_namespace == "team-a"
        assert cfg.cluster.settle_after == 1


def test_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        path = _write(td, _BASE)
        monkeypatch.setenv("DEVENV_CONFIG_PATH", str(path))
        assert default_config_path() == path.resolve()
        assert load_app_config().reconciler.batch_size == 7


@pytest.mark.parametrize(
    ("old", "new"),
    [
        ("batch_size = 7", "batch_size = 0"),
        ("batch_size = 7", "batch_size = \"many\""),
        ("lease_s = 45.0", "lease_s = -1"),
        ('kinds = ["database"]', 'kinds = ["vm"]'),
        ('kinds = ["database"]', "kinds = []"),
        ('backend = "simulated"', 'backend = "kubernetes"'),
        ('default_namespace = "team-a"', 'default_namespace = "Team_A"'),
        ("factor = 3.0", "factor = 0.5"),
        ("max_s = 60.0", "max_s = 0.5"),
        ('runtime_image = "img:test"\n', ""),
        ("batch_size = 7", "batch_size = 7\nbatch_sise = 8"),
        ('default_namespace = "team-a"', 'default_namespace = "team-a"\nsettle_after = -1'),
        ("[backoff]", "[extras]\nx = 1\n\n[backoff]"),
    ],
)
def test_invalid_values_raise_config_error(old: str, new: str) -> None:
    assert old in _BASE
    with tempfile.TemporaryDirectory() as td:
        with pytest.raises(ConfigError):
            load_app_config(_write(td, _BASE.replace(old, new)))


def test_missing_file_and_bad_toml() -> None:
    with tempfile.TemporaryDirectory() as td:
        with pytest.raises(ConfigError):
            load_app_config(Path(td) / "nope.toml")
        with pytest.raises(ConfigError):
            load_app_config(_write(td, "[reconciler\nbatch_size = 1"))
    assert os.path.basename(str(default_config_path())) == "default.toml"
