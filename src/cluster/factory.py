from __future__ import annotations

from src.cluster.backend import ClusterBackend
from src.cluster.simulated import SimulatedClusterBackend
from src.config.load_config import ClusterConfig, ConfigError


def build_backend(config: ClusterConfig) -> ClusterBackend:
    if config.backend == "simulated":
        return SimulatedClusterBackend(
            settle_after=config.settle_after,
            ingress_domain=config.ingress_domain,
        )
    raise ConfigError(f"Unsupported cluster backend: {config.backend!r}")
