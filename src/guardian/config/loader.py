"""
Cluster list loading.

The cluster list is a YAML document of the form::

    clusters:
      - id: prod-eu
        context: prod-eu-admin
        kubeconfig: ~/.kube/prod
      - id: prod-us
        context: prod-us-admin

When no file is configured, a single cluster is built from the settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml

from guardian.config.settings import Settings
from guardian.core.errors import ConfigurationError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ClusterConfig:
    """Connection details for one managed cluster."""

    id: str
    context: str | None = None
    kubeconfig: str | None = None

    @property
    def endpoint_ref(self) -> str:
        """Opaque reference handed to the cluster API client factory."""
        return self.context or self.id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClusterConfig:
        cluster_id = data.get("id") or data.get("name")
        if not cluster_id or not isinstance(cluster_id, str):
            raise ConfigurationError("cluster entry is missing an id", {"entry": data})

        kubeconfig = data.get("kubeconfig")
        if kubeconfig:
            kubeconfig = str(Path(kubeconfig).expanduser())

        return cls(id=cluster_id, context=data.get("context"), kubeconfig=kubeconfig)


def parse_clusters(data: Any) -> list[ClusterConfig]:
    """Validate a decoded cluster list document."""
    if not isinstance(data, dict) or not isinstance(data.get("clusters"), list):
        raise ConfigurationError("cluster list must contain a 'clusters' sequence")

    clusters: list[ClusterConfig] = []
    seen: set[str] = set()
    for entry in data["clusters"]:
        if not isinstance(entry, dict):
            raise ConfigurationError("cluster entry must be a mapping", {"entry": entry})
        cluster = ClusterConfig.from_dict(entry)
        if cluster.id in seen:
            raise ConfigurationError("duplicate cluster id", {"cluster_id": cluster.id})
        seen.add(cluster.id)
        clusters.append(cluster)

    return clusters


def load_clusters(settings: Settings, path: str | Path | None = None) -> list[ClusterConfig]:
    """
    Load the configured clusters.

    Args:
        settings: Application settings, used for the single-cluster fallback
        path: Explicit cluster list file; defaults to ``settings.clusters_file``

    Returns:
        List of ClusterConfig entries, never empty
    """
    source = path or settings.clusters_file
    if not source:
        return [
            ClusterConfig(
                id=settings.cluster_id,
                context=settings.kube_context,
                kubeconfig=settings.kubeconfig,
            )
        ]

    file_path = Path(source).expanduser()
    try:
        with open(file_path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigurationError(
            "failed to read cluster list", {"path": str(file_path), "error": str(exc)}
        ) from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            "cluster list is not valid YAML", {"path": str(file_path), "error": str(exc)}
        ) from exc

    clusters = parse_clusters(data)
    if not clusters:
        raise ConfigurationError("cluster list is empty", {"path": str(file_path)})

    logger.debug("loaded_cluster_list", path=str(file_path), clusters=len(clusters))
    return clusters
