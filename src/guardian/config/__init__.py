"""
Guardian configuration.

- Pydantic-based settings (environment variables, .env files)
- YAML cluster list for multi-cluster deployments
"""

from guardian.config.loader import ClusterConfig, load_clusters, parse_clusters
from guardian.config.settings import Settings, get_settings

__all__ = [
    "ClusterConfig",
    "Settings",
    "get_settings",
    "load_clusters",
    "parse_clusters",
]
