import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from . import constants
from .config import ClusterConfig, user_config_dir
from .errors import PreconditionError, ValidationError
from .utils.lock import PidLock

logger = logging.getLogger("ocnectl.registry")


def cache_path() -> Path:
    return user_config_dir() / constants.USER_CLUSTER_CACHE_FILE


class CachedCluster:
    def __init__(self, config: ClusterConfig, kubeconfig: str):
        self.config = config
        self.kubeconfig = kubeconfig

    def to_dict(self) -> Dict[str, Any]:
        return {"config": self.config.to_dict(), "kubeconfig": self.kubeconfig}


class ClusterCache:
    """Clusters started from this host, keyed by name."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else cache_path()
        self.clusters: Dict[str, CachedCluster] = {}

    @classmethod
    def load(cls, path: Optional[Path] = None) -> 'ClusterCache':
        cache = cls(path)
        cache.reload()
        return cache

    def reload(self) -> None:
        """Replace the entries in memory with the ones on disk."""
        self.clusters = {}
        if not self.path.exists():
            return

        with open(self.path, "r") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValidationError(f"Failed to parse cluster cache {self.path}: {e}") from e

        for name, entry in data.items():
            entry = entry or {}
            self.clusters[name] = CachedCluster(
                ClusterConfig.from_dict(entry.get("config") or {}),
                entry.get("kubeconfig", ""),
            )

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {name: cluster.to_dict() for name, cluster in self.clusters.items()}
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
        os.replace(tmp, self.path)

    def get(self, name: str) -> Optional[CachedCluster]:
        return self.clusters.get(name)

    def add(self, name: str, config: ClusterConfig, kubeconfig: str) -> None:
        # Other processes may have changed the file since it was loaded
        with PidLock():
            self.reload()
            if name in self.clusters:
                raise PreconditionError(f"A cluster named {name} already exists")
            self.clusters[name] = CachedCluster(config, kubeconfig)
            self.save()
        logger.debug("Added cluster %s to %s", name, self.path)

    def delete(self, name: str) -> None:
        with PidLock():
            self.reload()
            if self.clusters.pop(name, None) is None:
                return
            self.save()
        logger.debug("Removed cluster %s from %s", name, self.path)
