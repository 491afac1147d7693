"""The contract every cluster driver implements."""
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Tuple

from ...config import ClusterConfig


class ClusterDriver(ABC):
    """Brings a cluster up, changes it and tears it down on one kind of infrastructure."""

    def __init__(self, cluster_config: ClusterConfig):
        self.cluster_config = cluster_config
        self.state_listener: Optional[Callable[[Any], None]] = None

    def report_state(self, state: Any) -> None:
        """Tell whoever is tracking the cluster lifecycle that it moved to a new state."""
        if self.state_listener is not None:
            self.state_listener(state)

    @abstractmethod
    def start(self) -> Tuple[bool, bool]:
        """Bring the cluster up if it is not already running.

        Returns:
            Tuple of whether the cluster was already running and whether
            anything was changed
        """
        pass

    def post_start(self) -> None:
        """Runs after the cluster is up and applications are installed."""
        pass

    @abstractmethod
    def join(self, kubeconfig: str, control_plane_nodes: int, worker_nodes: int) -> None:
        """Add nodes to a running cluster."""
        pass

    def stop(self) -> None:
        pass

    @abstractmethod
    def delete(self) -> None:
        """Remove everything the driver created. Resources that are already gone are skipped."""
        pass

    def close(self) -> None:
        """Release local resources held by the driver."""
        pass

    @abstractmethod
    def stage(self, version: str) -> Tuple[str, str, bool]:
        """Prepare the cluster for an upgrade to a new Kubernetes version.

        Returns:
            Tuple of a kubeconfig for the cluster, instructions for
            finishing the upgrade, and whether the cluster should be
            updated in place afterwards
        """
        pass

    @abstractmethod
    def get_kubeconfig_path(self) -> str:
        pass

    @abstractmethod
    def get_kube_api_server_address(self) -> str:
        pass

    def post_install_help_stanza(self) -> str:
        return ""

    def default_cni_interfaces(self) -> List[str]:
        return []
