"""Driver for clusters that already exist and are managed elsewhere."""
import logging
from typing import List, Tuple

from ...config import ClusterConfig, Config
from ...errors import UnsupportedError, ValidationError
from ...utils.net import get_uri_address
from ..k8s.client import get_kube_client
from ..k8s.endpoint import get_control_plane_endpoint
from ..k8s.nodes import get_node_list
from .base import ClusterDriver

logger = logging.getLogger("ocnectl.drivers.none")


def split_endpoint(endpoint: str) -> str:
    """The host part of a host:port endpoint. Endpoints without a port are returned as is."""
    if endpoint.startswith("["):
        return endpoint[:endpoint.index("]") + 1]
    host, sep, port = endpoint.rpartition(":")
    if not sep or not port.isdigit() or ":" in host:
        return endpoint
    return get_uri_address(host)


class NoneDriver(ClusterDriver):
    """Works against a running cluster through its kubeconfig and provisions nothing."""

    def __init__(self, cluster_config: ClusterConfig):
        super().__init__(cluster_config)
        self.kubeconfig = cluster_config.kubeconfig or Config.kubeconfig()
        if not self.kubeconfig:
            raise ValidationError("When the none provider is used, an existing kubeconfig file must be specified")

        api_client, _ = get_kube_client(self.kubeconfig)
        self.kube_api_server_address = split_endpoint(get_control_plane_endpoint(api_client))

    def start(self) -> Tuple[bool, bool]:
        _, core = get_kube_client(self.kubeconfig)
        get_node_list(core)
        logger.debug("Cluster at %s is reachable", self.kube_api_server_address)
        return True, False

    def join(self, kubeconfig: str, control_plane_nodes: int, worker_nodes: int) -> None:
        raise UnsupportedError("Joining nodes is not supported by the none provider")

    def delete(self) -> None:
        logger.debug("Nothing to delete for the none provider")

    def stage(self, version: str) -> Tuple[str, str, bool]:
        raise UnsupportedError("Staging upgrades is not supported by the none provider")

    def get_kubeconfig_path(self) -> str:
        return self.kubeconfig

    def get_kube_api_server_address(self) -> str:
        return self.kube_api_server_address

    def default_cni_interfaces(self) -> List[str]:
        return [""]
