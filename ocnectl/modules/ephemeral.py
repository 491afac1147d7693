"""A small local cluster used to run management tasks such as building images."""
import logging
from typing import Tuple

from .. import constants
from ..config import ClusterConfig
from .cluster import delete_cluster, start_cluster

logger = logging.getLogger("ocnectl.ephemeral")


def ephemeral_config(cluster_config: ClusterConfig) -> ClusterConfig:
    """A single node libvirt cluster derived from another cluster's settings."""
    ephemeral = cluster_config.ephemeral_cluster
    providers = cluster_config.providers.model_copy(deep=True)
    providers.libvirt.control_plane_node = ephemeral.node.model_copy(deep=True)

    return cluster_config.copy_with(
        name=ephemeral.name,
        provider=constants.PROVIDER_LIBVIRT,
        providers=providers,
        control_plane_nodes=1,
        worker_nodes=0,
        headless=True,
        cni=constants.CNI_FLANNEL,
        kube_version=constants.KUBE_VERSION,
        virtual_ip="",
        load_balancer="",
        cluster_definition="",
        cluster_definition_inline="",
    )


def start_ephemeral_cluster(cluster_config: ClusterConfig) -> str:
    """Start the ephemeral cluster if needed and return its kubeconfig."""
    config = ephemeral_config(cluster_config)
    logger.info(f"🚀 Starting ephemeral cluster {config.name}")
    kubeconfig, _ = start_cluster(config)
    return kubeconfig


def stop_ephemeral_cluster(cluster_config: ClusterConfig) -> None:
    """Delete the ephemeral cluster unless it is meant to be kept."""
    config = ephemeral_config(cluster_config)
    if cluster_config.ephemeral_cluster.preserve:
        logger.info(f"Keeping ephemeral cluster {config.name}")
        return
    delete_cluster(config)


def ensure_cluster(cluster_config: ClusterConfig, kubeconfig: str = "") -> Tuple[str, bool]:
    """A cluster to run management tasks on.

    Args:
        cluster_config: Supplies the ephemeral cluster settings
        kubeconfig: An existing cluster to use instead

    Returns:
        Tuple of the kubeconfig and whether an ephemeral cluster was started
    """
    if kubeconfig:
        return kubeconfig, False
    return start_ephemeral_cluster(cluster_config), True
