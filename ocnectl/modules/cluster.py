"""Start, grow, upgrade and delete clusters through their drivers."""
import logging
from typing import List, Tuple

from .. import constants
from ..config import ClusterConfig
from ..errors import ValidationError
from ..registry import ClusterCache
from ..utils.versions import get_kubernetes_versions, is_supported
from .drivers import get_driver
from .drivers.base import ClusterDriver
from .helm import Application, install_applications
from .lifecycle import ClusterState, Lifecycle

logger = logging.getLogger("ocnectl.cluster")

NODE_UPDATE_HELP = "To update the nodes of the cluster, run:\n    ocnectl node update --node <name>\n"


def cluster_applications(cluster_config: ClusterConfig, driver: ClusterDriver) -> List[Application]:
    """Applications every new cluster needs before it can run workloads."""
    apps = []
    versions = get_kubernetes_versions(cluster_config.kube_version)

    # Cluster API control planes skip the kubeadm kube-proxy and CoreDNS addons
    if cluster_config.provider == constants.PROVIDER_OCI:
        apps.append(Application(
            name=constants.KUBE_PROXY_CHART,
            namespace=constants.KUBE_PROXY_NAMESPACE,
            release=constants.KUBE_PROXY_RELEASE,
            config={
                "image": {"repository": constants.KUBE_PROXY_IMAGE, "tag": versions["kubernetes"]},
                "mode": cluster_config.kube_proxy_mode,
                "apiServer": {
                    "host": driver.get_kube_api_server_address(),
                    "port": cluster_config.kube_api_server_bind_port,
                },
                "podSubnet": cluster_config.pod_subnet,
            },
        ))
        apps.append(Application(
            name=constants.COREDNS_DEPLOYMENT,
            namespace=constants.COREDNS_NAMESPACE,
            config={"image": {"repository": constants.COREDNS_IMAGE, "tag": versions["coredns"]}},
        ))

    if cluster_config.cni == constants.CNI_FLANNEL:
        ifaces = [i for i in driver.default_cni_interfaces() if i]
        apps.append(Application(
            name="flannel",
            namespace=constants.FLANNEL_NAMESPACE,
            config={
                "podCidr": cluster_config.pod_subnet,
                "flannel": {"args": ["--ip-masq", "--kube-subnet-mgr"] + [f"--iface={i}" for i in ifaces]},
                "image": {"repository": constants.FLANNEL_IMAGE},
            },
        ))
    return apps


def start_cluster(cluster_config: ClusterConfig) -> Tuple[str, str]:
    """Start a cluster, installing its applications if it had to be created.

    Returns:
        Tuple of the cluster kubeconfig and instructions for reaching it
    """
    driver = get_driver(cluster_config)
    try:
        lifecycle = Lifecycle(driver)

        def install() -> None:
            install_applications(cluster_applications(cluster_config, driver), driver.get_kubeconfig_path())

        running, _ = lifecycle.start(install=install)
        kubeconfig = driver.get_kubeconfig_path()

        cache = ClusterCache.load()
        if cache.get(cluster_config.name) is None:
            cache.add(cluster_config.name, cluster_config, kubeconfig)

        if not running:
            logger.info(f"✅ Kubernetes cluster {cluster_config.name} was created successfully")
        return kubeconfig, driver.post_install_help_stanza()
    finally:
        driver.close()


def join_cluster(cluster_config: ClusterConfig, kubeconfig: str, control_plane_nodes: int,
                 worker_nodes: int) -> None:
    if control_plane_nodes < 0 or worker_nodes < 0:
        raise ValidationError("Node counts can not be negative")

    driver = get_driver(cluster_config)
    try:
        Lifecycle(driver, ClusterState.READY).join(kubeconfig, control_plane_nodes, worker_nodes)
    finally:
        driver.close()
    logger.info(f"✅ Joined {control_plane_nodes} control plane and {worker_nodes} worker nodes")


def stage_cluster(cluster_config: ClusterConfig, version: str) -> Tuple[str, str]:
    """Prepare a cluster for an upgrade to ``version``.

    Returns:
        Tuple of a kubeconfig for the cluster and instructions for finishing the upgrade
    """
    if not is_supported(version):
        raise ValidationError(f"Kubernetes version {version} is not supported")

    driver = get_driver(cluster_config)
    try:
        kubeconfig, help_text, update_nodes = Lifecycle(driver, ClusterState.READY).stage(version)
    finally:
        driver.close()

    if update_nodes:
        help_text = f"{help_text}\n{NODE_UPDATE_HELP}" if help_text else NODE_UPDATE_HELP
    return kubeconfig, help_text


def delete_cluster(cluster_config: ClusterConfig) -> None:
    driver = get_driver(cluster_config)
    try:
        Lifecycle(driver, ClusterState.READY).delete()
    finally:
        driver.close()

    ClusterCache.load().delete(cluster_config.name)
    logger.info(f"✅ Cluster {cluster_config.name} was deleted")
