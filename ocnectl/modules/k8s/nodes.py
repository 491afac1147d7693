"""Node queries and readiness probes."""
import logging
import time
from typing import List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from ... import constants
from ...errors import WaitTimeoutError
from .client import api_error

logger = logging.getLogger("ocnectl.k8s.nodes")


def get_node_list(core: client.CoreV1Api) -> List[client.V1Node]:
    try:
        return core.list_node().items
    except ApiException as e:
        raise api_error(e, "listing nodes") from e


def is_control_plane(node: client.V1Node) -> bool:
    return constants.CONTROL_PLANE_LABEL in (node.metadata.labels or {})


def is_update_available(node: client.V1Node) -> bool:
    value = (node.metadata.annotations or {}).get(constants.UPDATE_AVAILABLE_ANNOTATION, "")
    return value.lower() == "true"


def kubelet_version(node: client.V1Node) -> str:
    return node.status.node_info.kubelet_version


def is_ready(node: client.V1Node) -> bool:
    if node.status is None:
        return False
    for condition in node.status.conditions or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def get_control_plane_nodes(core: client.CoreV1Api) -> List[client.V1Node]:
    try:
        return core.list_node(label_selector=constants.CONTROL_PLANE_LABEL).items
    except ApiException as e:
        raise api_error(e, "listing control plane nodes") from e


def find_node(nodes: List[client.V1Node], name: str) -> Optional[client.V1Node]:
    for node in nodes:
        if node.metadata.name == name:
            return node
    return None


def wait_until_get_nodes_succeeds(core: client.CoreV1Api, timeout: int = constants.GET_NODES_TIMEOUT,
                                  interval: int = constants.PROBE_INTERVAL) -> List[client.V1Node]:
    """Poll the node list until the API server answers with at least one node.

    Args:
        core: Core API client for the cluster
        timeout: Seconds to wait
        interval: Seconds between attempts

    Returns:
        The node list

    Raises:
        WaitTimeoutError: If no nodes were listed in time
    """
    start_time = time.time()
    while True:
        try:
            nodes = core.list_node().items
            if nodes:
                return nodes
            logger.debug("Node list is empty")
        except (ApiException, HTTPError, OSError) as e:
            logger.debug("Cannot list nodes yet: %s", e)

        if time.time() - start_time >= timeout:
            raise WaitTimeoutError("Timeout waiting for get nodes to succeed")
        time.sleep(interval)


def wait_until_node_is_ready(core: client.CoreV1Api, name: str, timeout: int = constants.NODE_READY_TIMEOUT,
                             interval: int = constants.PROBE_INTERVAL) -> None:
    """Poll a node until its Ready condition is True."""
    logger.info("Waiting for node %s to be ready...", name)
    start_time = time.time()
    while True:
        try:
            if is_ready(core.read_node(name)):
                logger.info("Node %s is ready", name)
                return
        except (ApiException, HTTPError, OSError) as e:
            logger.debug("Node %s not ready yet: %s", name, e)

        if time.time() - start_time >= timeout:
            raise WaitTimeoutError(f"Timeout waiting for node {name} to be ready")
        time.sleep(interval)
