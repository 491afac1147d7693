"""Roll a staged ostree update onto a single node.

A node is updated by draining it, switching it to the deployment that
ocne-update.service already pulled, rebooting it and waiting for it to come
back. Worker nodes are only updated once every control plane node runs the
version the worker is moving to.
"""
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import yaml
from kubernetes import client

from ... import constants
from ...config import Config
from ...errors import NotFoundError, PreconditionError, ValidationError
from ...utils.versions import compare_major_minor, get_kubernetes_versions, major_minor
from ..k8s.client import get_kube_client
from ..k8s.nodes import (
    find_node,
    is_control_plane,
    is_update_available,
    kubelet_version,
    wait_until_get_nodes_succeeds,
    wait_until_node_is_ready,
)
from ..k8s.pods import run_script, script_names
from ..k8s.workloads import create_namespace_if_not_exists, delete_pod, get_configmap, update_configmap
from ..templates import read_template
from .drain import cordon_and_drain, uncordon, validate_timeout
from .preupdate import pre_update

logger = logging.getLogger("ocnectl.update")

UPDATE_ACTION = "update-node"
CHECK_ACTION = "check-update"
PRE_UPDATE_MODES = ("default", "skip", "only")
REBOOT_GRACE_SECONDS = 5


@dataclass
class UpdateOptions:
    node_name: str
    kubeconfig: str = ""
    timeout: str = constants.DEFAULT_DRAIN_TIMEOUT
    delete_emptydir_data: bool = False
    disable_eviction: bool = False
    pre_update_mode: str = "default"


def parse_update_tag(text: str) -> str:
    """The ``tag`` field of /etc/ocne/update.yaml, without quotes."""
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("tag:"):
            tag = line[len("tag:"):].strip().strip("'\"")
            if tag:
                return tag
    raise ValidationError("The target Kubernetes version is not set")


def update_target(core: client.CoreV1Api, node_name: str, namespace: str) -> str:
    """The Kubernetes version a node moves to when it is updated."""
    result = run_script(core, node_name, namespace, CHECK_ACTION, read_template("scripts/update/check-update.sh"))
    return parse_update_tag(result.stdout)


def control_plane_nodes_acceptable(nodes: List[client.V1Node], node_name: str, target: str) -> bool:
    """Whether the control plane is far enough along for a worker to move to ``target``."""
    try:
        major_minor(target)
    except ValidationError:
        logger.debug("Update target %s is not a version, allowing update", target)
        return True

    for node in nodes:
        if node.metadata.name == node_name or not is_control_plane(node):
            continue
        if is_update_available(node):
            logger.debug("Control plane node %s has an update available", node.metadata.name)
            return False
        if compare_major_minor(kubelet_version(node), target) < 0:
            logger.debug("Control plane node %s is at %s, behind %s",
                         node.metadata.name, kubelet_version(node), target)
            return False
    return True


def is_update_allowed(core: client.CoreV1Api, nodes: List[client.V1Node], node_name: str, namespace: str) -> bool:
    node = find_node(nodes, node_name)
    if node is None:
        raise NotFoundError(f"Node {node_name} not found")
    if is_control_plane(node):
        return True
    return control_plane_nodes_acceptable(nodes, node_name, update_target(core, node_name, namespace))


def patch_kubeadm_coredns(core: client.CoreV1Api, target: str) -> bool:
    """Set the CoreDNS tag kubeadm uses to the one that ships with ``target``.

    Returns:
        True if the kubeadm ConfigMap was changed
    """
    try:
        coredns_tag = get_kubernetes_versions(major_minor(target))["coredns"]
    except ValidationError as e:
        logger.debug("Not patching CoreDNS tag for %s: %s", target, e)
        return False

    cm = get_configmap(core, constants.KUBE_SYSTEM_NAMESPACE, constants.KUBEADM_CONFIGMAP)
    raw = (cm.data or {}).get(constants.KUBEADM_CLUSTER_CONFIGURATION_KEY)
    if raw is None:
        raise NotFoundError(f"ConfigMap {constants.KUBE_SYSTEM_NAMESPACE}/{constants.KUBEADM_CONFIGMAP} "
                            f"does not contain {constants.KUBEADM_CLUSTER_CONFIGURATION_KEY}")

    cluster_config = yaml.safe_load(raw) or {}
    dns = cluster_config.setdefault("dns", {}) or {}
    if dns.get("imageTag") == coredns_tag:
        return False

    dns["imageTag"] = coredns_tag
    cluster_config["dns"] = dns
    cm.data[constants.KUBEADM_CLUSTER_CONFIGURATION_KEY] = yaml.safe_dump(cluster_config, default_flow_style=False)
    update_configmap(core, cm)
    logger.debug("Set the kubeadm CoreDNS tag to %s", coredns_tag)
    return True


def prepare_node(nodes: List[client.V1Node], node: client.V1Node, options: UpdateOptions, kubeconfig: str) -> None:
    if not is_update_available(node):
        raise PreconditionError(f"Node {node.metadata.name} has no updates available")

    # A single node cluster has nowhere to move its pods
    if len(nodes) > 1:
        cordon_and_drain(node.metadata.name, kubeconfig, options.timeout,
                         options.delete_emptydir_data, options.disable_eviction)


def _resolve_kubeconfig(kubeconfig: str) -> str:
    kubeconfig = kubeconfig or Config.kubeconfig()
    if not kubeconfig:
        raise ValidationError("A kubeconfig is required, set --kubeconfig or KUBECONFIG")
    return kubeconfig


def update_node(options: UpdateOptions, namespace: str = constants.OCNE_SYSTEM_NAMESPACE) -> None:
    """Update one node of a cluster.

    Raises:
        PreconditionError: If the node has no update or the control plane has not been updated first
        DrainError: If the node could not be drained. It is left cordoned.
    """
    if options.pre_update_mode not in PRE_UPDATE_MODES:
        raise ValidationError(f"Invalid pre-update mode {options.pre_update_mode}, "
                              f"expected one of {', '.join(PRE_UPDATE_MODES)}")
    validate_timeout(options.timeout)

    kubeconfig = _resolve_kubeconfig(options.kubeconfig)
    api_client, core = get_kube_client(kubeconfig)
    nodes = wait_until_get_nodes_succeeds(core)

    create_namespace_if_not_exists(core, namespace)
    if options.pre_update_mode != "skip":
        pre_update(api_client, kubeconfig, nodes, namespace)
        if options.pre_update_mode == "only":
            return

    node_name = options.node_name
    if not is_update_allowed(core, nodes, node_name, namespace):
        raise PreconditionError(
            f"The upgrade on {node_name} cannot be performed, since it either has the same or greater version "
            f"than some control plane nodes, or some control plane nodes have updates available"
        )

    node: Optional[client.V1Node] = find_node(nodes, node_name)
    prepare_node(nodes, node, options, kubeconfig)

    if is_control_plane(node):
        logger.warning(f"⚠️  Updating control plane node {node_name}, "
                       f"the Kubernetes API may be unavailable while it reboots")
        patch_kubeadm_coredns(core, update_target(core, node_name, namespace))

    logger.info(f"🔄 Updating node {node_name}")
    run_script(core, node_name, namespace, UPDATE_ACTION, read_template("scripts/update/update-node.sh"),
               env={"NODE_NAME": node_name}, cleanup=False)

    time.sleep(REBOOT_GRACE_SECONDS)
    wait_until_get_nodes_succeeds(core)
    wait_until_node_is_ready(core, node_name)

    if len(nodes) > 1:
        uncordon(node_name, kubeconfig)

    pod_name, _, _ = script_names(node_name, UPDATE_ACTION)
    delete_pod(core, namespace, pod_name)
    logger.info(f"✅ Node {node_name} successfully updated")
