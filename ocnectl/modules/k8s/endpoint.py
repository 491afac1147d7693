"""Discover where a cluster's API server lives."""
import logging
from typing import Any, Dict

import yaml
from kubernetes import client

from ... import constants
from ...errors import NotFoundError, ValidationError
from .client import get_host
from .workloads import get_configmap

logger = logging.getLogger("ocnectl.k8s.endpoint")


def get_cluster_configuration(core: client.CoreV1Api) -> Dict[str, Any]:
    """The kubeadm ClusterConfiguration stored in the kubeadm-config ConfigMap."""
    cm = get_configmap(core, constants.KUBE_SYSTEM_NAMESPACE, constants.KUBEADM_CONFIGMAP)
    raw = (cm.data or {}).get(constants.KUBEADM_CLUSTER_CONFIGURATION_KEY)
    if raw is None:
        raise NotFoundError(
            f"ConfigMap {constants.KUBEADM_CONFIGMAP} does not have a {constants.KUBEADM_CLUSTER_CONFIGURATION_KEY}"
        )
    try:
        return yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Could not parse kubeadm ClusterConfiguration: {e}") from e


def get_control_plane_endpoint(api_client: client.ApiClient) -> str:
    """Return host:port of the control plane endpoint.

    kubeadm records the endpoint that nodes should use. Clusters that were
    not built by kubeadm fall back to the address in the kubeconfig.
    """
    core = client.CoreV1Api(api_client)
    try:
        endpoint = get_cluster_configuration(core).get("controlPlaneEndpoint", "")
    except NotFoundError as e:
        logger.debug("No kubeadm configuration: %s", e)
        endpoint = ""
    if endpoint:
        return endpoint
    return get_host(api_client)
