"""Typed helpers for namespaces, ConfigMaps, Secrets, Pods and workloads."""
import logging
import time
from typing import Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from ... import constants
from ...errors import NotFoundError, WaitTimeoutError
from .client import api_error

logger = logging.getLogger("ocnectl.k8s.workloads")


def create_namespace_if_not_exists(core: client.CoreV1Api, name: str) -> None:
    try:
        core.read_namespace(name)
        return
    except ApiException as e:
        if e.status != 404:
            raise api_error(e, f"getting namespace {name}") from e

    try:
        core.create_namespace(client.V1Namespace(metadata=client.V1ObjectMeta(name=name)))
        logger.debug("Created namespace %s", name)
    except ApiException as e:
        if e.status != 409:
            raise api_error(e, f"creating namespace {name}") from e


def get_configmap(core: client.CoreV1Api, namespace: str, name: str) -> client.V1ConfigMap:
    try:
        return core.read_namespaced_config_map(name, namespace)
    except ApiException as e:
        raise api_error(e, f"getting ConfigMap {namespace}/{name}") from e


def update_configmap(core: client.CoreV1Api, cm: client.V1ConfigMap) -> None:
    try:
        core.replace_namespaced_config_map(cm.metadata.name, cm.metadata.namespace, cm)
    except ApiException as e:
        raise api_error(e, f"updating ConfigMap {cm.metadata.namespace}/{cm.metadata.name}") from e


def delete_configmap(core: client.CoreV1Api, namespace: str, name: str) -> None:
    try:
        core.delete_namespaced_config_map(name, namespace)
    except ApiException as e:
        if e.status != 404:
            raise api_error(e, f"deleting ConfigMap {namespace}/{name}") from e


def create_configmap(core: client.CoreV1Api, namespace: str, name: str, data: Dict[str, str]) -> None:
    body = client.V1ConfigMap(metadata=client.V1ObjectMeta(name=name, namespace=namespace), data=data)
    try:
        core.create_namespaced_config_map(namespace, body)
    except ApiException as e:
        raise api_error(e, f"creating ConfigMap {namespace}/{name}") from e


def create_secret(core: client.CoreV1Api, namespace: str, secret: client.V1Secret) -> None:
    try:
        core.create_namespaced_secret(namespace, secret)
    except ApiException as e:
        if e.status == 409:
            logger.debug("Secret %s/%s already exists", namespace, secret.metadata.name)
            return
        raise api_error(e, f"creating Secret {namespace}/{secret.metadata.name}") from e


def find_secrets_by_label(core: client.CoreV1Api, label_selector: str, namespace: str = "") -> List[client.V1Secret]:
    try:
        if namespace:
            return core.list_namespaced_secret(namespace, label_selector=label_selector).items
        return core.list_secret_for_all_namespaces(label_selector=label_selector).items
    except ApiException as e:
        raise api_error(e, f"listing secrets with {label_selector}") from e


def get_daemonset(apps: client.AppsV1Api, namespace: str, name: str) -> client.V1DaemonSet:
    try:
        return apps.read_namespaced_daemon_set(name, namespace)
    except ApiException as e:
        raise api_error(e, f"getting DaemonSet {namespace}/{name}") from e


def get_deployment(apps: client.AppsV1Api, namespace: str, name: str) -> client.V1Deployment:
    try:
        return apps.read_namespaced_deployment(name, namespace)
    except ApiException as e:
        raise api_error(e, f"getting Deployment {namespace}/{name}") from e


def update_deployment(apps: client.AppsV1Api, deployment: client.V1Deployment) -> None:
    namespace, name = deployment.metadata.namespace, deployment.metadata.name
    try:
        apps.replace_namespaced_deployment(name, namespace, deployment)
    except ApiException as e:
        raise api_error(e, f"updating Deployment {namespace}/{name}") from e


def wait_for_deployment(apps: client.AppsV1Api, namespace: str, name: str, replicas: int = 1,
                        timeout: int = constants.GET_NODES_TIMEOUT, interval: int = constants.PROBE_INTERVAL) -> None:
    """Wait until a Deployment has at least ``replicas`` available replicas."""
    start_time = time.time()
    while True:
        try:
            deployment = apps.read_namespaced_deployment(name, namespace)
            available = (deployment.status.available_replicas or 0) if deployment.status else 0
            if available >= replicas:
                return
        except ApiException as e:
            if e.status != 404:
                raise api_error(e, f"getting Deployment {namespace}/{name}") from e

        if time.time() - start_time >= timeout:
            raise WaitTimeoutError(f"Timeout waiting for Deployment {namespace}/{name}")
        time.sleep(interval)


def delete_pod(core: client.CoreV1Api, namespace: str, name: str) -> None:
    try:
        core.delete_namespaced_pod(name, namespace)
    except ApiException as e:
        if e.status != 404:
            raise api_error(e, f"deleting pod {namespace}/{name}") from e


def wait_for_pod_deleted(core: client.CoreV1Api, namespace: str, name: str,
                         retries: int = constants.POD_READY_RETRIES, interval: int = constants.PROBE_INTERVAL) -> None:
    for _ in range(retries):
        try:
            core.read_namespaced_pod(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return
            raise api_error(e, f"getting pod {namespace}/{name}") from e
        time.sleep(interval)
    raise WaitTimeoutError(f"Timeout waiting for pod {namespace}/{name} to be deleted")


def is_pod_ready(pod: client.V1Pod) -> bool:
    if pod.status is None:
        return False
    for condition in pod.status.conditions or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def wait_until_pod_ready(core: client.CoreV1Api, namespace: str, name: str,
                         retries: int = constants.POD_READY_RETRIES, interval: int = constants.PROBE_INTERVAL) -> None:
    """Poll a pod until it is Ready."""
    last_error: Optional[Exception] = None
    for _ in range(retries):
        try:
            if is_pod_ready(core.read_namespaced_pod(name, namespace)):
                return
        except ApiException as e:
            if e.status != 404:
                raise api_error(e, f"getting pod {namespace}/{name}") from e
            last_error = NotFoundError(f"pod {namespace}/{name} not found")
        time.sleep(interval)
    raise WaitTimeoutError(f"Timeout waiting for pod {namespace}/{name} to be ready: {last_error or 'not ready'}")
