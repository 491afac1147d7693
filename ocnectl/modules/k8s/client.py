"""Kubernetes client construction from kubeconfig files."""
import logging
import os
from pathlib import Path
from typing import Tuple
from urllib.parse import urlparse

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient

from ... import constants
from ...config import user_home
from ...errors import FatalError, NotFoundError, OcneError, TransientRemoteError, ValidationError

logger = logging.getLogger("ocnectl.k8s.client")


def load_kubeconfig(path: str) -> client.ApiClient:
    """Build an API client from a kubeconfig file.

    Raises:
        NotFoundError: If the kubeconfig does not exist
        ValidationError: If it cannot be parsed
    """
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        raise NotFoundError(f"Kubeconfig not found at {path}")
    try:
        return config.new_client_from_config(config_file=path)
    except config.ConfigException as e:
        raise ValidationError(f"Invalid kubeconfig {path}: {e}") from e


def get_kube_client(path: str) -> Tuple[client.ApiClient, client.CoreV1Api]:
    api_client = load_kubeconfig(path)
    return api_client, client.CoreV1Api(api_client)


def get_dynamic_client(path: str) -> DynamicClient:
    return DynamicClient(load_kubeconfig(path))


def get_host(api_client: client.ApiClient) -> str:
    """The host:port of the API server an API client talks to."""
    parsed = urlparse(api_client.configuration.host)
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    return f"{parsed.hostname}:{port}"


def kubeconfig_dir() -> Path:
    return user_home() / constants.USER_KUBECONFIG_DIR


def get_kubeconfig_path(name: str, suffix: str = "") -> str:
    """Default location of a cluster's kubeconfig, ``~/.kube/kubeconfig.<name>[.<suffix>]``."""
    filename = f"kubeconfig.{name}"
    if suffix:
        filename = f"{filename}.{suffix}"
    return str(kubeconfig_dir() / filename)


def api_error(err: ApiException, context: str) -> OcneError:
    """Translate an API error into the matching ocnectl error."""
    message = f"{context}: {err.reason}"
    if err.status == 404:
        return NotFoundError(message)
    if err.status in (409, 422):
        return ValidationError(message)
    if err.status in (429, 500, 502, 503, 504) or err.status == 0:
        return TransientRemoteError(message)
    return FatalError(message)
