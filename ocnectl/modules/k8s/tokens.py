"""Bootstrap tokens and CA pins for joining nodes to a cluster."""
import base64
import datetime
import hashlib
import logging
import os
import secrets
import string
from typing import List, Tuple

import yaml
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from kubernetes import client

from ... import constants
from ...errors import FatalError, NotFoundError, ValidationError
from .client import get_kube_client
from .nodes import get_control_plane_nodes
from .pods import admin_pod, create_pod, exec_in_pod
from .workloads import create_namespace_if_not_exists, create_secret, delete_pod, wait_until_pod_ready

logger = logging.getLogger("ocnectl.k8s.tokens")

TOKEN_CHARS = string.ascii_lowercase + string.digits
TOKEN_TTL = datetime.timedelta(hours=24)
DEFAULT_TOKEN_GROUP = "system:bootstrappers:kubeadm:default-node-token"


def _cluster_from_kubeconfig(path: str) -> dict:
    with open(os.path.expanduser(path)) as f:
        conf = yaml.safe_load(f) or {}
    contexts = {c["name"]: c.get("context", {}) for c in conf.get("contexts") or []}
    clusters = {c["name"]: c.get("cluster", {}) for c in conf.get("clusters") or []}
    context = contexts.get(conf.get("current-context", ""), {})
    cluster = clusters.get(context.get("cluster", ""))
    if cluster is None:
        if not clusters:
            raise ValidationError(f"Kubeconfig {path} does not define any clusters")
        cluster = next(iter(clusters.values()))
    return cluster


def certs_from_kubeconfig(path: str) -> List[x509.Certificate]:
    """The CA certificates a kubeconfig trusts."""
    cluster = _cluster_from_kubeconfig(path)
    if cluster.get("certificate-authority-data"):
        pem = base64.b64decode(cluster["certificate-authority-data"])
    elif cluster.get("certificate-authority"):
        with open(cluster["certificate-authority"], "rb") as f:
            pem = f.read()
    else:
        raise NotFoundError("Kubeconfig did not have any CAs")
    return x509.load_pem_x509_certificates(pem)


def pubkey_pin(cert: x509.Certificate) -> str:
    """The kubeadm discovery hash of a certificate's public key."""
    spki = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return "sha256:" + hashlib.sha256(spki).hexdigest()


def cert_hashes_from_kubeconfig(path: str) -> List[str]:
    return [pubkey_pin(c) for c in certs_from_kubeconfig(path)]


def generate_token() -> str:
    """A bootstrap token of the form [a-z0-9]{6}.[a-z0-9]{16}."""
    token_id = "".join(secrets.choice(TOKEN_CHARS) for _ in range(6))
    token_secret = "".join(secrets.choice(TOKEN_CHARS) for _ in range(16))
    return f"{token_id}.{token_secret}"


def bootstrap_token_secret(token: str, now: datetime.datetime = None) -> client.V1Secret:
    token_id, token_secret = token.split(".")
    now = now or datetime.datetime.now(datetime.timezone.utc)
    expiration = (now + TOKEN_TTL).strftime("%Y-%m-%dT%H:%M:%SZ")
    return client.V1Secret(
        metadata=client.V1ObjectMeta(name=f"bootstrap-token-{token_id}", namespace=constants.KUBE_SYSTEM_NAMESPACE),
        type="bootstrap.kubernetes.io/token",
        string_data={
            "token-id": token_id,
            "token-secret": token_secret,
            "usage-bootstrap-authentication": "true",
            "usage-bootstrap-signing": "true",
            "auth-extra-groups": DEFAULT_TOKEN_GROUP,
            "expiration": expiration,
        },
    )


def create_join_token(kubeconfig: str, generate_only: bool = False) -> str:
    """Generate a bootstrap token and, unless asked not to, register it with the cluster."""
    token = generate_token()
    if generate_only:
        return token

    _, core = get_kube_client(kubeconfig)
    create_secret(core, constants.KUBE_SYSTEM_NAMESPACE, bootstrap_token_secret(token))
    return token


def create_join(kubeconfig: str) -> Tuple[str, List[str]]:
    """A registered join token and the CA pins for a cluster."""
    hashes = cert_hashes_from_kubeconfig(kubeconfig)
    return create_join_token(kubeconfig, False), hashes


def create_upload_certificate_key() -> str:
    return secrets.token_hex(32)


def upload_certificates(kubeconfig: str, key: str) -> None:
    """Upload the control plane certificates, encrypted with ``key``.

    This has to run on a control plane node that is already part of the
    cluster. Running it elsewhere would create a brand new CA.
    """
    _, core = get_kube_client(kubeconfig)
    nodes = get_control_plane_nodes(core)
    if not nodes:
        raise NotFoundError("Did not find any control plane nodes")
    node_name = nodes[0].metadata.name

    create_namespace_if_not_exists(core, constants.OCNE_SYSTEM_NAMESPACE)
    pod_name = f"upload-certs-{node_name}-pod"
    create_pod(core, admin_pod(pod_name, constants.OCNE_SYSTEM_NAMESPACE, node_name))
    try:
        wait_until_pod_ready(core, constants.OCNE_SYSTEM_NAMESPACE, pod_name)
        result = exec_in_pod(core, constants.OCNE_SYSTEM_NAMESPACE, pod_name, [
            "chroot", constants.HOST_ROOT_MOUNT_PATH, "kubeadm", "init", "phase", "upload-certs",
            "--certificate-key", key, "--upload-certs",
        ])
        if result.returncode != 0:
            raise FatalError(f"Uploading certificates on {node_name} failed: {result.stderr.strip()}")
    finally:
        delete_pod(core, constants.OCNE_SYSTEM_NAMESPACE, pod_name)
