import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from jsonschema import ValidationError as SchemaError, validate

from ..config import ClusterConfig
from ..errors import ValidationError
from ..modules.cluster import delete_cluster, join_cluster, stage_cluster, start_cluster

app = typer.Typer(help="Manage the lifecycle of clusters")

logger = logging.getLogger("ocnectl.commands.cluster")

NODE_SCHEMA = {
    "type": "object",
    "properties": {
        "cpu": {"type": "integer", "minimum": 1},
        "memory": {"type": "string"},
        "storage": {"type": "string"},
    },
}

CLUSTER_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "pattern": "^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"},
        "provider": {"type": "string", "enum": ["libvirt", "oci", "none"]},
        "kubernetesVersion": {"type": "string"},
        "controlPlaneNodes": {"type": "integer", "minimum": 0},
        "workerNodes": {"type": "integer", "minimum": 0},
        "virtualIp": {"type": "string"},
        "loadBalancer": {"type": "string"},
        "podSubnet": {"type": "string"},
        "serviceSubnet": {"type": "string"},
        "cni": {"type": "string"},
        "headless": {"type": "boolean"},
        "kubeconfig": {"type": "string"},
        "clusterDefinition": {"type": "string"},
        "clusterDefinitionInline": {"type": "string"},
        "providers": {
            "type": "object",
            "properties": {
                "libvirt": {
                    "type": "object",
                    "properties": {
                        "uri": {"type": "string"},
                        "controlPlaneNode": NODE_SCHEMA,
                        "workerNode": NODE_SCHEMA,
                    },
                },
                "oci": {"type": "object"},
            },
        },
        "ephemeralCluster": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "preserve": {"type": "boolean"},
                "node": NODE_SCHEMA,
            },
        },
    },
}


def validate_cluster_file(path: str) -> None:
    """Check a cluster configuration file against the cluster schema."""
    try:
        with open(Path(path).expanduser()) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(f"Could not read cluster configuration {path}: {e}") from e

    try:
        validate(instance=data, schema=CLUSTER_SCHEMA)
    except SchemaError as e:
        location = ".".join(str(p) for p in e.absolute_path) or "<root>"
        raise ValidationError(f"Invalid cluster configuration {path} at {location}: {e.message}") from e


def load_cluster_config(config: Optional[str], name: Optional[str] = None, provider: Optional[str] = None,
                        version: Optional[str] = None) -> ClusterConfig:
    if config:
        validate_cluster_file(config)
        logger.info("✅ Cluster configuration validated")
    cluster_config = ClusterConfig.load(config)

    updates = {}
    if name:
        updates["name"] = name
    if provider:
        updates["provider"] = provider
    if version:
        updates["kube_version"] = version
    if updates:
        cluster_config = ClusterConfig.from_dict({**cluster_config.to_dict(), **_aliases(updates)})
    return cluster_config


def _aliases(updates: dict) -> dict:
    fields = ClusterConfig.model_fields
    return {(fields[k].alias or k): v for k, v in updates.items()}


@app.command("start")
def start_cmd(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Cluster configuration file"),
    name: Optional[str] = typer.Option(None, "--name", "-C", help="Cluster name"),
    provider: Optional[str] = typer.Option(None, "--provider", "-P", help="Infrastructure provider: libvirt, oci or none"),
    version: Optional[str] = typer.Option(None, "--version", "-n", help="Kubernetes version"),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", "-k", help="Kubeconfig of an existing cluster"),
):
    """Start a cluster, creating it if it does not exist."""
    cluster_config = load_cluster_config(config, name, provider, version)
    if kubeconfig:
        cluster_config.kubeconfig = kubeconfig
    _, help_text = start_cluster(cluster_config)
    if help_text:
        typer.echo(help_text)


@app.command("join")
def join_cmd(
    kubeconfig: str = typer.Option(..., "--kubeconfig", "-k", help="Kubeconfig of the cluster to join"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Cluster configuration file"),
    name: Optional[str] = typer.Option(None, "--name", "-C", help="Cluster name"),
    control_plane_nodes: int = typer.Option(0, "--control-plane-nodes", "-n", help="Control plane nodes to add"),
    worker_nodes: int = typer.Option(0, "--worker-nodes", "-w", help="Worker nodes to add"),
):
    """Add nodes to a running cluster."""
    cluster_config = load_cluster_config(config, name)
    join_cluster(cluster_config, kubeconfig, control_plane_nodes, worker_nodes)


@app.command("stage")
def stage_cmd(
    version: str = typer.Option(..., "--version", "-v", help="Kubernetes version to upgrade to"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Cluster configuration file"),
    name: Optional[str] = typer.Option(None, "--name", "-C", help="Cluster name"),
):
    """Prepare a cluster for an upgrade to a new Kubernetes version."""
    cluster_config = load_cluster_config(config, name)
    _, help_text = stage_cluster(cluster_config, version)
    if help_text:
        typer.echo(help_text)


@app.command("delete")
def delete_cmd(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Cluster configuration file"),
    name: Optional[str] = typer.Option(None, "--name", "-C", help="Cluster name"),
    provider: Optional[str] = typer.Option(None, "--provider", "-P", help="Infrastructure provider: libvirt, oci or none"),
):
    """Delete a cluster and the infrastructure it runs on."""
    cluster_config = load_cluster_config(config, name, provider)
    delete_cluster(cluster_config)
