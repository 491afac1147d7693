import logging
from typing import Optional

import typer

from .. import constants
from ..config import ClusterConfig
from ..errors import ValidationError
from ..modules.builder import create_image, upload_image
from ..modules.ephemeral import ensure_cluster, stop_ephemeral_cluster

app = typer.Typer(help="Build and publish boot images")

logger = logging.getLogger("ocnectl.commands.image")

ARCHITECTURES = (constants.ARCH_AMD64, constants.ARCH_ARM64)


def _check_arch(arch: str) -> None:
    if arch not in ARCHITECTURES:
        raise ValidationError(f"Architecture {arch} is not one of {', '.join(ARCHITECTURES)}")


@app.command("create")
def create_cmd(
    arch: str = typer.Option(constants.ARCH_AMD64, "--arch", "-a", help="Image architecture: amd64 or arm64"),
    provider: str = typer.Option(constants.PROVIDER_OCI, "--type", "-t", help="Platform the image is built for"),
    version: str = typer.Option(constants.KUBE_VERSION, "--version", "-v", help="Kubernetes version"),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", "-k",
                                             help="Cluster to build on instead of an ephemeral cluster"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Cluster configuration file"),
):
    """Convert the boot image of a Kubernetes version for a platform."""
    _check_arch(arch)
    cluster_config = ClusterConfig.load(config).copy_with(kube_version=version)
    cluster_kubeconfig, ephemeral = ensure_cluster(cluster_config, kubeconfig or "")
    try:
        create_image(cluster_kubeconfig, cluster_config, provider, arch)
    finally:
        if ephemeral:
            stop_ephemeral_cluster(cluster_config)


@app.command("upload")
def upload_cmd(
    image: str = typer.Option(..., "--file", "-f", help="Path of the image to upload"),
    arch: str = typer.Option(constants.ARCH_AMD64, "--arch", "-a", help="Image architecture: amd64 or arm64"),
    version: str = typer.Option(constants.KUBE_VERSION, "--version", "-v", help="Kubernetes version of the image"),
    compartment: Optional[str] = typer.Option(None, "--compartment", "-o", help="Compartment OCID or path"),
    bucket: Optional[str] = typer.Option(None, "--bucket", "-b", help="Object storage bucket"),
    image_name: str = typer.Option(constants.OCI_IMAGE_NAME, "--image-name", "-i", help="Display name of the image"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Cluster configuration file"),
):
    """Upload an image to object storage and import it as a custom image."""
    _check_arch(arch)
    cluster_config = ClusterConfig.load(config)
    oci_config = cluster_config.providers.oci
    if compartment:
        oci_config.compartment = compartment
    if bucket:
        oci_config.image_bucket = bucket
    if not oci_config.compartment:
        raise ValidationError("A compartment is required, set --compartment or providers.oci.compartment")
    upload_image(cluster_config, image, version, arch, image_name=image_name)
