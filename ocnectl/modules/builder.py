"""Build node boot images for a platform and publish them.

Boot images ship as a generic qcow2 inside a container image. Making one
bootable on a platform means changing the ignition platform id and the
filesystem UUIDs inside the disk, which is done by a privileged pod on an
existing cluster. The converted disk is then packaged with its capability
metadata and imported as a custom image.
"""
import json
import logging
import os
import shutil
import string
import tarfile
import tempfile
from pathlib import Path
from typing import Optional, Tuple

from .. import constants
from ..config import ClusterConfig
from ..errors import FatalError, ValidationError
from .containers import ensure_base_qcow2_image, ensure_boot_image_version, image_cache_dir
from .k8s.client import get_kube_client
from .k8s.nodes import wait_until_get_nodes_succeeds
from .k8s.pods import admin_pod, copy_from_pod, copy_to_pod, create_pod, exec_in_pod
from .k8s.workloads import (
    create_configmap,
    create_namespace_if_not_exists,
    delete_configmap,
    delete_pod,
    wait_for_pod_deleted,
    wait_until_pod_ready,
)
from .oci.capabilities import new_image_capability
from .oci.compartment import get_compartment_id
from .oci.images import create_efi_image_schema, ensure_compatible_image_shapes, import_image
from .oci.objectstorage import upload_object
from .oci.workrequests import wait_for_work_request
from .templates import read_template
from .waiter import Waiter, wait_for

logger = logging.getLogger("ocnectl.builder")

BUILDER_NAME = "ocne-image-builder"
BUILDER_MOUNT_PATH = "/ocne-image-build"
REMOTE_IMAGE_PATH = "/tmp/boot.qcow2"
SET_PROVIDER_SCRIPT = "set-provider.sh"
MODIFY_IMAGE_SCRIPT = "modify-image.sh"
CAPABILITIES_FILE = "image_metadata.json"
ENV_PROVIDER_TYPE = "IGNITION_PROVIDER_TYPE"
ENV_KERNEL_ARGS = "KARGS_APPEND_STANZA"

# Ignition platform ids by target
DEFAULT_IGNITION_PROVIDERS = {
    constants.PROVIDER_OCI: "oci",
}

# Extra files copied into the image by provider
PROVIDER_FILES = {
    constants.PROVIDER_OCI: ("oci.sh", "oci-dhclient.sh", "11-dhclient"),
}


def default_image_path(provider: str, version: str, arch: str) -> Path:
    """Where a converted image for a provider, version and architecture is cached."""
    images = image_cache_dir()
    images.mkdir(parents=True, exist_ok=True)
    return images / f"{constants.BOOT_VOLUME_NAME}-{version}-{arch}.{provider}"


def generate_kernel_args_stanza(args: str) -> str:
    """A sed expression that appends kernel arguments to a boot loader entry.

    The expression delimiter is the first printable character that does not
    appear in the arguments.

    Raises:
        ValidationError: If the arguments use every printable character
    """
    if not args:
        return ""

    for sep in (chr(c) for c in range(ord("!"), ord("~") + 1)):
        if sep not in args:
            return f"/^options / s{sep}${sep} {args}{sep}"
    raise ValidationError("extra kernel arguments use all printable characters")


def _builder_scripts(provider: str) -> dict:
    scripts = {
        SET_PROVIDER_SCRIPT: read_template(f"scripts/image/{SET_PROVIDER_SCRIPT}"),
        MODIFY_IMAGE_SCRIPT: read_template(f"scripts/image/{MODIFY_IMAGE_SCRIPT}"),
    }
    for name in PROVIDER_FILES.get(provider, ()):
        scripts[name] = read_template(f"scripts/image/{name}")
    return scripts


def _write_base_image(cluster_config: ClusterConfig, arch: str, dest: Path) -> None:
    image = ensure_boot_image_version(cluster_config.kube_version, cluster_config.boot_volume_container_image)
    logger.info(f"📦 Getting local boot image for architecture: {arch}")
    reader, closer = ensure_base_qcow2_image(image, arch)
    try:
        with open(dest, "wb") as f:
            shutil.copyfileobj(reader, f)
    finally:
        closer()


def create_image(kubeconfig: str, cluster_config: ClusterConfig, provider: str, arch: str,
                 ignition_provider: str = "", kernel_args: str = "") -> Path:
    """Convert the base boot image for a provider using a pod on an existing cluster.

    Args:
        kubeconfig: Cluster that runs the builder pod
        cluster_config: Supplies the boot image and Kubernetes version
        provider: Target platform, which selects the ignition platform id
        arch: Image architecture
        ignition_provider: Override for the ignition platform id
        kernel_args: Extra kernel arguments for the boot loader entry

    Returns:
        Path of the converted image
    """
    if provider not in DEFAULT_IGNITION_PROVIDERS:
        raise ValidationError(f"{provider} is not a supported provider")
    ignition_provider = ignition_provider or DEFAULT_IGNITION_PROVIDERS[provider]
    if any(c in ignition_provider for c in string.whitespace):
        raise ValidationError(f"'{ignition_provider}' is not a valid ignition provider")
    kargs = generate_kernel_args_stanza(kernel_args)

    _, core = get_kube_client(kubeconfig)
    wait_until_get_nodes_succeeds(core)
    namespace = constants.OCNE_SYSTEM_NAMESPACE
    create_namespace_if_not_exists(core, namespace)

    logger.info("🔧 Preparing pod used to create image")
    delete_configmap(core, namespace, BUILDER_NAME)
    create_configmap(core, namespace, BUILDER_NAME, _builder_scripts(provider))

    delete_pod(core, namespace, BUILDER_NAME)
    wait_for_pod_deleted(core, namespace, BUILDER_NAME)
    pod = admin_pod(
        BUILDER_NAME, namespace, None,
        configmap=BUILDER_NAME,
        env={ENV_PROVIDER_TYPE: ignition_provider, ENV_KERNEL_ARGS: kargs},
        script_mount_path=BUILDER_MOUNT_PATH,
    )
    tmp_dir = Path(tempfile.mkdtemp(prefix="create-images-"))
    try:
        create_pod(core, pod)
        wait_until_pod_ready(core, namespace, BUILDER_NAME)

        local_image = tmp_dir / f"{constants.BOOT_VOLUME_NAME}.{provider}"
        _write_base_image(cluster_config, arch, local_image)

        copy_in = Waiter(
            f"Uploading boot image to pod {namespace}/{BUILDER_NAME}",
            copy_to_pod, kubeconfig, namespace, BUILDER_NAME, str(local_image), REMOTE_IMAGE_PATH,
        )
        if wait_for([copy_in]):
            raise FatalError(f"Timeout copying file to pod {namespace}/{BUILDER_NAME}")

        logger.info("🛠️ Modifying boot image")
        result = exec_in_pod(core, namespace, BUILDER_NAME, ["/bin/bash", f"{BUILDER_MOUNT_PATH}/{SET_PROVIDER_SCRIPT}"])
        if result.returncode != 0:
            raise FatalError(f"Error modifying boot image: {result.stderr.strip() or result.stdout.strip()}")

        dest = default_image_path(provider, cluster_config.kube_version, arch)
        copy_out = Waiter(
            f"Downloading boot image from pod {namespace}/{BUILDER_NAME}",
            copy_from_pod, kubeconfig, namespace, BUILDER_NAME, REMOTE_IMAGE_PATH, str(dest),
        )
        if wait_for([copy_out]):
            raise FatalError(f"Error copying file from pod {namespace}/{BUILDER_NAME}")
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        delete_pod(core, namespace, BUILDER_NAME)
        delete_configmap(core, namespace, BUILDER_NAME)

    logger.info(f"✅ New boot image was created successfully at {dest}")
    return dest


def create_image_archive(image_path: Path, arch: str) -> Path:
    """Package an image with its capability metadata as ``<image>.tar.gz``."""
    archive = Path(f"{image_path}.tar.gz")
    capabilities = json.dumps(new_image_capability(arch), indent=2).encode()

    with tempfile.TemporaryDirectory() as tmp:
        capabilities_path = Path(tmp) / CAPABILITIES_FILE
        capabilities_path.write_bytes(capabilities)
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(str(image_path), arcname=image_path.name)
            tar.add(str(capabilities_path), arcname=CAPABILITIES_FILE)

    logger.debug("Created archive: %s", archive)
    return archive


def upload_image_async(cluster_config: ClusterConfig, image_path: Path, version: str, arch: str,
                       image_name: str = constants.OCI_IMAGE_NAME,
                       compartment_id: Optional[str] = None) -> Tuple[str, str]:
    """Upload an image to object storage and start importing it.

    Returns:
        Tuple of the new image OCID and the import work request
    """
    oci_config = cluster_config.providers.oci
    if not compartment_id:
        compartment_id = get_compartment_id(oci_config.compartment, oci_config.profile)

    image_path = Path(image_path).expanduser().absolute()
    if not image_path.exists():
        raise ValidationError(f"Image {image_path} does not exist")

    archive = create_image_archive(image_path, arch)
    object_name = f"ocne_{archive.name}"
    size = archive.stat().st_size

    def upload() -> None:
        with open(archive, "rb") as f:
            upload_object(oci_config.image_bucket, object_name, f, oci_config.profile)

    try:
        if wait_for([Waiter(f"Uploading {object_name} of size {size} bytes to object storage", upload)]):
            raise FatalError(f"failed to upload {object_name} to object storage")
    finally:
        os.unlink(archive)

    return import_image(image_name, version, arch, compartment_id, oci_config.image_bucket, object_name,
                        oci_config.profile)


def ensure_image_details(compartment_id: str, profile: str, image_id: str, arch: str) -> None:
    """Set firmware capabilities and compatible shapes on an imported image."""
    create_efi_image_schema(compartment_id, image_id, profile)
    ensure_compatible_image_shapes(image_id, arch, profile)


def upload_image(cluster_config: ClusterConfig, image_path: Path, version: str, arch: str,
                 image_name: str = constants.OCI_IMAGE_NAME) -> str:
    """Upload and import an image, waiting for the import to finish.

    Returns:
        The OCID of the imported image
    """
    oci_config = cluster_config.providers.oci
    compartment_id = get_compartment_id(oci_config.compartment, oci_config.profile)

    image_id, work_request_id = upload_image_async(cluster_config, image_path, version, arch,
                                                   image_name=image_name, compartment_id=compartment_id)
    if work_request_id:
        wait_for_work_request(work_request_id, "Importing compute image", oci_config.profile)
        ensure_image_details(compartment_id, oci_config.profile, image_id, arch)

    logger.info(f"✅ Image OCID is {image_id}")
    return image_id
