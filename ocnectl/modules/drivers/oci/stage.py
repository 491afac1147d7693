"""Stage a Kubernetes upgrade of a Cluster API cluster on OCI.

Staging finds the OCI custom images used by the machine templates of a
cluster, builds and imports new images where the boot image has changed,
creates new machine templates that use them, and explains how to point the
KubeadmControlPlane and MachineDeployments at the new templates.
"""
import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import oci

from .... import constants
from ....config import Config
from ....errors import NotFoundError, OcneError, ValidationError
from ....utils.memfile import in_memory_file
from ....utils.names import increment_count
from ....utils.versions import compare_kubernetes_versions, get_kubernetes_versions
from ...builder import ensure_image_details
from ...capi.graph import (
    CONTROL_PLANE_VERSION,
    MACHINE_TEMPLATE_IMAGE_ID,
    MACHINE_TEMPLATE_SHAPE,
    ClusterGraph,
    GraphNode,
    get_cluster_graph,
)
from ...capi.patches import (
    control_plane_help,
    get_control_plane_patches,
    get_machine_deployment_patches,
    machine_deployment_help,
    patch_control_plane,
)
from ...containers import ensure_boot_image_version, image_created
from ...k8s.resources import ResourceClient, nested_set, nested_string
from ...oci.images import get_image, get_image_by_id
from ...oci.shapes import architecture_from_shape
from ...oci.workrequests import wait_for_work_requests
from .template import get_cluster_object

logger = logging.getLogger("ocnectl.drivers.oci.stage")


@dataclass
class OciImageData:
    """An OCI custom image and the machine templates that boot from it."""
    image: oci.core.models.Image
    arch: str
    has_update: bool = False
    new_id: str = ""
    work_request_id: str = ""
    machine_templates: List[GraphNode] = field(default_factory=list)


def image_from_machine_template(mt: GraphNode, profile: str) -> oci.core.models.Image:
    image_id, found = nested_string(mt.obj, MACHINE_TEMPLATE_IMAGE_ID)
    if not found:
        raise ValidationError(f"MachineTemplate {mt.name} in {mt.namespace} has no imageId")
    logger.debug("MachineTemplate %s in %s has imageId %s", mt.name, mt.namespace, image_id)
    return get_image_by_id(image_id, profile)


def do_update(img: oci.core.models.Image, arch: str, version: str, boot_volume_image: str, profile: str) -> bool:
    """Whether a new custom image should be built to replace ``img``.

    An image is replaced when uploads are forced, when the minor version
    changes and no image exists for the new version yet, or when the
    version stays the same and the boot image container was built after
    the newest custom image.
    """
    if Config.force_stage_upload():
        return True

    img_version = (img.freeform_tags or {}).get(constants.OCI_KUBERNETES_TAG)
    if img_version is None:
        raise ValidationError(f"OCI Custom image {img.id} does not have a Kubernetes version tag")

    existing, found = get_image(img.display_name, version, arch, img.compartment_id, profile)
    if found:
        logger.debug("Found existing OCI Image for version %s with OCID %s", version, existing.id)

    if compare_kubernetes_versions(img_version, version) == 0:
        # The newest image for a version is the only one that can be current
        if not found or existing.id != img.id:
            return False
        container_image = ensure_boot_image_version(version, boot_volume_image)
        try:
            created = image_created(container_image, arch)
        except OcneError as e:
            logger.debug("Could not get the creation time of %s: %s", container_image, e)
            return False
        logger.debug("Checking %s against %s", created, existing.time_created)
        return created > existing.time_created

    return not found


def graph_to_images(graph: ClusterGraph, profile: str) -> Dict[str, OciImageData]:
    """The custom images used by the machine templates of a cluster, by OCID."""
    ret: Dict[str, OciImageData] = {}

    def collect(parent: GraphNode, mt: GraphNode) -> None:
        img = image_from_machine_template(mt, profile)
        shape, found = nested_string(mt.obj, MACHINE_TEMPLATE_SHAPE)
        if not found:
            raise ValidationError(f"MachineTemplate {mt.name} in {mt.namespace} has no shape")

        arch = architecture_from_shape(shape)
        logger.debug("MachineTemplate %s in %s has shape %s of architecture %s", mt.name, mt.namespace, shape, arch)
        data = ret.get(img.id)
        if data is None:
            ret[img.id] = OciImageData(image=img, arch=arch, machine_templates=[mt])
        elif mt not in data.machine_templates:
            data.machine_templates.append(mt)

    graph.walk_machine_templates(collect)
    return ret


def find_updates(images: Dict[str, OciImageData], version: str, boot_volume_image: str, profile: str) -> None:
    for img in images.values():
        img.has_update = do_update(img.image, img.arch, version, boot_volume_image, profile)


def create_machine_templates(resources: ResourceClient, images: Dict[str, OciImageData]) -> Dict[Tuple, str]:
    """Clone the machine templates of every updated image to use the new image.

    Returns:
        The name of the new template keyed by the (gvk, name) of the old one
    """
    updated: Dict[Tuple, str] = {}
    force = Config.force_stage_templates()
    for img in images.values():
        new_id = img.new_id
        if force:
            new_id = img.image.id
        elif not img.has_update:
            continue

        logger.debug("Creating templates for %s", img.image.id)
        for mt in img.machine_templates:
            obj = copy.deepcopy(mt.obj)
            metadata = obj.setdefault("metadata", {})
            for key in ("resourceVersion", "uid", "creationTimestamp", "generation", "managedFields"):
                metadata.pop(key, None)
            metadata["name"] = increment_count(mt.name)
            nested_set(obj, MACHINE_TEMPLATE_IMAGE_ID, new_id)
            obj.pop("status", None)

            resources.create(obj)
            updated[(mt.gvk, mt.name)] = metadata["name"]
    return updated


def update_help(graph: ClusterGraph, updated: Dict[Tuple, str], version: str) -> List[str]:
    kube_version = get_kubernetes_versions(version)["kubernetes"]
    messages: List[str] = []

    def describe(parent: GraphNode, mt: GraphNode) -> None:
        new_name = updated.get((mt.gvk, mt.name))
        if new_name is None:
            return
        if parent is graph.control_plane:
            patches = get_control_plane_patches(parent.obj, kube_version, new_name)
            messages.append(control_plane_help(parent.obj, patches))
        else:
            patches = get_machine_deployment_patches(kube_version, new_name)
            messages.append(machine_deployment_help(parent.obj, patches))

    graph.walk_machine_templates(describe)
    return messages


def _import_updated_images(driver, images: Dict[str, OciImageData], version: str,
                           minor_version_changed: bool) -> None:
    cc = driver.cluster_config
    profile = cc.providers.oci.profile
    imports: Dict[str, str] = {}

    for image_id, img in images.items():
        if img.has_update:
            logger.debug("OCI image %s with architecture %s has an update", image_id, img.arch)
        elif minor_version_changed:
            # Adopt the newest image that already exists for the new version
            existing, found = get_image(img.image.display_name, version, img.arch,
                                        img.image.compartment_id, profile)
            if not found:
                raise NotFoundError(
                    f"Could not find latest OCI image for Kubernetes version {version} and architecture {img.arch}"
                )
            img.has_update = True
            img.new_id = existing.id
            continue
        else:
            logger.debug("OCI image %s with architecture %s does not have an update", image_id, img.arch)
            continue

        boot_image = cc.boot_volume_container_image
        cc.boot_volume_container_image = ensure_boot_image_version(version, boot_image)
        try:
            img.new_id, img.work_request_id = driver.ensure_image(img.image.display_name, img.arch, version, True)
        finally:
            cc.boot_volume_container_image = boot_image
        imports[img.work_request_id] = f"Importing updated image for {img.image.display_name}"

    wait_for_work_requests(imports, profile)
    for img in images.values():
        if img.work_request_id:
            ensure_image_details(img.image.compartment_id, profile, img.new_id, img.arch)


def stage(driver, version: str) -> Tuple[str, str, bool]:
    """Stage an upgrade of the cluster managed by an OCI driver.

    Returns:
        Tuple of a kubeconfig for the cluster, patch instructions and True
    """
    cc = driver.cluster_config
    profile = cc.providers.oci.profile
    resources = ResourceClient.from_kubeconfig(driver.bootstrap_kubeconfig)

    if driver.from_template:
        driver.cluster_resources = ""
    cluster = get_cluster_object(driver._resources())
    namespace, name = driver._cluster()

    logger.debug("Getting graph for Cluster %s in namespace %s", name, namespace)
    graph = get_cluster_graph(resources, namespace, name)

    control_plane = graph.control_plane
    current_version, found = nested_string(control_plane.obj, CONTROL_PLANE_VERSION)
    if not found:
        raise ValidationError(f"{control_plane.kind} {control_plane.name} in {control_plane.namespace} "
                              f"does not have a version")

    patch_control_plane(resources, control_plane.obj)
    minor_version_changed = compare_kubernetes_versions(current_version, version) != 0

    images = graph_to_images(graph, profile)
    find_updates(images, version, cc.boot_volume_container_image, profile)
    _import_updated_images(driver, images, version, minor_version_changed)

    updated = create_machine_templates(resources, images)
    messages = update_help(graph, updated, version)

    cluster_name = cluster.get("metadata", {}).get("labels", {}).get(constants.CLUSTER_NAME_LABEL, name)
    kubeconfig = driver.wait_for_kubeconfig(namespace)
    path = in_memory_file(f"kcfg.{cluster_name}", kubeconfig.encode())
    return path, "\n".join(messages), True

