"""Cluster API resources for OCI clusters generated from a cluster configuration."""
import json
import logging
import re
from typing import Any, Dict, List

from .... import constants
from ....config import ClusterConfig, OciImageSet
from ....errors import NotFoundError, ValidationError
from ....utils.versions import get_kubernetes_versions
from ... import ignition
from ...containers import make_ostree_reference, parse_ostree_reference
from ...k8s.resources import gvk_of, unmarshall_yaml
from ...oci.compartment import get_compartment_id
from ...oci.images import get_image
from ...oci.shapes import architecture_from_shape
from ...templates import read_template, render

logger = logging.getLogger("ocnectl.drivers.oci.template")

PROXY_CONFIG_SERVICE = "ocne-proxy-config.service"
PROXY_CONFIG_SCRIPT_PATH = "/etc/ocne/proxy-config.sh"
OCNE_UPDATE_PROXY_CONF = "/etc/systemd/system/ocne-update.service.d/proxy.conf"
CRIO_PROXY_CONF = "/etc/systemd/system/crio.service.d/proxy.conf"

# Cluster API starts kubelet through its own kubeadm.service
PRE_KUBEADM_DROPIN = """[Unit]
Before=kubeadm.service
"""

# kubeadm configuration written by Cluster API carries a placeholder for the instance OCID
OCID_POPULATE_DROPIN = """[Service]
ExecStartPre=sh -c 'export OCID=$(curl -H "Authorization: Bearer Oracle" -L http://169.254.169.254/opc/v2/instance/id); sed -i "s/{{ ds\\\\[\\\\"id\\\\"\\\\] }}/$OCID/g" /etc/kubeadm.yml'
ExecStartPost=sh -c 'mv /etc/systemd/system/crio.service.d/ocid-populate.conf /tmp/'
"""

_IMAGE_ID = re.compile(r"imageId:(.*)")
IMAGE_OCID_PREFIX = "ocid1.image"


def shape_image(shape: str, images: OciImageSet) -> str:
    """The image from a set that boots on a shape."""
    if architecture_from_shape(shape) == constants.ARCH_ARM64:
        return images.arm64
    return images.amd64


def extra_ignition(cluster_config: ClusterConfig) -> ignition.Ignition:
    """Node configuration passed to Cluster API as additional ignition."""
    ign = ignition.new_ignition()
    ign = ignition.add_unit(ign, ignition.OCNE_SERVICE, enabled=False)
    ign = ignition.add_unit(ign, ignition.CRIO_SERVICE, enabled=True, dropins={
        "pre-kubeadm.conf": PRE_KUBEADM_DROPIN,
        "ocid-populate.conf": OCID_POPULATE_DROPIN,
    })

    ign = ignition.add_unit(ign, PROXY_CONFIG_SERVICE, enabled=True,
                            contents=read_template("capi/proxy-config.service"))
    ignition.add_file(ign, PROXY_CONFIG_SCRIPT_PATH, render(
        "capi/proxy-config.sh.j2",
        cluster_name=cluster_config.name,
        proxy_conf=OCNE_UPDATE_PROXY_CONF,
        proxy_conf2=CRIO_PROXY_CONF,
    ), 0o555)

    transport, registry, _ = parse_ostree_reference(make_ostree_reference(cluster_config.os_registry))
    ignition.add_file(ign, ignition.UPDATE_CONFIG_PATH, render(
        "ignition/update.yaml.j2", registry=registry, tag=cluster_config.os_tag, transport=transport,
    ), 0o400)
    ign = ignition.add_unit(ign, ignition.ISCSID_SERVICE, enabled=True)

    ign = ignition.merge(ign, ignition.container_configuration(cluster_config.registry))
    ign = ignition.merge(ign, ignition.proxy(
        cluster_config.proxy, cluster_config.service_subnet, cluster_config.pod_subnet,
        constants.OCI_INSTANCE_METADATA,
    ))
    ign = ignition.merge(ign, ignition.ocne_user(
        cluster_config.ssh_public_key, cluster_config.ssh_public_key_path, cluster_config.password,
    ))

    if cluster_config.extra_ignition:
        ign = ignition.merge(ign, ignition.from_path(cluster_config.extra_ignition))
    if cluster_config.extra_ignition_inline:
        ign = ignition.merge(ign, ignition.from_string(cluster_config.extra_ignition_inline))
    return ign


def resolve_images(cluster_config: ClusterConfig, compartment_id: str) -> None:
    """Fill in the newest uploaded images for the cluster version. Images that can not be found are left alone."""
    oci_config = cluster_config.providers.oci
    for arch in (constants.ARCH_AMD64, constants.ARCH_ARM64):
        image, found = get_image(constants.OCI_IMAGE_NAME, cluster_config.kube_version, arch,
                                 compartment_id, oci_config.profile)
        if found:
            logger.debug("Using image %s for %s", image.id, arch)
            setattr(oci_config.images, arch, image.id)


def get_oci_template(cluster_config: ClusterConfig) -> str:
    """Render the Cluster API resources for a cluster configuration.

    Raises:
        ValidationError: If the configuration can not describe a Cluster API cluster
    """
    if cluster_config.control_plane_nodes % 2 == 0:
        raise ValidationError("the number of control plane nodes must be odd")

    versions = get_kubernetes_versions(cluster_config.kube_version)
    oci_config = cluster_config.providers.oci

    compartment_id = oci_config.compartment
    if compartment_id:
        compartment_id = get_compartment_id(compartment_id, oci_config.profile)
        resolve_images(cluster_config, compartment_id)

    extra = json.dumps(extra_ignition(cluster_config), indent=2)
    return render(
        "capi/oci.yaml.j2",
        cluster=cluster_config,
        oci=oci_config,
        namespace=oci_config.namespace or constants.OCI_DEFAULT_NAMESPACE,
        compartment_id=compartment_id,
        versions=versions,
        extra_config=extra,
        cipher_suites=cluster_config.cipher_suites,
        volume_plugin_dir=ignition.VOLUME_PLUGIN_DIR,
        patch_directory=constants.OCK_PATCH_DIRECTORY,
        shape_image=shape_image,
    )


def validate_cluster_resources(resources: str) -> None:
    """Every image id in a set of resources must be an image OCID."""
    for match in _IMAGE_ID.finditer(resources):
        ocid = match.group(1).strip('" ')
        if not ocid.startswith(IMAGE_OCID_PREFIX):
            raise ValidationError("Image ids in cluster resources must be valid OCI image OCIDs")


def get_cluster_object(resources: str) -> Dict[str, Any]:
    """The Cluster API Cluster in a set of resources.

    Raises:
        NotFoundError: If there is no Cluster
        ValidationError: If the Cluster does not carry a cluster name label
    """
    objs: List[Dict[str, Any]] = unmarshall_yaml(resources)
    for obj in objs:
        if gvk_of(obj) != (constants.CAPI_API_VERSION, "Cluster"):
            continue
        labels = obj.get("metadata", {}).get("labels") or {}
        if constants.CLUSTER_NAME_LABEL not in labels:
            raise ValidationError(
                f"Cluster {obj['metadata'].get('name', '')} does not have the label {constants.CLUSTER_NAME_LABEL}"
            )
        return obj
    raise NotFoundError(f"Cluster resources do not include a valid {constants.CAPI_API_VERSION}/Cluster")


def find_resource(resources: str, kind: str, name: str) -> Dict[str, Any]:
    for obj in unmarshall_yaml(resources):
        if obj.get("kind") == kind and obj.get("metadata", {}).get("name") == name:
            return obj
    raise NotFoundError(f"Cluster resources do not include {kind} {name}")
