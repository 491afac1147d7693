"""Changes to KubeadmControlPlanes and MachineDeployments during a staged update."""
import logging
from typing import Any, Dict

from ... import constants
from ...utils.jsonpatch import JsonPatches
from ..k8s.resources import ResourceClient, gvk_of, name_of, namespace_of, nested_get
from .graph import (
    CONTROL_PLANE_JOIN_PATCHES,
    CONTROL_PLANE_JOIN_SKIP_PHASES,
    CONTROL_PLANE_MACHINE_TEMPLATE_INFRASTRUCTURE_REF,
    CONTROL_PLANE_VERSION,
    MACHINE_DEPLOYMENT_INFRASTRUCTURE_REF,
    MACHINE_DEPLOYMENT_VERSION,
)

logger = logging.getLogger("ocnectl.capi.patches")

REQUIRED_CONTROL_PLANE_ANNOTATIONS = {
    constants.SKIP_KUBE_PROXY_ANNOTATION: "true",
    constants.SKIP_COREDNS_ANNOTATION: "true",
}

CONTROL_PLANE_HELP = (
    "To update KubeadmControlPlane {name} in {ns}, run:\n"
    "    kubectl patch -n {ns} kubeadmcontrolplane {name} --type=json -p='{patches}'\n"
)
MACHINE_DEPLOYMENT_HELP = (
    "To update MachineDeployment {name} in {ns}, run:\n"
    "    kubectl patch -n {ns} machinedeployment {name} --type=json -p='{patches}'\n"
)


def patch_control_plane(client: ResourceClient, control_plane: Dict[str, Any]) -> bool:
    """Make sure kube-proxy and CoreDNS are left to ocnectl on the control plane.

    Returns:
        bool: True if the control plane had to be updated
    """
    annotations = control_plane.get("metadata", {}).get("annotations") or {}
    missing = {k: v for k, v in REQUIRED_CONTROL_PLANE_ANNOTATIONS.items() if annotations.get(k) != v}
    if not missing:
        return False

    api_version, kind = gvk_of(control_plane)
    logger.debug("Adding annotations %s to %s %s", list(missing), kind, name_of(control_plane))
    client.patch(
        api_version, kind, namespace_of(control_plane), name_of(control_plane),
        {"metadata": {"annotations": missing}},
    )
    control_plane.setdefault("metadata", {}).setdefault("annotations", {}).update(missing)
    return True


def get_control_plane_patches(control_plane: Dict[str, Any], version: str, machine_template: str) -> JsonPatches:
    """Patches that move a KubeadmControlPlane to a new version and template."""
    patches = JsonPatches()
    patches.replace(CONTROL_PLANE_VERSION, version)
    patches.replace(CONTROL_PLANE_MACHINE_TEMPLATE_INFRASTRUCTURE_REF + ("name",), machine_template)

    _, found = nested_get(control_plane, CONTROL_PLANE_JOIN_PATCHES)
    if not found:
        patches.add(CONTROL_PLANE_JOIN_PATCHES, {"directory": constants.OCK_PATCH_DIRECTORY})

    skip_phases, found = nested_get(control_plane, CONTROL_PLANE_JOIN_SKIP_PHASES)
    if not found or skip_phases is None:
        patches.add(CONTROL_PLANE_JOIN_SKIP_PHASES, ["preflight"])
    elif "preflight" not in skip_phases:
        patches.add(CONTROL_PLANE_JOIN_SKIP_PHASES + ("-",), "preflight")

    return patches


def get_machine_deployment_patches(version: str, machine_template: str) -> JsonPatches:
    """Patches that move a MachineDeployment to a new version and template."""
    return (JsonPatches()
            .replace(MACHINE_DEPLOYMENT_VERSION, version)
            .replace(MACHINE_DEPLOYMENT_INFRASTRUCTURE_REF + ("name",), machine_template))


def control_plane_help(control_plane: Dict[str, Any], patches: JsonPatches) -> str:
    return CONTROL_PLANE_HELP.format(name=name_of(control_plane), ns=namespace_of(control_plane), patches=patches)


def machine_deployment_help(machine_deployment: Dict[str, Any], patches: JsonPatches) -> str:
    return MACHINE_DEPLOYMENT_HELP.format(
        name=name_of(machine_deployment), ns=namespace_of(machine_deployment), patches=patches
    )

