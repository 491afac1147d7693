"""Prepare a cluster installed by an older release for node updates.

Clusters at or below PRE_UPDATE_KUBELET_THRESHOLD reference their system
images by version tag. Updating a node swaps the ostree image underneath
those tags, so every node first gets a ``current`` tag for each system image
and kube-proxy and CoreDNS are moved over to reference it.
"""
import logging
from typing import List, Optional, Tuple

import yaml
from kubernetes import client

from ... import constants
from ...errors import FatalError, NotFoundError, OcneError
from ...utils.versions import compare_major_minor
from ..containers import split_image
from ..helm import Application, does_release_exist, install_application
from ..k8s.nodes import kubelet_version
from ..k8s.pods import run_script
from ..k8s.workloads import get_configmap, get_daemonset, get_deployment, update_deployment

logger = logging.getLogger("ocnectl.update.preupdate")

TAG_ACTION = "tag-images"


def process_image(repository: str, tag: str, image: client.V1ContainerImage) -> Tuple[str, bool, bool]:
    """Look through the names of one image on a node.

    Returns:
        Tuple of the name to tag from, whether the image is already tagged
        ``current`` and whether the name matched ``tag`` exactly
    """
    have_current = False
    exact = False
    ret = ""
    wanted = f"{repository}:{tag}"
    prefix = f"{repository}:"
    current = f"{repository}:{constants.CURRENT_TAG}"

    for name in image.names or []:
        if name == current:
            have_current = True
            continue
        if name == wanted:
            exact = True
            ret = name
            continue
        if not exact and name.startswith(prefix):
            ret = name
    return ret, have_current, exact


def find_taggable_image(repository: str, tag: str, images: List[client.V1ContainerImage]) -> str:
    """The image name on a node that should be tagged ``current``.

    Nothing is returned when some image already carries the ``current`` tag.
    A name with the expected tag wins over any other name in the repository.
    """
    ret = ""
    found_exact = False
    for image in images:
        name, have_current, exact = process_image(repository, tag, image)
        if have_current:
            logger.debug("Have current image for %s", repository)
            return ""
        if exact:
            ret = name
            found_exact = True
        elif not found_exact and name:
            ret = name
    return ret


def needs_pre_update(nodes: List[client.V1Node]) -> bool:
    for node in nodes:
        if compare_major_minor(kubelet_version(node), constants.PRE_UPDATE_KUBELET_THRESHOLD) <= 0:
            return True
    return False


def _workload_tag(get, api, namespace: str, name: str) -> Optional[str]:
    """The image tag of the first container of a DaemonSet or Deployment."""
    try:
        workload = get(api, namespace, name)
    except OcneError as e:
        logger.debug("Not tagging image for %s/%s: %s", namespace, name, e)
        return None
    containers = workload.spec.template.spec.containers
    if not containers:
        return None
    _, tag = split_image(containers[0].image)
    return tag


def system_image_tags(apps: client.AppsV1Api) -> List[Tuple[str, str]]:
    """The (repository, tag) of each system image present on the cluster."""
    workloads = [
        (constants.KUBE_PROXY_IMAGE, get_daemonset, constants.KUBE_PROXY_NAMESPACE, constants.KUBE_PROXY_DAEMONSET),
        (constants.COREDNS_IMAGE, get_deployment, constants.COREDNS_NAMESPACE, constants.COREDNS_DEPLOYMENT),
        (constants.FLANNEL_IMAGE, get_daemonset, constants.FLANNEL_NAMESPACE, constants.FLANNEL_DAEMONSET),
        (constants.UI_IMAGE, get_deployment, constants.UI_NAMESPACE, constants.UI_DEPLOYMENT),
    ]
    ret = []
    for repository, get, namespace, name in workloads:
        tag = _workload_tag(get, apps, namespace, name)
        if tag:
            ret.append((repository, tag))
    return ret


def tag_script(node: client.V1Node, image_tags: List[Tuple[str, str]]) -> str:
    """A script that adds the ``current`` tag to the system images of a node.

    Returns an empty string when there is nothing to tag.
    """
    images = node.status.images or []
    lines = []
    for repository, tag in image_tags:
        name = find_taggable_image(repository, tag, images)
        if name:
            lines.append(f"chroot {constants.HOST_ROOT_MOUNT_PATH} podman tag {name} {repository}:{constants.CURRENT_TAG}")
    if not lines:
        return ""
    return "#! /bin/bash\nset -e\n" + "\n".join(lines) + "\n"


def tag_images(core: client.CoreV1Api, apps: client.AppsV1Api, nodes: List[client.V1Node], namespace: str) -> None:
    """Tag the system images on every node.

    Raises:
        FatalError: If tagging was attempted on some node and worked on none
    """
    image_tags = system_image_tags(apps)
    succeeded = 0
    failed = 0
    for node in nodes:
        name = node.metadata.name
        script = tag_script(node, image_tags)
        if not script:
            logger.debug("No images to tag on %s", name)
            continue
        logger.info(f"🏷️  Tagging images on {name}")
        try:
            run_script(core, name, namespace, TAG_ACTION, script)
            succeeded += 1
        except OcneError as e:
            logger.warning(f"⚠️  Could not tag images on {name}: {e}")
            failed += 1

    if succeeded == 0 and failed > 0:
        raise FatalError("Could not tag images on any nodes")


def update_kube_proxy(core: client.CoreV1Api, kubeconfig: str) -> None:
    """Put kube-proxy under helm, keeping the configuration kubeadm gave it."""
    if does_release_exist(constants.KUBE_PROXY_RELEASE, constants.KUBE_PROXY_NAMESPACE, kubeconfig):
        logger.debug("kube-proxy is already managed by helm")
        return

    cm = get_configmap(core, constants.KUBE_PROXY_NAMESPACE, constants.KUBE_PROXY_CONFIGMAP)
    data = cm.data or {}
    values = {}
    for key, value_name in ((constants.KUBE_PROXY_CONFIG_KEY, "config"),
                            (constants.KUBE_PROXY_KUBECONFIG_KEY, "kubeconfig")):
        if key not in data:
            raise NotFoundError(f"ConfigMap {constants.KUBE_PROXY_NAMESPACE}/{constants.KUBE_PROXY_CONFIGMAP} "
                                f"does not contain {key}")
        values[value_name] = yaml.safe_load(data[key])

    install_application(Application(
        name=constants.KUBE_PROXY_CHART,
        namespace=constants.KUBE_PROXY_NAMESPACE,
        release=constants.KUBE_PROXY_RELEASE,
        config=values,
    ), kubeconfig)


def update_coredns(apps: client.AppsV1Api) -> None:
    """Point CoreDNS at the ``current`` tag of its image."""
    deployment = get_deployment(apps, constants.COREDNS_NAMESPACE, constants.COREDNS_DEPLOYMENT)
    image = f"{constants.COREDNS_IMAGE}:{constants.CURRENT_TAG}"
    changed = False
    for container in deployment.spec.template.spec.containers:
        if container.name == "coredns" and container.image != image:
            container.image = image
            changed = True
    if changed:
        logger.info("🔄 Updating CoreDNS to use the current image")
        update_deployment(apps, deployment)


def pre_update(api_client: client.ApiClient, kubeconfig: str, nodes: List[client.V1Node],
               namespace: str = constants.OCNE_SYSTEM_NAMESPACE) -> None:
    """Run the pre-update steps if some node needs them."""
    if not needs_pre_update(nodes):
        logger.debug("No nodes at or below Kubernetes %s, skipping pre-update",
                     constants.PRE_UPDATE_KUBELET_THRESHOLD)
        return

    core = client.CoreV1Api(api_client)
    apps = client.AppsV1Api(api_client)
    tag_images(core, apps, nodes, namespace)
    update_kube_proxy(core, kubeconfig)
    update_coredns(apps)
    logger.info("✅ Pre-update completed")
