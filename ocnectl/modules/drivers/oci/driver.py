"""Clusters on Oracle Cloud Infrastructure managed with Cluster API."""
import base64
import logging
import os
from typing import Dict, List, Tuple

from kubernetes import client

from .... import constants
from ....config import ClusterConfig
from ....errors import FatalError, NotFoundError, OcneError, UnsupportedError, ValidationError, WaitTimeoutError
from ....utils import Linear, linear_retry_timeout, retry
from ....utils.shell import run_command
from ....utils.versions import compare_major_minor
from ...builder import create_image, default_image_path, ensure_image_details, upload_image_async
from ...ephemeral import ensure_cluster, stop_ephemeral_cluster
from ...helm import install_applications
from ...k8s.client import get_kube_client, get_kubeconfig_path
from ...k8s.nodes import get_node_list, wait_until_get_nodes_succeeds
from ...k8s.resources import ResourceClient, name_of, namespace_of, nested_string, unmarshall_yaml
from ...k8s.workloads import create_namespace_if_not_exists, find_secrets_by_label, wait_for_deployment
from ...lifecycle import ClusterState
from ...oci.compartment import get_compartment_id
from ...oci.images import get_image
from ...oci.shapes import architecture_from_shape, is_arm_shape
from ...oci.workrequests import wait_for_work_requests
from ...waiter import Waiter, wait_for
from ..base import ClusterDriver
from . import stage as staging
from .apps import capi_applications, create_oci_ccm_secrets, get_oci_ccm_options, workload_applications
from .template import find_resource, get_cluster_object, get_oci_template, validate_cluster_resources

logger = logging.getLogger("ocnectl.drivers.oci")

CONTROL_PLANE_ENDPOINT_HOST = ("spec", "controlPlaneEndpoint", "host")
MOVE_NOT_READY = "cannot start the move operation"
CAPI_CONTROLLER_LABELS = {
    constants.CORE_CAPI_NAMESPACE: "Core Cluster API Controllers",
    constants.BOOTSTRAP_CAPI_NAMESPACE: "Kubeadm Bootstrap Cluster API Controllers",
    constants.CONTROL_PLANE_CAPI_NAMESPACE: "Kubeadm Control Plane Cluster API Controllers",
    constants.OCI_CAPI_NAMESPACE: "OCI Cluster API Controllers",
}


def install_capi(cluster_config: ClusterConfig, kubeconfig: str) -> None:
    """Install the Cluster API controllers and wait until they are available."""
    install_applications(capi_applications(cluster_config), kubeconfig)

    api_client, _ = get_kube_client(kubeconfig)
    apps = client.AppsV1Api(api_client)
    waiters = [
        Waiter(f"Waiting for {CAPI_CONTROLLER_LABELS[ns]}", wait_for_deployment, apps, ns, name)
        for ns, name in constants.CAPI_DEPLOYMENTS
    ]
    if wait_for(waiters):
        raise WaitTimeoutError("Cluster API controllers are not available")


def read_cluster_definition(cluster_config: ClusterConfig) -> str:
    """The Cluster API resources given in a cluster configuration, or "" if there are none."""
    if cluster_config.cluster_definition and cluster_config.cluster_definition_inline:
        raise ValidationError("cluster configuration has file-based and inline resources")
    if cluster_config.cluster_definition_inline:
        return cluster_config.cluster_definition_inline
    if not cluster_config.cluster_definition:
        return ""

    path = os.path.expanduser(cluster_config.cluster_definition)
    if not os.path.isabs(path):
        path = os.path.join(cluster_config.working_directory, path)
    try:
        with open(path) as f:
            return f.read()
    except OSError as e:
        raise ValidationError(f"Could not read cluster definition {path}: {e}") from e


class OciDriver(ClusterDriver):
    """Creates a cluster by applying Cluster API resources to a management cluster.

    The management cluster is the one given in the provider configuration
    or, when there is none, an ephemeral libvirt cluster. Self-managed
    clusters take their Cluster API resources over after they start.
    """

    def __init__(self, cluster_config: ClusterConfig):
        super().__init__(cluster_config)
        oci = cluster_config.providers.oci
        if not oci.compartment:
            raise ValidationError("the oci provider requires a compartment in the provider configuration")

        if cluster_config.worker_nodes == 0:
            cluster_config.worker_nodes = 1
        if cluster_config.control_plane_nodes == 0:
            cluster_config.control_plane_nodes = 1
        if compare_major_minor(cluster_config.kube_version, "1.26") == 0 \
                and is_arm_shape(oci.control_plane_shape.shape):
            logger.info("Kubernetes 1.26 control plane nodes do not run on Arm shapes, using %s",
                        constants.OCI_DEFAULT_SHAPE)
            oci.control_plane_shape.shape = constants.OCI_DEFAULT_SHAPE

        self.name = cluster_config.name
        self.cluster_resources = read_cluster_definition(cluster_config)
        self.from_template = not self.cluster_resources
        self.kubeconfig_path = get_kubeconfig_path(self.name)
        self.deleted = False

        self.compartment_id = get_compartment_id(oci.compartment, oci.profile)
        self.bootstrap_kubeconfig, self.ephemeral = ensure_cluster(cluster_config, oci.kubeconfig)
        install_capi(cluster_config, self.bootstrap_kubeconfig)

    def _resources(self) -> str:
        if self.from_template and not self.cluster_resources:
            self.cluster_resources = get_oci_template(self.cluster_config)
        return self.cluster_resources

    def _cluster(self) -> Tuple[str, str]:
        cluster = get_cluster_object(self._resources())
        return namespace_of(cluster) or constants.OCI_DEFAULT_NAMESPACE, name_of(cluster)

    def ensure_image(self, name: str, arch: str, version: str, force: bool) -> Tuple[str, str]:
        """Build and start importing an image unless a matching one exists.

        Returns:
            Tuple of the image OCID and its import work request. The work
            request is empty if a matching image already existed.
        """
        oci = self.cluster_config.providers.oci
        if not force:
            image, found = get_image(name, version, arch, self.compartment_id, oci.profile)
            if found:
                return image.id, ""

        image_config = self.cluster_config.copy_with(kube_version=version)
        image_path = default_image_path(constants.PROVIDER_OCI, version, arch)
        if force or not image_path.exists():
            image_path = create_image(self.bootstrap_kubeconfig, image_config, constants.PROVIDER_OCI, arch)
        else:
            logger.info(f"📦 Using cached image {image_path}")
        return upload_image_async(image_config, image_path, version, arch,
                                  image_name=name, compartment_id=self.compartment_id)

    def ensure_images(self) -> None:
        """Make sure the control plane and worker shapes have an image for the cluster version."""
        oci = self.cluster_config.providers.oci
        cp_arch = architecture_from_shape(oci.control_plane_shape.shape)
        worker_arch = architecture_from_shape(oci.worker_shape.shape)
        if cp_arch == worker_arch:
            plan = [(cp_arch, "Importing image")]
        else:
            plan = [(cp_arch, "Importing control plane image"), (worker_arch, "Importing worker image")]

        requests: Dict[str, str] = {}
        new_images: List[Tuple[str, str]] = []
        for arch, label in plan:
            image_id, work_request_id = self.ensure_image(
                constants.OCI_IMAGE_NAME, arch, self.cluster_config.kube_version, False,
            )
            if work_request_id:
                requests[work_request_id] = label
                new_images.append((image_id, arch))

        wait_for_work_requests(requests, oci.profile)
        for image_id, arch in new_images:
            ensure_image_details(self.compartment_id, oci.profile, image_id, arch)

    def wait_for_kubeconfig(self, namespace: str) -> str:
        """Wait for Cluster API to publish the admin kubeconfig of the new cluster."""
        _, core = get_kube_client(self.bootstrap_kubeconfig)
        selector = f"{constants.CLUSTER_NAME_LABEL}={self.name}"

        def attempt():
            try:
                secrets = find_secrets_by_label(core, selector, namespace)
            except OcneError as e:
                return None, False, e
            for secret in secrets:
                if "kubeconfig" not in secret.metadata.name:
                    continue
                value = (secret.data or {}).get("value")
                if value:
                    return base64.b64decode(value).decode(), False, None
            return None, False, NotFoundError(f"No kubeconfig secret for cluster {namespace}/{self.name}")

        w = Waiter("Waiting for kubeconfig", linear_retry_timeout, attempt, constants.KUBECONFIG_SECRET_TIMEOUT)
        if wait_for([w]):
            raise WaitTimeoutError(f"Timed out waiting for the kubeconfig of cluster {self.name}")
        return w.result

    def write_kubeconfig(self, kubeconfig: str) -> None:
        os.makedirs(os.path.dirname(self.kubeconfig_path), exist_ok=True)
        fd = os.open(self.kubeconfig_path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o700)
        with os.fdopen(fd, "w") as f:
            f.write(kubeconfig)

    def _is_running(self, namespace: str) -> bool:
        candidates = [self.bootstrap_kubeconfig]
        if self.cluster_config.providers.oci.self_managed and os.path.exists(self.kubeconfig_path):
            candidates.insert(0, self.kubeconfig_path)

        for kubeconfig in candidates:
            try:
                ResourceClient.from_kubeconfig(kubeconfig).get(constants.CAPI_API_VERSION, "Cluster",
                                                                namespace, self.name)
            except OcneError as e:
                logger.debug("Cluster %s/%s not found with %s: %s", namespace, self.name, kubeconfig, e)
                continue
            if not os.path.exists(self.kubeconfig_path):
                return False
            _, core = get_kube_client(self.kubeconfig_path)
            get_node_list(core)
            return True
        return False

    def start(self) -> Tuple[bool, bool]:
        if self.from_template:
            self.ensure_images()
            self.cluster_resources = get_oci_template(self.cluster_config)
        resources = self.cluster_resources
        validate_cluster_resources(resources)
        cluster = get_cluster_object(resources)
        namespace = namespace_of(cluster) or constants.OCI_DEFAULT_NAMESPACE

        if self._is_running(namespace):
            logger.info(f"✅ Cluster {self.name} is running already")
            return True, False

        logger.info(f"🚀 Creating new Kubernetes cluster with version {self.cluster_config.kube_version} "
                    f"named {self.name}")
        self.report_state(ClusterState.BOOTSTRAPPING)

        _, core = get_kube_client(self.bootstrap_kubeconfig)
        create_namespace_if_not_exists(core, namespace)

        logger.info("📄 Applying Cluster API resources")
        objs = unmarshall_yaml(resources)
        for obj in objs:
            obj.setdefault("metadata", {}).setdefault("namespace", namespace)
        ResourceClient.from_kubeconfig(self.bootstrap_kubeconfig).apply_resources(objs)

        self.write_kubeconfig(self.wait_for_kubeconfig(namespace))

        _, workload_core = get_kube_client(self.kubeconfig_path)
        wait_until_get_nodes_succeeds(workload_core)
        self.report_state(ClusterState.CONTROL_PLANE_READY)
        if self.cluster_config.worker_nodes > 0:
            self.report_state(ClusterState.WORKERS_JOINING)

        oci_cluster = find_resource(resources, constants.OCI_CLUSTER_KIND, name_of(cluster))
        oci_cluster.setdefault("metadata", {}).setdefault("namespace", namespace)
        get_oci_ccm_options(ResourceClient.from_kubeconfig(self.bootstrap_kubeconfig),
                            self.cluster_config, oci_cluster)
        create_namespace_if_not_exists(workload_core, constants.OCI_CCM_NAMESPACE)
        create_oci_ccm_secrets(workload_core, self.cluster_config)
        install_applications(workload_applications(), self.kubeconfig_path)
        return False, False

    def move(self, from_kubeconfig: str, to_kubeconfig: str, namespace: str) -> None:
        """Move Cluster API resources from one management cluster to another."""
        cmd = ["clusterctl", "move", "--kubeconfig", from_kubeconfig,
               "--to-kubeconfig", to_kubeconfig, "--namespace", namespace]

        def attempt():
            result = run_command(cmd, check=False, capture_output=True)
            if result.returncode == 0:
                return None, False, None
            output = f"{result.stdout}{result.stderr}"
            err = FatalError(output.strip())
            # Controllers refuse to move until the cluster has settled
            return None, MOVE_NOT_READY not in output, err

        def do_move():
            retry(attempt, Linear(interval=constants.CAPI_MOVE_RETRY_SECONDS,
                                  timeout=constants.CLUSTER_DELETE_TIMEOUT))

        if wait_for([Waiter("Migrating Cluster API resources", do_move)]):
            raise FatalError("Could not move Cluster API resources")

    def post_start(self) -> None:
        if not self.cluster_config.providers.oci.self_managed:
            return
        namespace, _ = self._cluster()
        install_capi(self.cluster_config, self.kubeconfig_path)
        _, core = get_kube_client(self.kubeconfig_path)
        create_namespace_if_not_exists(core, namespace)
        self.move(self.bootstrap_kubeconfig, self.kubeconfig_path, namespace)

    def join(self, kubeconfig: str, control_plane_nodes: int, worker_nodes: int) -> None:
        raise UnsupportedError(
            "Joining new nodes to this cluster is done by editing the KubeadmControlPlane "
            "and MachineDeployment resources in the management cluster"
        )

    def stop(self) -> None:
        raise UnsupportedError("Clusters on the oci provider can not be stopped")

    def _wait_for_deletion(self, resources: ResourceClient, namespace: str) -> None:
        def attempt():
            try:
                resources.get(constants.CAPI_API_VERSION, "Cluster", namespace, self.name)
            except NotFoundError:
                return None, False, None
            except OcneError as e:
                return None, False, e
            return None, False, OcneError(f"Cluster {namespace}/{self.name} still exists")

        w = Waiter("Waiting for deletion", linear_retry_timeout, attempt, constants.CLUSTER_DELETE_TIMEOUT)
        if wait_for([w]):
            raise WaitTimeoutError(f"Timed out waiting for cluster {namespace}/{self.name} to be deleted")

    def delete(self) -> None:
        self.deleted = True
        namespace, name = self._cluster()

        if self.cluster_config.providers.oci.self_managed and os.path.exists(self.kubeconfig_path):
            try:
                ResourceClient.from_kubeconfig(self.kubeconfig_path).get(
                    constants.CAPI_API_VERSION, "Cluster", namespace, name)
            except OcneError as e:
                logger.debug("Cluster resources are not in the workload cluster: %s", e)
            else:
                logger.info("🔁 Moving Cluster API resources back to the management cluster")
                self.move(self.kubeconfig_path, self.bootstrap_kubeconfig, namespace)

        resources = ResourceClient.from_kubeconfig(self.bootstrap_kubeconfig)
        logger.info(f"🗑️ Deleting Cluster {namespace}/{name}")
        try:
            resources.delete(constants.CAPI_API_VERSION, "Cluster", namespace, name)
        except NotFoundError:
            logger.debug("Cluster %s/%s was already deleted", namespace, name)
        else:
            self._wait_for_deletion(resources, namespace)

        try:
            os.remove(self.kubeconfig_path)
        except FileNotFoundError:
            logger.debug("%s was already deleted", self.kubeconfig_path)

    def close(self) -> None:
        oci = self.cluster_config.providers.oci
        if self.deleted or not self.ephemeral or not oci.self_managed:
            return
        stop_ephemeral_cluster(self.cluster_config)

    def stage(self, version: str) -> Tuple[str, str, bool]:
        return staging.stage(self, version)

    def get_kubeconfig_path(self) -> str:
        return self.kubeconfig_path

    def get_kube_api_server_address(self) -> str:
        try:
            namespace, name = self._cluster()
            oci_cluster = ResourceClient.from_kubeconfig(self.bootstrap_kubeconfig).get(
                constants.OCI_CAPI_API_VERSION, constants.OCI_CLUSTER_KIND, namespace, name)
        except OcneError as e:
            logger.error(f"❌ Could not get the OCICluster for {self.name}: {e}")
            return ""
        host, _ = nested_string(oci_cluster, CONTROL_PLANE_ENDPOINT_HOST)
        return host

    def post_install_help_stanza(self) -> str:
        return f"To access the cluster:\n    use {self.kubeconfig_path}"
