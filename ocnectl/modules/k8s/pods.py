"""Run commands on nodes through privileged pods.

Nodes are immutable hosts without a login shell, so host level work is done
by scheduling a privileged pod on the node with the host root filesystem
mounted at /hostroot and running a script inside it with ``chroot``.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from ... import constants
from ...errors import FatalError
from ...utils.shell import run_command
from .client import api_error
from .workloads import create_configmap, delete_configmap, delete_pod, wait_for_pod_deleted, wait_until_pod_ready

logger = logging.getLogger("ocnectl.k8s.pods")

EXEC_TIMEOUT = 1800


@dataclass
class ExecResult:
    stdout: str
    stderr: str
    returncode: int


def script_names(node_name: str, action: str):
    """Pod, ConfigMap and script key names for an action on a node."""
    return f"{action}-{node_name}-pod", f"{action}-{node_name}-cm", f"{action}-{node_name}.sh"


def admin_pod(name: str, namespace: str, node_name: Optional[str], configmap: Optional[str] = None,
              env: Optional[Dict[str, str]] = None, image: str = constants.DEFAULT_POD_IMAGE,
              script_mount_path: str = constants.SCRIPT_MOUNT_PATH) -> client.V1Pod:
    """A privileged pod with the host filesystem mounted.

    The pod is pinned to ``node_name`` when one is given and otherwise left to
    the scheduler.
    """
    volumes = [
        client.V1Volume(name="hostroot", host_path=client.V1HostPathVolumeSource(path="/")),
    ]
    mounts = [
        client.V1VolumeMount(name="hostroot", mount_path=constants.HOST_ROOT_MOUNT_PATH),
    ]
    if configmap:
        volumes.append(client.V1Volume(
            name="scripts",
            config_map=client.V1ConfigMapVolumeSource(name=configmap, default_mode=0o500),
        ))
        mounts.append(client.V1VolumeMount(name="scripts", mount_path=script_mount_path))

    container = client.V1Container(
        name="admin",
        image=image,
        command=["sleep", "10d"],
        security_context=client.V1SecurityContext(privileged=True),
        volume_mounts=mounts,
        env=[client.V1EnvVar(name=k, value=v) for k, v in sorted((env or {}).items())],
    )

    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        spec=client.V1PodSpec(
            node_name=node_name,
            host_pid=True,
            host_network=True,
            restart_policy="Never",
            containers=[container],
            volumes=volumes,
            tolerations=[client.V1Toleration(operator="Exists")],
        ),
    )


def create_pod(core: client.CoreV1Api, pod: client.V1Pod) -> None:
    try:
        core.create_namespaced_pod(pod.metadata.namespace, pod)
    except ApiException as e:
        raise api_error(e, f"creating pod {pod.metadata.namespace}/{pod.metadata.name}") from e


def exec_in_pod(core: client.CoreV1Api, namespace: str, name: str, command: List[str],
                container: str = "admin", timeout: int = EXEC_TIMEOUT) -> ExecResult:
    """Run a command in a pod and collect its output."""
    logger.debug("Running %s in %s/%s", command, namespace, name)
    resp = stream(
        core.connect_get_namespaced_pod_exec, name, namespace,
        container=container, command=command,
        stderr=True, stdin=False, stdout=True, tty=False,
        _preload_content=False,
    )
    out, err = [], []
    try:
        resp.run_forever(timeout=timeout)
        out.append(resp.read_stdout() or "")
        err.append(resp.read_stderr() or "")
        returncode = resp.returncode
    finally:
        resp.close()
    return ExecResult(stdout="".join(out), stderr="".join(err), returncode=returncode or 0)


def run_script(core: client.CoreV1Api, node_name: str, namespace: str, action: str, script: str,
               env: Optional[Dict[str, str]] = None, cleanup: bool = True) -> ExecResult:
    """Run a shell script on a node in a privileged pod.

    Args:
        core: Core API client
        node_name: Node to run on
        namespace: Namespace for the pod and ConfigMap
        action: Short name of the action, used to name the resources
        script: Script contents
        env: Environment for the script
        cleanup: Delete the pod and ConfigMap afterwards

    Raises:
        FatalError: If the script exits non-zero
    """
    pod_name, cm_name, script_key = script_names(node_name, action)

    delete_configmap(core, namespace, cm_name)
    create_configmap(core, namespace, cm_name, {script_key: script})

    delete_pod(core, namespace, pod_name)
    wait_for_pod_deleted(core, namespace, pod_name)
    create_pod(core, admin_pod(pod_name, namespace, node_name, configmap=cm_name, env=env))
    wait_until_pod_ready(core, namespace, pod_name)

    try:
        result = exec_in_pod(core, namespace, pod_name, ["/bin/bash", f"{constants.SCRIPT_MOUNT_PATH}/{script_key}"])
        if result.returncode != 0:
            raise FatalError(
                f"Script {action} failed on node {node_name} with exit code {result.returncode}: {result.stderr.strip()}"
            )
        return result
    finally:
        if cleanup:
            delete_pod(core, namespace, pod_name)
            delete_configmap(core, namespace, cm_name)


def copy_to_pod(kubeconfig: str, namespace: str, pod: str, src: str, dest: str, container: str = "admin") -> None:
    run_command([
        "kubectl", "--kubeconfig", kubeconfig, "cp", "-c", container,
        src, f"{namespace}/{pod}:{dest}",
    ])


def copy_from_pod(kubeconfig: str, namespace: str, pod: str, src: str, dest: str, container: str = "admin") -> None:
    run_command([
        "kubectl", "--kubeconfig", kubeconfig, "cp", "-c", container,
        f"{namespace}/{pod}:{src}", dest,
    ])
