from types import SimpleNamespace

import pytest
import yaml
from kubernetes import client

from ocnectl import constants
from ocnectl.errors import DrainError, FatalError, NotFoundError, PreconditionError, ValidationError
from ocnectl.modules.k8s.pods import ExecResult
from ocnectl.modules.update import drain, preupdate, update
from ocnectl.modules.update.preupdate import find_taggable_image, needs_pre_update, tag_images, tag_script
from ocnectl.modules.update.update import (
    UpdateOptions,
    control_plane_nodes_acceptable,
    is_update_allowed,
    parse_update_tag,
    patch_kubeadm_coredns,
)

from conftest import make_node

KUBE_PROXY = constants.KUBE_PROXY_IMAGE


def images(*names):
    return [client.V1ContainerImage(names=list(group)) for group in names]


def test_find_taggable_image_prefers_exact_tag():
    imgs = images([f"{KUBE_PROXY}:v1.29.2"], [f"{KUBE_PROXY}:v1.29.3"], [f"{KUBE_PROXY}:v1.29.1"])
    assert find_taggable_image(KUBE_PROXY, "v1.29.3", imgs) == f"{KUBE_PROXY}:v1.29.3"


def test_find_taggable_image_falls_back_to_repository():
    imgs = images(["docker.io/library/busybox:latest"], [f"{KUBE_PROXY}:v1.29.2"])
    assert find_taggable_image(KUBE_PROXY, "v1.29.3", imgs) == f"{KUBE_PROXY}:v1.29.2"


def test_find_taggable_image_already_current():
    imgs = images([f"{KUBE_PROXY}:v1.29.3", f"{KUBE_PROXY}:current"])
    assert find_taggable_image(KUBE_PROXY, "v1.29.3", imgs) == ""


def test_find_taggable_image_missing_repository():
    assert find_taggable_image(KUBE_PROXY, "v1.29.3", images(["docker.io/library/busybox:latest"])) == ""


def test_tag_script():
    node = make_node("n1", images=[
        [f"{KUBE_PROXY}:v1.29.3"],
        [f"{constants.COREDNS_IMAGE}:v1.11.1", f"{constants.COREDNS_IMAGE}:current"],
    ])
    script = tag_script(node, [(KUBE_PROXY, "v1.29.3"), (constants.COREDNS_IMAGE, "v1.11.1")])
    assert f"chroot /hostroot podman tag {KUBE_PROXY}:v1.29.3 {KUBE_PROXY}:current" in script
    assert constants.COREDNS_IMAGE not in script


def test_tag_script_nothing_to_tag():
    assert tag_script(make_node("n1"), [(KUBE_PROXY, "v1.29.3")]) == ""


def test_needs_pre_update():
    assert needs_pre_update([make_node("n1", "v1.31.0"), make_node("n2", "v1.30.3")])
    assert not needs_pre_update([make_node("n1", "v1.31.0")])


def test_tag_images_partial_failure_is_tolerated(monkeypatch):
    nodes = [make_node(n, images=[[f"{KUBE_PROXY}:v1.29.3"]]) for n in ("n1", "n2")]
    monkeypatch.setattr(preupdate, "system_image_tags", lambda apps: [(KUBE_PROXY, "v1.29.3")])
    ran = []

    def run_script(core, node_name, namespace, action, script, env=None, cleanup=True):
        ran.append(node_name)
        if node_name == "n1":
            raise FatalError("pod failed")
        return ExecResult("", "", 0)

    monkeypatch.setattr(preupdate, "run_script", run_script)
    tag_images(None, None, nodes, "ocne-system")
    assert ran == ["n1", "n2"]


def test_tag_images_total_failure(monkeypatch):
    nodes = [make_node("n1", images=[[f"{KUBE_PROXY}:v1.29.3"]])]
    monkeypatch.setattr(preupdate, "system_image_tags", lambda apps: [(KUBE_PROXY, "v1.29.3")])

    def run_script(*args, **kwargs):
        raise FatalError("pod failed")

    monkeypatch.setattr(preupdate, "run_script", run_script)
    with pytest.raises(FatalError, match="Could not tag images on any nodes"):
        tag_images(None, None, nodes, "ocne-system")


@pytest.mark.parametrize("text,tag", [
    ("registry: container-registry.oracle.com/olcne/ock-ostree\ntag: 1.31\n", "1.31"),
    ("tag: '1.31'\n", "1.31"),
    ('tag: "1.30"\n', "1.30"),
])
def test_parse_update_tag(text, tag):
    assert parse_update_tag(text) == tag


def test_parse_update_tag_missing():
    with pytest.raises(ValidationError, match="not set"):
        parse_update_tag("registry: example.com/ock\ntag: \n")


def test_worker_blocked_by_control_plane_with_update():
    nodes = [make_node("w1", "v1.29.4"), make_node("cp1", "v1.30.0", control_plane=True, update_available=True)]
    assert not control_plane_nodes_acceptable(nodes, "w1", "1.30")


def test_worker_blocked_by_older_control_plane():
    nodes = [make_node("w1", "v1.30.3"), make_node("cp1", "v1.30.3", control_plane=True)]
    assert not control_plane_nodes_acceptable(nodes, "w1", "1.31")


def test_worker_allowed_at_control_plane_version():
    nodes = [make_node("w1", "v1.30.3"), make_node("cp1", "v1.31.0", control_plane=True)]
    assert control_plane_nodes_acceptable(nodes, "w1", "1.31")


def test_worker_allowed_with_non_version_target():
    nodes = [make_node("w1"), make_node("cp1", control_plane=True, update_available=True)]
    assert control_plane_nodes_acceptable(nodes, "w1", "latest")


def test_control_plane_always_allowed(monkeypatch):
    monkeypatch.setattr(update, "update_target", lambda *args: pytest.fail("target should not be read"))
    nodes = [make_node("cp1", control_plane=True), make_node("cp2", control_plane=True, update_available=True)]
    assert is_update_allowed(None, nodes, "cp1", "ocne-system")


def test_unknown_node():
    with pytest.raises(NotFoundError):
        is_update_allowed(None, [make_node("n1")], "n2", "ocne-system")


def test_update_worker_before_control_plane(monkeypatch):
    nodes = [make_node("w1", "v1.29.4", update_available=True),
             make_node("cp1", "v1.30.0", control_plane=True, update_available=True)]
    monkeypatch.setattr(update, "get_kube_client", lambda path: (None, None))
    monkeypatch.setattr(update, "wait_until_get_nodes_succeeds", lambda core: nodes)
    monkeypatch.setattr(update, "create_namespace_if_not_exists", lambda core, ns: None)
    monkeypatch.setattr(update, "update_target", lambda core, node, ns: "1.30")

    with pytest.raises(PreconditionError, match="w1"):
        update.update_node(UpdateOptions(node_name="w1", kubeconfig="/tmp/kubeconfig", pre_update_mode="skip"))


def test_update_requires_available_update(monkeypatch):
    nodes = [make_node("cp1", control_plane=True)]
    monkeypatch.setattr(update, "get_kube_client", lambda path: (None, None))
    monkeypatch.setattr(update, "wait_until_get_nodes_succeeds", lambda core: nodes)
    monkeypatch.setattr(update, "create_namespace_if_not_exists", lambda core, ns: None)

    with pytest.raises(PreconditionError, match="no updates available"):
        update.update_node(UpdateOptions(node_name="cp1", kubeconfig="/tmp/kubeconfig", pre_update_mode="skip"))


def test_update_rejects_unknown_pre_update_mode():
    with pytest.raises(ValidationError):
        update.update_node(UpdateOptions(node_name="n1", kubeconfig="/tmp/kubeconfig", pre_update_mode="always"))


def test_update_rejects_bad_timeout_before_touching_cluster(monkeypatch):
    def connect(path):
        raise AssertionError("connected to the cluster")

    monkeypatch.setattr(update, "get_kube_client", connect)
    monkeypatch.setattr(update, "pre_update", connect)
    with pytest.raises(ValidationError, match="timeout"):
        update.update_node(UpdateOptions(node_name="n1", kubeconfig="/tmp/kubeconfig", timeout="ten minutes"))


class FakeCore:
    def __init__(self, cluster_configuration):
        self.cm = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=constants.KUBEADM_CONFIGMAP, namespace="kube-system"),
            data={constants.KUBEADM_CLUSTER_CONFIGURATION_KEY: yaml.safe_dump(cluster_configuration)},
        )
        self.replaced = []

    def read_namespaced_config_map(self, name, namespace):
        return self.cm

    def replace_namespaced_config_map(self, name, namespace, body):
        self.replaced.append(body)


def test_patch_kubeadm_coredns_when_mismatched():
    core = FakeCore({"kubernetesVersion": "v1.29.3", "dns": {"imageTag": "v1.10.1"}})
    assert patch_kubeadm_coredns(core, "1.30")
    data = yaml.safe_load(core.replaced[0].data[constants.KUBEADM_CLUSTER_CONFIGURATION_KEY])
    assert data["dns"]["imageTag"] == "v1.11.1"


def test_patch_kubeadm_coredns_when_matching():
    core = FakeCore({"dns": {"imageTag": "v1.11.1"}})
    assert not patch_kubeadm_coredns(core, "1.30")
    assert core.replaced == []


@pytest.mark.parametrize("timeout", ["30m", "1h30m", "90s", "0", "1.5h"])
def test_valid_drain_timeouts(timeout):
    assert drain.validate_timeout(timeout) == timeout


@pytest.mark.parametrize("timeout", ["30", "thirty minutes", "5d", ""])
def test_invalid_drain_timeouts(timeout):
    with pytest.raises(ValidationError, match="Invalid timeout format"):
        drain.validate_timeout(timeout)


def test_drain_command():
    cmd = drain.drain_command("n1", "/tmp/kubeconfig", "10m", delete_emptydir_data=True, disable_eviction=True)
    assert cmd == ["kubectl", "drain", "--kubeconfig", "/tmp/kubeconfig", "--delete-emptydir-data",
                   "--disable-eviction", "--force", "--ignore-daemonsets", "--timeout=10m", "n1"]


def test_drain_failure_names_node(monkeypatch):
    monkeypatch.setattr(drain, "run_command", lambda cmd, **kwargs: SimpleNamespace(
        returncode=1, stdout="", stderr="cannot evict pod"))
    with pytest.raises(DrainError, match="n1") as e:
        drain.cordon_and_drain("n1", "/tmp/kubeconfig")
    assert e.value.node_name == "n1"
