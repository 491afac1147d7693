import copy
import datetime

import pytest
import yaml

from ocnectl import constants
from ocnectl.errors import NotFoundError, ValidationError
from ocnectl.modules.capi.graph import GraphNode, get_cluster_graph
from ocnectl.modules.capi.patches import get_control_plane_patches
from ocnectl.modules.drivers.oci import stage
from ocnectl.modules.drivers.oci.stage import OciImageData, create_machine_templates, do_update, update_help

from conftest import FakeResources, make_image
from test_graph import INFRA_API, cluster_objects

BOOT_IMAGE = "container-registry.oracle.com/olcne/ock:1.30"
OLDER = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
NEWER = datetime.datetime(2024, 12, 1, tzinfo=datetime.timezone.utc)


@pytest.fixture(autouse=True)
def no_overrides(monkeypatch):
    monkeypatch.delenv("OCNE_OCI_STAGE_FORCE_UPLOAD", raising=False)
    monkeypatch.delenv("OCNE_OCI_STAGE_FORCE_TEMPLATES", raising=False)


def patch_lookup(monkeypatch, existing=None, container_created=NEWER):
    monkeypatch.setattr(stage, "get_image", lambda *args: (existing, existing is not None))

    def created(image, arch):
        if isinstance(container_created, Exception):
            raise container_created
        return container_created

    monkeypatch.setattr(stage, "image_created", created)


def test_do_update_forced(monkeypatch):
    monkeypatch.setenv("OCNE_OCI_STAGE_FORCE_UPLOAD", "1")
    assert do_update(make_image(), "amd64", "1.30", BOOT_IMAGE, "DEFAULT")


def test_do_update_requires_version_tag(monkeypatch):
    patch_lookup(monkeypatch)
    img = make_image()
    img.freeform_tags = {}
    with pytest.raises(ValidationError):
        do_update(img, "amd64", "1.30", BOOT_IMAGE, "DEFAULT")


def test_do_update_same_version_newer_container(monkeypatch):
    img = make_image(created=OLDER)
    patch_lookup(monkeypatch, existing=img, container_created=NEWER)
    assert do_update(img, "amd64", "1.30", BOOT_IMAGE, "DEFAULT")


def test_do_update_same_version_older_container(monkeypatch):
    img = make_image(created=NEWER)
    patch_lookup(monkeypatch, existing=img, container_created=OLDER)
    assert not do_update(img, "amd64", "1.30", BOOT_IMAGE, "DEFAULT")


def test_do_update_same_version_not_newest(monkeypatch):
    img = make_image(created=OLDER)
    patch_lookup(monkeypatch, existing=make_image(image_id="ocid1.image.oc1..newer"))
    assert not do_update(img, "amd64", "1.30", BOOT_IMAGE, "DEFAULT")


def test_do_update_same_version_unknown_container(monkeypatch):
    img = make_image(created=OLDER)
    patch_lookup(monkeypatch, existing=img, container_created=ValidationError("no such image"))
    assert not do_update(img, "amd64", "1.30", BOOT_IMAGE, "DEFAULT")


def test_do_update_new_version_without_image(monkeypatch):
    patch_lookup(monkeypatch, existing=None)
    assert do_update(make_image(version="1.30"), "amd64", "1.31", BOOT_IMAGE, "DEFAULT")


def test_do_update_new_version_with_image(monkeypatch):
    patch_lookup(monkeypatch, existing=make_image(image_id="ocid1.image.oc1..v131", version="1.31"))
    assert not do_update(make_image(version="1.30"), "amd64", "1.31", BOOT_IMAGE, "DEFAULT")


def template_node(name):
    return GraphNode(obj={
        "apiVersion": INFRA_API, "kind": "OCIMachineTemplate",
        "metadata": {"name": name, "namespace": "demo", "resourceVersion": "12", "uid": "abc"},
        "spec": {"template": {"spec": {"imageId": "ocid1.image.oc1..old", "shape": "VM.Standard.E4.Flex"}}},
        "status": {},
    })


def test_create_machine_templates_bumps_names():
    templates = [template_node(n) for n in ("mt", "mt-3", "mt-3-5")]
    originals = [copy.deepcopy(t.obj) for t in templates]
    images = {"old": OciImageData(image=make_image(), arch="amd64", has_update=True,
                                  new_id="ocid1.image.oc1..new", machine_templates=templates)}
    resources = FakeResources()

    updated = create_machine_templates(resources, images)

    assert sorted(updated.values()) == ["mt-1", "mt-3-6", "mt-4"]
    for obj in resources.created:
        assert obj["spec"]["template"]["spec"]["imageId"] == "ocid1.image.oc1..new"
        assert "resourceVersion" not in obj["metadata"]
        assert "status" not in obj
    assert [t.obj for t in templates] == originals


def test_create_machine_templates_without_updates():
    images = {"old": OciImageData(image=make_image(), arch="amd64", machine_templates=[template_node("mt")])}
    resources = FakeResources()
    assert create_machine_templates(resources, images) == {}
    assert resources.created == []


def test_update_help_for_shared_template():
    graph = get_cluster_graph(FakeResources(cluster_objects()), "demo", "A")
    updated = {((INFRA_API, "OCIMachineTemplate"), "A-mt"): "A-mt-1"}

    messages = update_help(graph, updated, "1.31")

    assert len(messages) == 2
    assert "kubeadmcontrolplane A-cp" in messages[0]
    assert "machinedeployment A-md" in messages[1]
    assert '"value":"v1.31.0"' in messages[0]
    assert '"value":"A-mt-1"' in messages[1]


class FakeDriver:
    def __init__(self, cluster_config, resources):
        self.cluster_config = cluster_config
        self.bootstrap_kubeconfig = "/tmp/bootstrap"
        self.from_template = False
        self.cluster_resources = yaml.safe_dump_all(cluster_objects())
        self.imported = []

    def _resources(self):
        return self.cluster_resources

    def _cluster(self):
        return "demo", "A"

    def ensure_image(self, name, arch, version, force):
        self.imported.append((name, arch, version))
        return "ocid1.image.oc1..new", "ocid1.workrequest.oc1..1"

    def wait_for_kubeconfig(self, namespace):
        return "apiVersion: v1\nkind: Config\n"


def test_stage_without_new_images(monkeypatch):
    from ocnectl.config import ClusterConfig

    resources = FakeResources(cluster_objects())
    img = make_image(created=NEWER)
    monkeypatch.setattr(stage.ResourceClient, "from_kubeconfig", classmethod(lambda cls, path: resources))
    monkeypatch.setattr(stage, "get_image_by_id", lambda image_id, profile: img)
    patch_lookup(monkeypatch, existing=img, container_created=OLDER)
    monkeypatch.setattr(stage, "wait_for_work_requests", lambda requests, profile: None)

    cc = ClusterConfig(provider=constants.PROVIDER_OCI, kubernetesVersion="1.30")
    driver = FakeDriver(cc, resources)

    kubeconfig, help_text, changed = stage.stage(driver, "1.30")

    assert changed
    assert help_text == ""
    assert resources.created == []
    assert driver.imported == []
    assert resources.patched[0][0] == "KubeadmControlPlane"
    with open(kubeconfig) as f:
        assert "kind: Config" in f.read()


def image_details_recorder(monkeypatch):
    calls = []
    monkeypatch.setattr(stage, "ensure_image_details",
                        lambda compartment, profile, image_id, arch: calls.append((image_id, arch)))
    return calls


def oci_driver():
    from ocnectl.config import ClusterConfig

    cc = ClusterConfig(provider=constants.PROVIDER_OCI, kubernetesVersion="1.30", bootVolumeContainerImage=BOOT_IMAGE)
    return FakeDriver(cc, None)


def test_import_updated_image(monkeypatch):
    driver = oci_driver()
    waited = []
    monkeypatch.setattr(stage, "wait_for_work_requests", lambda requests, profile: waited.append(dict(requests)))
    details = image_details_recorder(monkeypatch)
    images = {"ocid1.image.oc1..old": OciImageData(image=make_image(), arch="arm64", has_update=True)}

    stage._import_updated_images(driver, images, "1.31", True)

    img = images["ocid1.image.oc1..old"]
    assert driver.imported == [("ock", "arm64", "1.31")]
    assert img.new_id == "ocid1.image.oc1..new"
    assert list(waited[0]) == ["ocid1.workrequest.oc1..1"]
    assert details == [("ocid1.image.oc1..new", "arm64")]
    assert driver.cluster_config.boot_volume_container_image == BOOT_IMAGE


def test_import_adopts_image_for_new_minor_version(monkeypatch):
    driver = oci_driver()
    patch_lookup(monkeypatch, existing=make_image(image_id="ocid1.image.oc1..v131", version="1.31"))
    monkeypatch.setattr(stage, "wait_for_work_requests", lambda requests, profile: None)
    details = image_details_recorder(monkeypatch)
    images = {"ocid1.image.oc1..old": OciImageData(image=make_image(), arch="amd64")}

    stage._import_updated_images(driver, images, "1.31", True)

    img = images["ocid1.image.oc1..old"]
    assert img.has_update
    assert img.new_id == "ocid1.image.oc1..v131"
    assert img.work_request_id == ""
    assert driver.imported == []
    assert details == []


def test_import_new_minor_version_without_image(monkeypatch):
    driver = oci_driver()
    patch_lookup(monkeypatch, existing=None)
    images = {"ocid1.image.oc1..old": OciImageData(image=make_image(), arch="amd64")}

    with pytest.raises(NotFoundError, match="1.31"):
        stage._import_updated_images(driver, images, "1.31", True)


def test_import_same_version_without_update(monkeypatch):
    driver = oci_driver()
    waited = []
    monkeypatch.setattr(stage, "wait_for_work_requests", lambda requests, profile: waited.append(dict(requests)))
    details = image_details_recorder(monkeypatch)
    images = {"ocid1.image.oc1..old": OciImageData(image=make_image(), arch="amd64")}

    stage._import_updated_images(driver, images, "1.30", False)

    assert driver.imported == []
    assert waited == [{}]
    assert details == []
    assert images["ocid1.image.oc1..old"].new_id == ""


def control_plane_with_join(join):
    return {"spec": {"kubeadmConfigSpec": {"joinConfiguration": join}}}


def patch_ops(patches):
    return [(p["op"], p["path"], p["value"]) for p in patches.to_list()]


def test_control_plane_patches_without_join_configuration():
    ops = patch_ops(get_control_plane_patches({"spec": {}}, "v1.31.0", "A-mt-1"))
    assert ops == [
        ("replace", "/spec/version", "v1.31.0"),
        ("replace", "/spec/machineTemplate/infrastructureRef/name", "A-mt-1"),
        ("add", "/spec/kubeadmConfigSpec/joinConfiguration/patches", {"directory": constants.OCK_PATCH_DIRECTORY}),
        ("add", "/spec/kubeadmConfigSpec/joinConfiguration/skipPhases", ["preflight"]),
    ]


def test_control_plane_patches_keep_existing_patches():
    cp = control_plane_with_join({"patches": {"directory": "/custom"}, "skipPhases": ["addon/kube-proxy"]})
    ops = patch_ops(get_control_plane_patches(cp, "v1.31.0", "A-mt-1"))
    assert ops[2:] == [("add", "/spec/kubeadmConfigSpec/joinConfiguration/skipPhases/-", "preflight")]


def test_control_plane_patches_with_preflight_skipped():
    cp = control_plane_with_join({"patches": {"directory": "/custom"}, "skipPhases": ["preflight"]})
    assert len(get_control_plane_patches(cp, "v1.31.0", "A-mt-1")) == 2


def test_control_plane_patches_with_null_skip_phases():
    cp = control_plane_with_join({"patches": {"directory": "/custom"}, "skipPhases": None})
    ops = patch_ops(get_control_plane_patches(cp, "v1.31.0", "A-mt-1"))
    assert ops[2:] == [("add", "/spec/kubeadmConfigSpec/joinConfiguration/skipPhases", ["preflight"])]
