import oci
import pytest
import yaml
from requests.exceptions import ConnectionError as RequestsConnectionError

from ocnectl import constants
from ocnectl.config import ClusterConfig, OciImageSet
from ocnectl.errors import NotFoundError, ValidationError, WorkRequestError
from ocnectl.modules.drivers.oci import apps
from ocnectl.modules.drivers.oci.apps import capi_applications, get_oci_ccm_options, oci_ccm_credentials
from ocnectl.modules.drivers.oci.template import (
    find_resource,
    get_cluster_object,
    shape_image,
    validate_cluster_resources,
)
from ocnectl.modules.oci.capabilities import new_image_capability
from ocnectl.modules.oci.client import OciConfig
from ocnectl.modules.oci.shapes import architecture_from_shape, is_arm_shape
from ocnectl.modules.oci.workrequests import wait_for_work_requests

from conftest import FakeResources
from test_graph import INFRA_API, cluster_objects


def test_shape_image():
    images = OciImageSet(amd64="ocid1.image.oc1..x86", arm64="ocid1.image.oc1..arm")
    assert shape_image("VM.Standard.A1.Flex", images) == "ocid1.image.oc1..arm"
    assert shape_image("VM.Standard.E4.Flex", images) == "ocid1.image.oc1..x86"


def test_shapes():
    assert architecture_from_shape("BM.Standard.A1.160") == constants.ARCH_ARM64
    assert architecture_from_shape("VM.Standard3.Flex") == constants.ARCH_AMD64
    assert is_arm_shape("VM.Standard.A2.Flex")
    assert is_arm_shape("Generic")
    assert not is_arm_shape("VM.Standard.E5.Flex")


def test_validate_cluster_resources():
    validate_cluster_resources("spec:\n  template:\n    spec:\n      imageId: ocid1.image.oc1..abc\n")
    validate_cluster_resources('imageId: "ocid1.image.oc1..abc"\n')
    with pytest.raises(ValidationError):
        validate_cluster_resources("imageId: ol8-image\n")


def test_get_cluster_object():
    resources = yaml.safe_dump_all(cluster_objects())
    assert get_cluster_object(resources)["metadata"]["name"] == "A"
    assert find_resource(resources, "OCICluster", "A")["apiVersion"] == INFRA_API
    with pytest.raises(NotFoundError):
        find_resource(resources, "OCICluster", "B")


def test_get_cluster_object_requires_label():
    objs = cluster_objects()
    objs[0]["metadata"]["labels"] = {}
    with pytest.raises(ValidationError):
        get_cluster_object(yaml.safe_dump_all(objs))


def test_get_cluster_object_missing():
    with pytest.raises(NotFoundError):
        get_cluster_object(yaml.safe_dump_all(cluster_objects()[1:]))


@pytest.fixture
def oci_profile(monkeypatch):
    config = OciConfig(name="DEFAULT", user="ocid1.user.oc1..u", fingerprint="aa:bb", tenancy="ocid1.tenancy.oc1..t",
                       region="us-ashburn-1", key="KEY", passphrase="secret")
    monkeypatch.setattr(apps, "get_config", lambda profile: config)
    monkeypatch.setattr(apps, "get_compartment_id", lambda compartment, profile: compartment)
    return config


def test_capi_applications_order(oci_profile):
    applications = capi_applications(ClusterConfig(provider=constants.PROVIDER_OCI))
    names = [app.name for app in applications]
    assert names == ["cert-manager", "core-capi", "oci-capi", "bootstrap-capi", "control-plane-capi"]
    assert applications[2].config["authConfig"]["useInstancePrincipal"] == "false"
    assert applications[2].config["authConfig"]["region"] == "us-ashburn-1"


def test_oci_ccm_credentials(oci_profile):
    cc = ClusterConfig(provider=constants.PROVIDER_OCI,
                       providers={"oci": {"compartment": "ocid1.compartment.oc1..c", "vcn": "ocid1.vcn.oc1..v",
                                          "loadBalancer": {"subnet1": "s1", "subnet2": "s2"}}})
    creds = yaml.safe_load(oci_ccm_credentials(cc))
    assert creds["compartment"] == "ocid1.compartment.oc1..c"
    assert creds["vcn"] == "ocid1.vcn.oc1..v"
    assert creds["loadBalancer"]["subnet1"] == "s1"
    assert creds["auth"]["passphrase"] == "secret"


def oci_cluster(subnets, vcn_id="ocid1.vcn.oc1..v"):
    return {
        "apiVersion": INFRA_API, "kind": "OCICluster",
        "metadata": {"name": "A", "namespace": "demo"},
        "spec": {"networkSpec": {"vcn": {"id": vcn_id, "subnets": subnets}}},
    }


def test_ccm_options_from_cluster():
    obj = oci_cluster([
        {"role": "control-plane", "id": "cp"},
        {"role": "service-lb", "id": "lb1"},
        {"role": "service-lb", "id": "lb2"},
    ])
    cc = ClusterConfig(provider=constants.PROVIDER_OCI)
    get_oci_ccm_options(FakeResources([obj]), cc, obj)
    assert cc.providers.oci.vcn == "ocid1.vcn.oc1..v"
    assert cc.providers.oci.load_balancer.subnet1 == "lb1"
    assert cc.providers.oci.load_balancer.subnet2 == "lb2"


def test_ccm_options_without_service_lb_subnet():
    obj = oci_cluster([{"role": "worker", "id": "w"}])
    with pytest.raises(ValidationError, match="service-lb"):
        get_oci_ccm_options(FakeResources([obj]), ClusterConfig(provider=constants.PROVIDER_OCI), obj)


def test_ccm_options_with_empty_vcn():
    obj = oci_cluster([{"role": "service-lb", "id": "lb1"}], vcn_id="")
    with pytest.raises(ValidationError, match="empty vcn id"):
        get_oci_ccm_options(FakeResources([obj]), ClusterConfig(provider=constants.PROVIDER_OCI), obj)


def test_ccm_options_already_configured():
    cc = ClusterConfig(provider=constants.PROVIDER_OCI,
                       providers={"oci": {"vcn": "v", "loadBalancer": {"subnet1": "a", "subnet2": "b"}}})
    get_oci_ccm_options(FakeResources(), cc, oci_cluster([]))
    assert cc.providers.oci.load_balancer.subnet1 == "a"


def test_image_capability():
    caps = new_image_capability(constants.ARCH_AMD64)
    assert caps["version"] == 2
    assert caps["externalLaunchOptions"]["firmware"] == "UEFI_64"


def test_work_requests_succeed():
    statuses = {"wr1": iter(["IN_PROGRESS", "SUCCEEDED"]), "wr2": iter(["SUCCEEDED"])}
    wait_for_work_requests({"wr1": "Importing one", "wr2": "Importing two"},
                           get_status=lambda wr, profile: (next(statuses[wr]), 50.0),
                           poll_interval=0.01, quiet=True)


def test_work_request_failure():
    with pytest.raises(WorkRequestError, match="wr1 failed"):
        wait_for_work_requests({"wr1": "Importing"}, get_status=lambda wr, profile: ("FAILED", 0.0),
                               poll_interval=0.01, quiet=True)


def deleting_driver(monkeypatch, tmp_path, objs):
    from ocnectl.modules.drivers.oci import driver as oci_driver

    resources = FakeResources(objs)
    monkeypatch.setattr(oci_driver.ResourceClient, "from_kubeconfig", classmethod(lambda cls, path: resources))
    monkeypatch.setattr(oci_driver.OciDriver, "_wait_for_deletion", lambda self, client, namespace: None)

    kubeconfig = tmp_path / "kubeconfig.A"
    kubeconfig.write_text("apiVersion: v1\nkind: Config\n")

    d = oci_driver.OciDriver.__new__(oci_driver.OciDriver)
    d.cluster_config = ClusterConfig(name="A", provider=constants.PROVIDER_OCI)
    d.state_listener = None
    d.cluster_resources = yaml.safe_dump_all(cluster_objects())
    d.from_template = False
    d.kubeconfig_path = str(kubeconfig)
    d.bootstrap_kubeconfig = str(tmp_path / "bootstrap")
    d.deleted = False
    return d, resources, kubeconfig


def test_delete_removes_cluster_and_kubeconfig(monkeypatch, tmp_path):
    d, resources, kubeconfig = deleting_driver(monkeypatch, tmp_path, cluster_objects())
    d.delete()
    assert resources.deleted == [("Cluster", "demo", "A")]
    assert not kubeconfig.exists()


def test_delete_missing_cluster_still_removes_kubeconfig(monkeypatch, tmp_path):
    d, resources, kubeconfig = deleting_driver(monkeypatch, tmp_path, [])
    d.delete()
    assert resources.deleted == []
    assert not kubeconfig.exists()
    assert d.deleted


def flaky_status(*outcomes):
    remaining = list(outcomes)

    def get_status(wr, profile):
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome, 100.0
    return get_status


def test_work_request_status_retried_after_transient_errors():
    get_status = flaky_status(oci.exceptions.ServiceError(503, "Unavailable", {}, "busy"),
                              RequestsConnectionError("reset"), "SUCCEEDED")
    wait_for_work_requests({"wr1": "Importing"}, get_status=get_status, poll_interval=0.01, quiet=True)


def test_work_request_status_gives_up_after_retries():
    errors = [oci.exceptions.ServiceError(429, "TooManyRequests", {}, "slow down")
              for _ in range(constants.OCI_WORK_REQUEST_STATUS_RETRIES + 1)]
    with pytest.raises(WorkRequestError, match="wr1"):
        wait_for_work_requests({"wr1": "Importing"}, get_status=flaky_status(*errors), poll_interval=0.01, quiet=True)


def test_work_request_status_not_found_is_not_retried():
    get_status = flaky_status(oci.exceptions.ServiceError(404, "NotAuthorizedOrNotFound", {}, "missing"), "SUCCEEDED")
    with pytest.raises(WorkRequestError, match="work request wr2"):
        wait_for_work_requests({"wr2": "Importing"}, get_status=get_status, poll_interval=0.01, quiet=True)
