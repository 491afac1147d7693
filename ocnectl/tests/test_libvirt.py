import pytest

from ocnectl.modules.drivers.libvirt.names import (
    bridge_nic,
    domain_name,
    highest_ordinal,
    is_domain_from_cluster,
    resource_names,
    user_nic,
)
from ocnectl.modules.drivers.none import split_endpoint
from ocnectl.modules.k8s import endpoint


def test_domain_names():
    name = domain_name("my-cluster", "control-plane", 2)
    assert name == "my-cluster-control-plane-2"
    assert resource_names(name) == ("my-cluster-control-plane-2.qcow2", "my-cluster-control-plane-2-init.ign")
    assert bridge_nic() == "enp1s0"
    assert user_nic() == "enp0s2"


@pytest.mark.parametrize("name,cluster,expected", [
    ("my-cluster-control-plane-1", "my-cluster", True),
    ("my-cluster-worker-3", "my-cluster", True),
    ("my-cluster-worker-3", "my", False),
    ("my-cluster-worker-x", "my-cluster", False),
    ("other-control-plane-1", "my-cluster", False),
    ("my-cluster-plane-1", "my-cluster", False),
])
def test_is_domain_from_cluster(name, cluster, expected):
    assert is_domain_from_cluster(name, cluster) is expected


def test_highest_ordinal():
    names = ["c-worker-1", "c-worker-4", "c-control-plane-1", "cc-worker-9"]
    assert highest_ordinal(names, "c", "worker") == 4
    assert highest_ordinal(names, "c", "control-plane") == 1
    assert highest_ordinal([], "c", "worker") == 0


@pytest.mark.parametrize("endpoint_value,expected", [
    ("10.0.0.5:6443", "10.0.0.5"),
    ("api.example.com:6443", "api.example.com"),
    ("[fd00::5]:6443", "[fd00::5]"),
    ("api.example.com", "api.example.com"),
])
def test_split_endpoint(endpoint_value, expected):
    assert split_endpoint(endpoint_value) == expected


def test_control_plane_endpoint_prefers_kubeadm(monkeypatch):
    monkeypatch.setattr(endpoint, "get_cluster_configuration",
                        lambda core: {"controlPlaneEndpoint": "10.0.0.5:6443"})
    monkeypatch.setattr(endpoint, "get_host", lambda api_client: "https://127.0.0.1:6443")
    assert endpoint.get_control_plane_endpoint(None) == "10.0.0.5:6443"


def test_control_plane_endpoint_falls_back_to_kubeconfig(monkeypatch):
    from ocnectl.errors import NotFoundError

    def missing(core):
        raise NotFoundError("no kubeadm-config")

    monkeypatch.setattr(endpoint, "get_cluster_configuration", missing)
    monkeypatch.setattr(endpoint, "get_host", lambda api_client: "127.0.0.1:6443")
    assert endpoint.get_control_plane_endpoint(None) == "127.0.0.1:6443"


def test_session_uri():
    pytest.importorskip("libvirt")
    from ocnectl.modules.drivers.libvirt.connection import resolve_session_uri

    assert resolve_session_uri("qemu:///system", platform="linux") == ("qemu:///system", "127.0.0.1", True)
    uri, _, local = resolve_session_uri("qemu:///session", platform="darwin", home="/Users/me")
    assert local
    assert uri.startswith("qemu:///session?socket=/Users/me/")


def test_storage_helpers():
    pytest.importorskip("libvirt")
    from ocnectl import constants
    from ocnectl.errors import ValidationError
    from ocnectl.modules.drivers.libvirt.storage import get_default_pool_path, parse_capacity

    assert parse_capacity("20Gi") == ("GiB", 20)
    assert parse_capacity("1024") == ("B", 1024)
    with pytest.raises(ValidationError):
        parse_capacity("lots")
    assert get_default_pool_path("qemu:///system", True, platform="linux") == constants.STORAGE_POOL_PATH
    assert get_default_pool_path("qemu:///session", True, platform="darwin", home="/Users/me").startswith("/Users/me")
