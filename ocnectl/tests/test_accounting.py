import pytest
import yaml

from ocnectl.errors import FatalError, ValidationError
from ocnectl.modules.drivers.libvirt import accounting
from ocnectl.modules.drivers.libvirt.accounting import (
    HostData,
    NetworkInformation,
    add_cluster,
    allocate_port,
    load_network_information,
    next_free_ip,
    next_free_port,
    release,
    remove_cluster,
    reserve_ip,
    save_network_information,
)


def test_allocate_port_skips_used_ports(home):
    ni = NetworkInformation()
    ni.hosts["h1"] = HostData(ports={6443, 6444})
    save_network_information(ni)

    assert allocate_port("h1") == 6445
    assert allocate_port("h1") == 6446
    assert load_network_information().hosts["h1"].ports == {6443, 6444, 6445, 6446}


def test_allocate_port_on_empty_host(home):
    assert allocate_port("") == 6443


def test_next_free_port_exhausted():
    with pytest.raises(FatalError):
        next_free_port(range(6443, 65535))


def test_add_cluster_does_not_reserve_localhost(home):
    add_cluster("h1", "demo", "127.0.0.1", 6443)

    ni = load_network_information()
    assert ni.clusters["demo"].ip == "127.0.0.1"
    assert "127.0.0.1" not in ni.hosts["h1"].ips
    assert 6443 in ni.hosts["h1"].ports


def test_add_cluster_twice_fails(home):
    add_cluster("h1", "demo", "192.168.122.200", 6443)
    with pytest.raises(ValidationError):
        add_cluster("h1", "demo", "192.168.122.201", 6444)


def test_remove_cluster_releases_address_and_port(home):
    add_cluster("h1", "demo", "192.168.122.200", 6443)
    add_cluster("h1", "other", "192.168.122.201", 6444)
    remove_cluster("demo")

    ni = load_network_information()
    assert "demo" not in ni.clusters
    assert ni.hosts["h1"].ips == {"192.168.122.201"}
    assert ni.hosts["h1"].ports == {6444}


def test_remove_unknown_cluster_is_ignored(home):
    remove_cluster("missing")
    assert not accounting.ip_file_path().exists()


def test_ip_scan_starts_past_offset():
    assert next_free_ip("192.168.122.1", "255.255.255.0", []) == "192.168.122.201"
    assert next_free_ip("192.168.122.1", "255.255.255.0", ["192.168.122.201"]) == "192.168.122.202"


def test_ip_scan_offset_outside_subnet():
    with pytest.raises(FatalError):
        next_free_ip("10.0.0.1", "255.255.255.128", [])


def test_ip_scan_subnet_exhausted():
    used = [f"192.168.122.{i}" for i in range(201, 256)]
    with pytest.raises(FatalError):
        next_free_ip("192.168.122.1", "255.255.255.0", used)


def test_reserve_ip_records_address(home):
    ip = reserve_ip("", "192.168.122.1", "255.255.255.0")
    assert ip == "192.168.122.201"
    assert reserve_ip("", "192.168.122.1", "255.255.255.0") == "192.168.122.202"


def test_file_round_trip(home):
    ni = NetworkInformation()
    ni.hosts["h1"] = HostData(ips={"192.168.122.200"}, ports={6443, 6444})
    ni.hosts[""] = HostData(ports={6445})
    ni.clusters["demo"] = accounting.ClusterData(host="h1", ip="192.168.122.200", port=6443)
    save_network_information(ni)

    assert load_network_information() == ni

    with open(accounting.ip_file_path()) as f:
        raw = yaml.safe_load(f)
    assert raw["hosts"]["h1"]["ips"] == {"192.168.122.200": True}
    assert raw["clusters"]["demo"] == {"host": "h1", "ip": "192.168.122.200", "port": 6443}


def test_release_unrecorded_reservation(home):
    ip = reserve_ip("h1", "192.168.122.1", "255.255.255.0")
    port = allocate_port("h1")
    release("h1", ip, port)

    hd = load_network_information().hosts["h1"]
    assert ip not in hd.ips
    assert port not in hd.ports
    assert allocate_port("h1") == port


def test_release_keeps_recorded_cluster(home):
    add_cluster("h1", "demo", "192.168.122.201", 6443)
    release("h1", "192.168.122.201", 6443)

    hd = load_network_information().hosts["h1"]
    assert hd.ips == {"192.168.122.201"}
    assert hd.ports == {6443}


def test_release_unknown_host(home):
    release("h1", "192.168.122.201", 6443)
    assert not accounting.ip_file_path().exists()


def test_failed_create_releases_reservations(home, monkeypatch):
    pytest.importorskip("libvirt")
    from ocnectl.config import ClusterConfig
    from ocnectl.modules.drivers.libvirt import driver

    def fail(*args, **kwargs):
        raise FatalError("could not generate certificates")

    monkeypatch.setattr(driver.network, "allocate_ip",
                        lambda conn, host, name: reserve_ip(host, "192.168.122.1", "255.255.255.0"))
    monkeypatch.setattr(driver, "generate_pki", fail)

    d = driver.LibvirtDriver.__new__(driver.LibvirtDriver)
    d.cluster_config = ClusterConfig(name="c1")
    d.state_listener = None
    d.name = "c1"
    d.kube_version = d.cluster_config.kube_version
    d.host = "h1"
    d.connection = None
    d.network_name = "default"
    d.bridge_networking = True
    d.target_ip = "127.0.0.1"
    d.tunnel_port = 0
    d.local_kubeconfig_path = str(home / "local")
    d.vm_kubeconfig_path = str(home / "vm")

    with pytest.raises(FatalError):
        d.create()

    ni = load_network_information()
    assert ni.clusters == {}
    assert ni.hosts["h1"].ips == set()
    assert ni.hosts["h1"].ports == set()
