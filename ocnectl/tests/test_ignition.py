import base64
import json

import pytest
import yaml

from ocnectl import constants
from ocnectl.config import Proxy
from ocnectl.errors import ValidationError
from ocnectl.modules import ignition


def file_contents(ign, path):
    for f in ign["storage"]["files"]:
        if f["path"] == path:
            return base64.b64decode(f["contents"]["source"].split(",", 1)[1]).decode()
    raise AssertionError(f"{path} not in ignition")


def unit_names(ign):
    return [u["name"] for u in ign["systemd"]["units"]]


def join_config(**kwargs):
    values = dict(
        role=ignition.ROLE_WORKER,
        os_tag="1.32",
        os_registry=constants.OS_REGISTRY,
        image_registry=constants.CONTAINER_REGISTRY,
        kube_api_server_ip="192.168.122.10",
        kube_api_bind_port=6443,
        kube_api_bind_port_alt=6444,
        join_token="abcdef.0123456789abcdef",
        net_interface="enp1s0",
        kube_pki_cert_hashes=["sha256:1234"],
    )
    values.update(kwargs)
    return ignition.ClusterJoin(**values)


def test_join_with_default_os_registry():
    ign = ignition.join_cluster(join_config())

    update = file_contents(ign, ignition.UPDATE_CONFIG_PATH).splitlines()
    assert update == [f"registry: {constants.OS_REGISTRY}", "tag: 1.32", f"transport: {constants.OS_TRANSPORT}"]

    kubeadm = yaml.safe_load(file_contents(ign, ignition.KUBEADM_FILE_PATH))
    assert kubeadm["kind"] == "JoinConfiguration"
    assert kubeadm["discovery"]["bootstrapToken"]["apiServerEndpoint"] == "192.168.122.10:6443"
    assert kubeadm["discovery"]["bootstrapToken"]["caCertHashes"] == ["sha256:1234"]
    assert "controlPlane" not in kubeadm

    assert ignition.OCNE_SERVICE in unit_names(ign)
    assert ignition.CRIO_SERVICE in unit_names(ign)


def test_control_plane_join_uses_alternate_port_behind_internal_lb():
    ign = ignition.join_cluster(join_config(role=ignition.ROLE_CONTROL_PLANE, internal_lb=True,
                                            upload_certificate_key="k"))
    docs = list(yaml.safe_load_all(file_contents(ign, ignition.KUBEADM_FILE_PATH)))
    assert docs[0]["controlPlane"]["localAPIEndpoint"]["bindPort"] == 6444
    assert docs[0]["controlPlane"]["certificateKey"] == "k"
    assert docs[1]["kind"] == "KubeProxyConfiguration"


def test_os_registry_with_tag_is_rejected():
    with pytest.raises(ValidationError, match="cannot have a tag"):
        ignition.join_cluster(join_config(os_registry=f"{constants.OS_TRANSPORT}:{constants.OS_REGISTRY}:1.31"))


def test_add_file_twice():
    ign = ignition.add_file(ignition.new_ignition(), "/etc/a", "a")
    with pytest.raises(ValidationError):
        ignition.add_file(ign, "/etc/a", "b")


def test_merge_by_key():
    a = ignition.add_unit(ignition.new_ignition(), ignition.CRIO_SERVICE, enabled=True,
                          dropins={"one.conf": "1"})
    b = ignition.add_unit(ignition.new_ignition(), ignition.CRIO_SERVICE, dropins={"two.conf": "2"})
    merged = ignition.merge(a, b)
    units = merged["systemd"]["units"]
    assert len(units) == 1
    assert units[0]["enabled"] is True
    assert [d["name"] for d in units[0]["dropins"]] == ["one.conf", "two.conf"]


def test_proxy():
    assert "systemd" not in ignition.proxy(Proxy())
    ign = ignition.proxy(Proxy(httpsProxy="http://proxy:3128"), "10.0.0.0/8")
    assert ignition.RPM_OSTREED_SERVICE in unit_names(ign)


def test_from_path(tmp_path):
    (tmp_path / "a.ign").write_text(json.dumps(ignition.hostname("node-1")))
    (tmp_path / "notes.txt").write_text("not ignition")
    ign = ignition.from_path(str(tmp_path))
    assert file_contents(ign, "/etc/hostname") == "node-1\n"

    with pytest.raises(ValidationError):
        ignition.from_string("{}")


def test_ocne_user_key_path(tmp_path):
    key = tmp_path / "id.pub"
    key.write_text("ssh-ed25519 AAAA user@host\n")
    ign = ignition.ocne_user(ssh_key_path=str(key))
    user = ign["passwd"]["users"][0]
    assert user["name"] == ignition.OCNE_USER
    assert user["sshAuthorizedKeys"] == ["ssh-ed25519 AAAA user@host"]
