"""Ignition v3 documents that configure nodes on first boot.

Documents are plain dictionaries in the shape of the Ignition JSON schema
so they can be merged with user supplied configuration and serialized
without an intermediate object model.
"""
import base64
import copy
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .. import constants
from ..config import Proxy
from ..errors import ValidationError
from ..utils.versions import get_kubernetes_versions
from .containers import make_ostree_reference, parse_ostree_reference
from .templates import read_template, render

logger = logging.getLogger("ocnectl.ignition")

IGNITION_VERSION = "3.4.0"

ACTION_INIT = "init"
ACTION_JOIN = "join"

KUBEADM_FILE_PATH = "/etc/kubernetes/kubeadm.conf"
CA_CERT_FILE_PATH = "/etc/kubernetes/pki/ca.crt"
CA_KEY_FILE_PATH = "/etc/kubernetes/pki/ca.key"
OCNE_SH_PATH = "/etc/ocne/ocne.sh"
UPDATE_CONFIG_PATH = "/etc/ocne/update.yaml"
CONTAINER_REGISTRY_PATH = "/etc/containers/registries.conf"
NETWORK_SCRIPTS_DIR = "/etc/sysconfig/network-scripts"
VOLUME_PLUGIN_DIR = "/var/lib/kubelet/volumeplugins"
KUBEADM_PATCH_DIRECTORY = "/etc/ocne/ock"

OCNE_SERVICE = "ocne.service"
OCNE_UPDATE_SERVICE = "ocne-update.service"
CRIO_SERVICE = "crio.service"
KUBELET_SERVICE = "kubelet.service"
RPM_OSTREED_SERVICE = "rpm-ostreed.service"
ISCSID_SERVICE = "iscsid.service"

OCNE_USER = "ocne"
OCNE_USER_SHELL = "/usr/bin/rescue.sh"

ROLE_CONTROL_PLANE = "control-plane"
ROLE_WORKER = "worker"

Ignition = Dict[str, Any]


@dataclass
class ClusterInit:
    """Everything the first control plane node needs to create a cluster."""
    os_tag: str
    os_registry: str
    image_registry: str
    kube_api_server_ip: str
    kube_api_bind_port: int
    kube_api_bind_port_alt: int
    kube_pki_cert: str
    kube_pki_key: str
    service_subnet: str
    pod_subnet: str
    kube_version: str
    net_interface: str
    internal_lb: bool = False
    expecting_worker_nodes: bool = False
    proxy_mode: str = "iptables"
    upload_certificate_key: str = ""
    cipher_suites: str = ""
    extra_sans: List[str] = field(default_factory=list)


@dataclass
class ClusterJoin:
    """Everything a node needs to join an existing cluster."""
    role: str
    os_tag: str
    os_registry: str
    image_registry: str
    kube_api_server_ip: str
    kube_api_bind_port: int
    kube_api_bind_port_alt: int
    join_token: str
    net_interface: str
    kube_pki_cert_hashes: List[str] = field(default_factory=list)
    internal_lb: bool = False
    proxy_mode: str = "iptables"
    upload_certificate_key: str = ""
    cipher_suites: str = ""

    @property
    def is_control_plane(self) -> bool:
        return self.role == ROLE_CONTROL_PLANE


def new_ignition() -> Ignition:
    return {"ignition": {"version": IGNITION_VERSION}}


def data_url(contents: str) -> str:
    return "data:;base64," + base64.b64encode(contents.encode()).decode()


def add_file(ign: Ignition, path: str, contents: str, mode: int = 0o644,
             user: str = "", group: str = "") -> Ignition:
    """Add a file to a document.

    Raises:
        ValidationError: If the document already defines the path
    """
    files = ign.setdefault("storage", {}).setdefault("files", [])
    if any(f.get("path") == path for f in files):
        raise ValidationError(f"A file with path {path} is already defined")

    entry: Dict[str, Any] = {
        "path": path,
        "overwrite": True,
        "mode": mode,
        "contents": {"source": data_url(contents)},
    }
    if user:
        entry["user"] = {"name": user}
    if group:
        entry["group"] = {"name": group}
    files.append(entry)
    return ign


def add_unit(ign: Ignition, name: str, enabled: Optional[bool] = None,
             dropins: Optional[Dict[str, str]] = None, contents: str = "") -> Ignition:
    unit: Dict[str, Any] = {"name": name}
    if enabled is not None:
        unit["enabled"] = enabled
    if contents:
        unit["contents"] = contents
    if dropins:
        unit["dropins"] = [{"name": k, "contents": v} for k, v in dropins.items()]
    wrapped = new_ignition()
    wrapped["systemd"] = {"units": [unit]}
    return merge(ign, wrapped)


def add_user(ign: Ignition, name: str, ssh_key: str = "", password: str = "",
             groups: Optional[List[str]] = None, shell: str = "") -> Ignition:
    users = ign.setdefault("passwd", {}).setdefault("users", [])
    if any(u.get("name") == name for u in users):
        raise ValidationError(f"A user with name {name} is already defined")

    user: Dict[str, Any] = {"name": name}
    if ssh_key:
        user["sshAuthorizedKeys"] = [ssh_key.strip()]
    if password:
        user["passwordHash"] = password
    if groups:
        user["groups"] = list(groups)
    if shell:
        user["shell"] = shell
    users.append(user)
    return ign


def _merge_keyed(base: List[Dict[str, Any]], override: List[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    result = [copy.deepcopy(item) for item in base]
    index = {item.get(key): i for i, item in enumerate(result)}
    for item in override:
        k = item.get(key)
        if k in index:
            result[index[k]] = _merge_dicts(result[index[k]], item)
        else:
            index[k] = len(result)
            result.append(copy.deepcopy(item))
    return result


# Lists of objects that Ignition merges by a key rather than by position
_KEYED_LISTS = {
    "files": "path",
    "directories": "path",
    "links": "path",
    "units": "name",
    "dropins": "name",
    "users": "name",
    "groups": "name",
}


def _merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge_dicts(result[key], value)
        elif isinstance(value, list) and isinstance(result.get(key), list) and key in _KEYED_LISTS:
            result[key] = _merge_keyed(result[key], value, _KEYED_LISTS[key])
        else:
            result[key] = copy.deepcopy(value)
    return result


def merge(a: Ignition, b: Ignition) -> Ignition:
    """Merge two documents. Entries in ``b`` win over matching entries in ``a``."""
    return _merge_dicts(a, b)


def from_string(text: str) -> Ignition:
    try:
        ign = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"could not parse extra ignition: {e}") from e
    if not isinstance(ign, dict) or "ignition" not in ign:
        raise ValidationError("could not parse extra ignition: missing ignition version")
    return ign


def from_path(path: str) -> Ignition:
    """Read a document from a file, or merge every valid document in a directory."""
    path = os.path.expanduser(path)
    if os.path.isfile(path):
        with open(path) as f:
            return from_string(f.read())

    ret = new_ignition()
    for name in sorted(os.listdir(path)):
        full = os.path.join(path, name)
        if not os.path.isfile(full):
            continue
        with open(full) as f:
            try:
                ret = merge(ret, from_string(f.read()))
            except ValidationError:
                logger.debug("Skipping %s, it is not an ignition document", full)
    return ret


def marshal(ign: Ignition) -> bytes:
    return json.dumps(ign, separators=(",", ":")).encode()


def container_configuration(registry: str) -> Ignition:
    ret = new_ignition()
    ret = add_unit(ret, CRIO_SERVICE, enabled=True)
    ret = add_unit(ret, KUBELET_SERVICE, enabled=True)
    add_file(ret, CONTAINER_REGISTRY_PATH, render("ignition/registries.conf.j2", registry=registry), 0o644)
    return ret


def _cluster_common(os_registry: str, os_tag: str, image_registry: str, net_interface: str, action: str) -> Ignition:
    transport, registry, tag = parse_ostree_reference(make_ostree_reference(os_registry))
    if tag:
        raise ValidationError("osRegistry field cannot have a tag")

    ret = new_ignition()
    add_file(ret, UPDATE_CONFIG_PATH,
             render("ignition/update.yaml.j2", registry=registry, tag=os_tag, transport=transport), 0o400)
    add_file(ret, OCNE_SH_PATH, read_template("ignition/ocne.sh"), 0o555)
    ret = add_unit(ret, OCNE_UPDATE_SERVICE, enabled=True)
    ret = add_unit(ret, OCNE_SERVICE, enabled=True, dropins={
        "bootstrap.conf": render("ignition/bootstrap.conf.j2", action=action, net_interface=net_interface),
    })
    return merge(ret, container_configuration(image_registry))


def kube_proxy_configuration(mode: str) -> str:
    return render("kubeadm/kube-proxy.yaml.j2", mode=mode)


def initialize_cluster(ci: ClusterInit) -> Ignition:
    """Ignition for the node that runs ``kubeadm init``."""
    ret = _cluster_common(ci.os_registry, ci.os_tag, ci.image_registry, ci.net_interface, ACTION_INIT)

    init = render(
        "kubeadm/init.yaml.j2",
        bind_port=ci.kube_api_bind_port_alt if ci.internal_lb else ci.kube_api_bind_port,
        volume_plugin_dir=VOLUME_PLUGIN_DIR,
        cipher_suites=ci.cipher_suites,
        expecting_workers=ci.expecting_worker_nodes,
        certificate_key=ci.upload_certificate_key,
        patch_directory=KUBEADM_PATCH_DIRECTORY,
    )
    cluster = render(
        "kubeadm/cluster.yaml.j2",
        extra_sans=ci.extra_sans,
        cipher_suites=ci.cipher_suites,
        service_subnet=ci.service_subnet,
        pod_subnet=ci.pod_subnet,
        image_repository=constants.CONTAINER_REGISTRY,
        versions=get_kubernetes_versions(ci.kube_version),
        control_plane_endpoint=f"{ci.kube_api_server_ip}:{ci.kube_api_bind_port}",
    )
    kubeadm = f"{init}\n---\n{cluster}---\n{kube_proxy_configuration(ci.proxy_mode)}"

    add_file(ret, KUBEADM_FILE_PATH, kubeadm, 0o600)
    add_file(ret, CA_CERT_FILE_PATH, ci.kube_pki_cert, 0o600)
    add_file(ret, CA_KEY_FILE_PATH, ci.kube_pki_key, 0o600)
    return ret


def join_cluster(cj: ClusterJoin) -> Ignition:
    """Ignition for a node that runs ``kubeadm join``."""
    ret = _cluster_common(cj.os_registry, cj.os_tag, cj.image_registry, cj.net_interface, ACTION_JOIN)

    kubeadm = render(
        "kubeadm/join.yaml.j2",
        control_plane=cj.is_control_plane,
        bind_port=cj.kube_api_bind_port_alt if cj.internal_lb else cj.kube_api_bind_port,
        certificate_key=cj.upload_certificate_key,
        volume_plugin_dir=VOLUME_PLUGIN_DIR,
        cipher_suites=cj.cipher_suites,
        api_server_endpoint=f"{cj.kube_api_server_ip}:{cj.kube_api_bind_port}",
        token=cj.join_token,
        ca_cert_hashes=cj.kube_pki_cert_hashes,
        patch_directory=KUBEADM_PATCH_DIRECTORY,
    )
    if cj.is_control_plane:
        kubeadm = f"{kubeadm}\n---\n{kube_proxy_configuration(cj.proxy_mode)}"

    add_file(ret, KUBEADM_FILE_PATH, kubeadm, 0o600)
    return ret


def network_file(name: str, default_route: bool = True) -> Ignition:
    """An ifcfg file that brings an interface up with DHCP."""
    ret = new_ignition()
    add_file(ret, f"{NETWORK_SCRIPTS_DIR}/ifcfg-{name}",
             render("ignition/ifcfg.j2", name=name, default_route=default_route), 0o444)
    return ret


def hostname(name: str) -> Ignition:
    ret = new_ignition()
    add_file(ret, "/etc/hostname", f"{name}\n", 0o644)
    return ret


def proxy(config: Proxy, *no_proxies: str) -> Ignition:
    """Proxy drop-ins for every service that pulls images. Empty without a proxy."""
    ret = new_ignition()
    if not config.is_set():
        return ret

    no_proxy = ",".join([p for p in (config.no_proxy,) + no_proxies if p])
    conf = render("ignition/proxy.conf.j2", proxy=config, no_proxy=no_proxy)
    ret = add_unit(ret, CRIO_SERVICE, enabled=True, dropins={"proxy.conf": conf})
    ret = add_unit(ret, KUBELET_SERVICE, enabled=True)
    ret = add_unit(ret, OCNE_UPDATE_SERVICE, enabled=True, dropins={"proxy.conf": conf})
    ret = add_unit(ret, RPM_OSTREED_SERVICE, dropins={"proxy.conf": conf})
    return ret


def ocne_user(ssh_key: str = "", ssh_key_path: str = "", password: str = "") -> Ignition:
    """The default node user. An inline key wins over a key path."""
    if not ssh_key and ssh_key_path:
        with open(os.path.expanduser(ssh_key_path)) as f:
            ssh_key = f.read()
    ret = new_ignition()
    add_user(ret, OCNE_USER, ssh_key=ssh_key, password=password, groups=["wheel"], shell=OCNE_USER_SHELL)
    return ret
