"""Bookkeeping for the addresses and ports handed out to clusters.

Every libvirt host has a set of API server addresses on its bridged
network and a set of ports used to tunnel to those API servers. The state
lives in ``~/.ocne/ips.yaml`` and is shared by every ocnectl process, so
each read-modify-write happens under the pid lock and the file is reloaded
every time.
"""
import ipaddress
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set

import yaml

from .... import constants
from ....config import user_config_dir
from ....errors import FatalError, ValidationError
from ....utils.lock import PidLock

logger = logging.getLogger("ocnectl.drivers.libvirt.accounting")

LOCALHOST = "127.0.0.1"


@dataclass
class HostData:
    ips: Set[str] = field(default_factory=set)
    ports: Set[int] = field(default_factory=set)


@dataclass
class ClusterData:
    host: str
    ip: str
    port: int


@dataclass
class NetworkInformation:
    hosts: Dict[str, HostData] = field(default_factory=dict)
    clusters: Dict[str, ClusterData] = field(default_factory=dict)

    def host_data(self, host: str) -> HostData:
        return self.hosts.setdefault(host, HostData())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NetworkInformation':
        ret = cls()
        for host, hd in (data.get("hosts") or {}).items():
            hd = hd or {}
            ret.hosts[host] = HostData(
                ips={ip for ip, used in (hd.get("ips") or {}).items() if used},
                ports={int(p) for p, used in (hd.get("ports") or {}).items() if used},
            )
        for name, cd in (data.get("clusters") or {}).items():
            ret.clusters[name] = ClusterData(host=cd["host"], ip=cd["ip"], port=int(cd["port"]))
        return ret

    def to_dict(self) -> Dict[str, Any]:
        # Sets are stored as mappings to true
        return {
            "hosts": {
                host: {
                    "ips": {ip: True for ip in sorted(hd.ips)},
                    "ports": {port: True for port in sorted(hd.ports)},
                }
                for host, hd in self.hosts.items()
            },
            "clusters": {
                name: {"host": cd.host, "ip": cd.ip, "port": cd.port}
                for name, cd in self.clusters.items()
            },
        }


def ip_file_path() -> Path:
    return user_config_dir() / constants.USER_IP_FILE


def load_network_information(path: Optional[Path] = None) -> NetworkInformation:
    path = Path(path) if path else ip_file_path()
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return NetworkInformation()
    except yaml.YAMLError as e:
        raise ValidationError(f"Failed to parse {path}: {e}") from e
    return NetworkInformation.from_dict(data)


def save_network_information(ni: NetworkInformation, path: Optional[Path] = None) -> None:
    path = Path(path) if path else ip_file_path()
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    fd = os.open(tmp, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        yaml.safe_dump(ni.to_dict(), f, default_flow_style=False)
    os.replace(tmp, path)


def next_free_ip(address: str, netmask: str, used: Iterable[str],
                 offset: int = constants.IP_SCAN_OFFSET) -> str:
    """The first unused address at least ``offset`` addresses past the gateway.

    Raises:
        ValidationError: If the address and mask do not form a network
        FatalError: If the network has no unused address past the offset
    """
    try:
        network = ipaddress.ip_network(f"{address}/{netmask}", strict=False)
        ip = ipaddress.ip_address(address)
    except ValueError as e:
        raise ValidationError(f"Invalid network address {address} with mask {netmask}: {e}") from e

    exhausted = FatalError(
        f"Could not find unused IP within the subnet {network.network_address} with subnet mask {netmask}"
    )
    for _ in range(offset):
        ip = ip + 1
        if ip not in network:
            raise exhausted

    used = set(used)
    while ip in network:
        if str(ip) not in used:
            return str(ip)
        ip = ip + 1
    raise exhausted


def next_free_port(used: Iterable[int], start: int = constants.KUBE_API_SERVER_BIND_PORT,
                   end: int = constants.MAX_PORT) -> int:
    """The lowest port from ``start`` through ``end`` that is not in use.

    Raises:
        FatalError: If every port in the range is taken
    """
    used = set(used)
    for port in range(start, end + 1):
        if port not in used:
            return port
    raise FatalError("Could not find unused port")


def reserve_ip(host: str, address: str, netmask: str, path: Optional[Path] = None) -> str:
    """Reserve an unused address in the network of a gateway address."""
    with PidLock():
        ni = load_network_information(path)
        hd = ni.host_data(host)
        ip = next_free_ip(address, netmask, hd.ips)
        hd.ips.add(ip)
        save_network_information(ni, path)
    logger.debug("Allocated address %s on %r", ip, host)
    return ip


def allocate_port(host: str, path: Optional[Path] = None) -> int:
    """Reserve a tunnel port on a host."""
    with PidLock():
        ni = load_network_information(path)
        hd = ni.host_data(host)
        port = next_free_port(hd.ports)
        hd.ports.add(port)
        save_network_information(ni, path)
    logger.debug("Allocated port %d on %r", port, host)
    return port


def add_cluster(host: str, name: str, ip: str, port: int, path: Optional[Path] = None) -> None:
    """Record the address and port of a new cluster.

    The loopback address is shared by every user networking cluster, so it is
    never marked as used.
    """
    with PidLock():
        ni = load_network_information(path)
        if name in ni.clusters:
            raise ValidationError(f"Cluster {name} already exists on host {host}")

        hd = ni.host_data(host)
        if ip != LOCALHOST:
            hd.ips.add(ip)
        hd.ports.add(port)
        ni.clusters[name] = ClusterData(host=host, ip=ip, port=port)
        save_network_information(ni, path)


def remove_cluster(name: str, path: Optional[Path] = None) -> None:
    """Release the address and port of a cluster. Unknown clusters are ignored."""
    with PidLock():
        ni = load_network_information(path)
        cluster = ni.clusters.pop(name, None)
        if cluster is None:
            return

        hd = ni.hosts.get(cluster.host)
        if hd is not None:
            hd.ips.discard(cluster.ip)
            hd.ports.discard(cluster.port)
        save_network_information(ni, path)
    logger.debug("Released %s:%d for cluster %s", cluster.ip, cluster.port, name)


def release(host: str, ip: str = "", port: int = 0, path: Optional[Path] = None) -> None:
    """Give back an address and port reserved for a cluster that was never recorded.

    Anything that a recorded cluster on the host still uses is kept.
    """
    with PidLock():
        ni = load_network_information(path)
        hd = ni.hosts.get(host)
        if hd is None:
            return

        in_use = [cd for cd in ni.clusters.values() if cd.host == host]
        if ip and not any(cd.ip == ip for cd in in_use):
            hd.ips.discard(ip)
        if port and not any(cd.port == port for cd in in_use):
            hd.ports.discard(port)
        save_network_information(ni, path)
    logger.debug("Released %s:%d on %r", ip, port, host)
