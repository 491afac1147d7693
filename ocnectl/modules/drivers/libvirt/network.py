"""Bridged libvirt networks."""
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Optional, Tuple

import libvirt

from ....errors import NotFoundError, ValidationError
from .accounting import reserve_ip
from .connection import is_error


def does_network_exist(conn: libvirt.virConnect, name: str) -> Tuple[bool, bool]:
    """Whether a network exists, and whether the host has any networks at all."""
    try:
        conn.networkLookupByName(name)
        return True, True
    except libvirt.libvirtError as e:
        if not is_error(e, libvirt.VIR_ERR_NO_NETWORK):
            raise
    return False, len(conn.listNetworks()) > 0


def get_network_address(conn: libvirt.virConnect, name: str) -> Tuple[str, str]:
    """The gateway address and netmask of a libvirt network."""
    try:
        net = conn.networkLookupByName(name)
    except libvirt.libvirtError as e:
        if is_error(e, libvirt.VIR_ERR_NO_NETWORK):
            raise NotFoundError(f"Network {name} does not exist") from e
        raise

    ip = ET.fromstring(net.XMLDesc(0)).find("ip")
    if ip is None or not ip.get("address") or not ip.get("netmask"):
        raise ValidationError(f"Network {name} does not have an IPv4 address and netmask")
    return ip.get("address"), ip.get("netmask")


def allocate_ip(conn: libvirt.virConnect, host: str, network_name: str, path: Optional[Path] = None) -> str:
    """Reserve an API server address on a host's bridged network."""
    address, netmask = get_network_address(conn, network_name)
    return reserve_ip(host, address, netmask, path)
