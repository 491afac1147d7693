"""Node virtual machines."""
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

import libvirt

from ....config import Node
from ...templates import render
from .connection import is_error
from .names import is_domain_from_cluster
from .storage import parse_capacity

logger = logging.getLogger("ocnectl.drivers.libvirt.domains")

NETWORK_TYPE_BRIDGE = "network"
NETWORK_TYPE_USER = "user"


@dataclass
class PortForward:
    from_port: int
    to_port: int
    listen: str


@dataclass
class DomainNetwork:
    type: str
    bus: str
    slot: str
    network: str = ""
    subnet: str = ""
    port_forwards: List[PortForward] = field(default_factory=list)


@dataclass
class Domain:
    name: str
    volume_pool: str
    volume: str
    ignition_path: str
    hypervisor: str
    networks: List[DomainNetwork]
    description: str = "An instance that is spun up dynamically"


def render_domain(domain: Domain, node: Node, cpu_arch: str) -> str:
    memory_unit, memory = parse_capacity(node.memory)
    return render(
        "libvirt/domain.xml.j2",
        domain=domain,
        memory=memory,
        memory_unit=memory_unit,
        cpus=node.cpus,
        cpu_arch=cpu_arch,
    )


def create_domain(conn: libvirt.virConnect, domain: Domain, node: Node, cpu_arch: str) -> None:
    """Define a domain and start it."""
    logger.debug("Creating domain %s", domain.name)
    dom = conn.defineXML(render_domain(domain, node, cpu_arch))
    dom.create()


def set_domain_running_if_exists(conn: libvirt.virConnect, name: str) -> Tuple[bool, bool]:
    """Start a domain if it exists and is not running.

    Returns:
        Tuple of whether the domain is running now and whether it was
        running already
    """
    try:
        dom = conn.lookupByName(name)
    except libvirt.libvirtError as e:
        if is_error(e, libvirt.VIR_ERR_NO_DOMAIN):
            return False, False
        raise

    state, _ = dom.state()
    if state == libvirt.VIR_DOMAIN_RUNNING:
        return True, True

    dom.create()
    logger.debug("Started domain %s", name)
    return True, False


def remove_domain(conn: libvirt.virConnect, name: str) -> None:
    """Stop and undefine a domain. Missing domains are ignored."""
    try:
        dom = conn.lookupByName(name)
    except libvirt.libvirtError as e:
        if is_error(e, libvirt.VIR_ERR_NO_DOMAIN):
            return
        raise

    try:
        dom.destroy()
    except libvirt.libvirtError as e:
        if not is_error(e, libvirt.VIR_ERR_OPERATION_INVALID):
            raise
    dom.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)


def list_cluster_domains(conn: libvirt.virConnect, cluster_name: str) -> List[str]:
    flags = libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE | libvirt.VIR_CONNECT_LIST_DOMAINS_INACTIVE
    return sorted(d.name() for d in conn.listAllDomains(flags) if is_domain_from_cluster(d.name(), cluster_name))
