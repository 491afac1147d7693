"""How nodes, their volumes and their network interfaces are named."""
from typing import Tuple

# PCI placement of the network devices. The guest derives predictable
# interface names from them.
BRIDGE_BUS = 1
BRIDGE_SLOT = 0
USER_BUS = 0
USER_SLOT = 2
NIC_PATTERN = "enp{bus}s{slot}"


def nic_name(bus: int, slot: int) -> str:
    return NIC_PATTERN.format(bus=bus, slot=slot)


def bridge_nic() -> str:
    return nic_name(BRIDGE_BUS, BRIDGE_SLOT)


def user_nic() -> str:
    return nic_name(USER_BUS, USER_SLOT)


def domain_name(cluster_name: str, role: str, num: int) -> str:
    return f"{cluster_name}-{role}-{num}"


def resource_names(name: str) -> Tuple[str, str]:
    """Names of the boot disk and ignition volumes of a domain."""
    return f"{name}.qcow2", f"{name}-init.ign"


def is_domain_from_cluster(name: str, cluster_name: str) -> bool:
    """Whether a domain name was built by ``domain_name`` for a cluster."""
    parts = name.split("-")
    if len(parts) < 3 or not parts[-1].isdigit():
        return False

    if parts[-2] == "worker":
        prefix = parts[:-2]
    elif len(parts) > 3 and parts[-2] == "plane" and parts[-3] == "control":
        prefix = parts[:-3]
    else:
        return False
    return "-".join(prefix) == cluster_name


def highest_ordinal(names, cluster_name: str, role: str) -> int:
    """The largest node number in use for a role, or zero."""
    prefix = f"{cluster_name}-{role}-"
    ordinals = [int(n[len(prefix):]) for n in names if n.startswith(prefix) and n[len(prefix):].isdigit()]
    return max(ordinals, default=0)
