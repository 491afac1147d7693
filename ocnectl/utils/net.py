"""Address resolution helpers."""
import ipaddress
import socket
from typing import Set, Tuple
from urllib.parse import urlparse

from ..errors import ValidationError


def local_addresses() -> Set[str]:
    """Addresses assigned to this host, as best as can be determined."""
    addresses = {"127.0.0.1", "::1"}
    hostname = socket.gethostname()
    try:
        for info in socket.getaddrinfo(hostname, None):
            addresses.add(info[4][0])
    except socket.gaierror:
        pass
    return addresses


def resolve_uri_to_ip(uri: str) -> Tuple[str, bool]:
    """Resolve the host of a URI.

    Returns:
        The resolved address and whether it belongs to this host. A URI
        without a host refers to the local system.
    """
    host = urlparse(uri).hostname or ""
    if not host:
        return "127.0.0.1", True

    try:
        infos = socket.getaddrinfo(host, None)
    except socket.gaierror as e:
        raise ValidationError(f"Could not resolve host {host}: {e}") from e

    resolved = [info[4][0] for info in infos]
    local = local_addresses()
    for address in resolved:
        if address in local or ipaddress.ip_address(address).is_loopback:
            return address, True
    return resolved[0], False


def get_uri_address(host: str) -> str:
    """Format an address for use in a URL, bracketing IPv6 literals."""
    try:
        if ipaddress.ip_address(host).version == 6:
            return f"[{host}]"
    except ValueError:
        pass
    return host
