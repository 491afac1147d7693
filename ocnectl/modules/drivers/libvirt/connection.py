"""Connecting to libvirt and interpreting its errors."""
import logging
import os
import sys
import xml.etree.ElementTree as ET
from typing import Optional, Tuple
from urllib.parse import urlparse

import libvirt

from .... import constants
from ....errors import FatalError, NotFoundError
from ....utils.net import resolve_uri_to_ip

logger = logging.getLogger("ocnectl.drivers.libvirt")


def is_error(err: Optional[Exception], code: int) -> bool:
    """Whether an exception is a libvirt error with the given error code."""
    return isinstance(err, libvirt.libvirtError) and err.get_error_code() == code


def resolve_session_uri(uri: str, platform: str = sys.platform,
                        home: Optional[str] = None) -> Tuple[str, str, bool]:
    """Normalize a session URI and find the host it points at.

    A bare host name is shorthand for the system session on that host over
    ssh. Local sessions on macOS talk to the user socket under the home
    directory.

    Returns:
        Tuple of the URI to connect to, the address of its host, and whether
        that host is this system
    """
    parsed = urlparse(uri)
    host_ip, local = resolve_uri_to_ip(uri)

    if not parsed.scheme and not parsed.username and not parsed.netloc and parsed.path:
        uri = f"qemu+ssh://{parsed.path}/system"
        host_ip, local = resolve_uri_to_ip(uri)
    elif local and platform == "darwin":
        home = home or os.path.expanduser("~")
        uri = f"{uri}?socket={os.path.join(home, constants.DARWIN_LIBVIRT_SOCKET_PATH)}"

    return uri, host_ip, local


def connect(uri: str) -> libvirt.virConnect:
    logger.debug("Connecting to %s", uri)
    try:
        return libvirt.open(uri)
    except libvirt.libvirtError as e:
        raise FatalError(f"Could not connect to libvirt at {uri}: {e}") from e


def get_cpu_architecture(conn: libvirt.virConnect) -> str:
    """The CPU architecture of the hypervisor host, such as x86_64 or aarch64."""
    root = ET.fromstring(conn.getCapabilities())
    arch = root.findtext("host/cpu/arch", default="")
    if not arch:
        raise NotFoundError("libvirt capabilities do not report a host CPU architecture")
    return arch
