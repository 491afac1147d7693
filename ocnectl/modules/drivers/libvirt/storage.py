"""Storage pools and volumes for cluster nodes."""
import io
import logging
import os
import re
import sys
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import IO, Optional, Tuple

import libvirt

from .... import constants
from ....config import Node
from ....errors import FatalError, ValidationError
from ...containers import ensure_base_qcow2_image
from ...templates import render
from .connection import is_error

logger = logging.getLogger("ocnectl.drivers.libvirt.storage")

POOL_MODE = "0750"

_CAPACITY = re.compile(r"^(\d+)([A-Za-z]*)$")


def parse_capacity(quantity: str) -> Tuple[str, int]:
    """Split a Kubernetes style quantity into a libvirt unit and a size.

    ``20Gi`` becomes ``("GiB", 20)`` and a bare number is in bytes.
    """
    match = _CAPACITY.match(quantity.strip())
    if not match:
        raise ValidationError(f"{quantity!r} is not a valid capacity")
    size, unit = match.groups()
    return f"{unit}B", int(size)


def refresh_storage_pools(conn: libvirt.virConnect) -> None:
    for pool in conn.listAllStoragePools(libvirt.VIR_CONNECT_LIST_STORAGE_POOLS_ACTIVE):
        pool.refresh(0)


def get_default_pool_path(uri: str, local: bool, platform: str = sys.platform,
                          home: Optional[str] = None) -> str:
    """Pool path for a connection. Local macOS sessions keep images under the home directory."""
    if "session" in uri and local and platform == "darwin":
        home = home or os.path.expanduser("~")
        return os.path.join(home, constants.USER_STORAGE_POOL_PATH)
    return constants.STORAGE_POOL_PATH


def get_storage_pool_path(pool: libvirt.virStoragePool) -> str:
    return ET.fromstring(pool.XMLDesc(0)).findtext("target/path", default="")


def start_storage_pool(conn: libvirt.virConnect, pool: libvirt.virStoragePool) -> None:
    state = pool.info()[0]
    if state == libvirt.VIR_STORAGE_POOL_RUNNING:
        return

    logger.debug("Starting storage pool %s", pool.name())
    pool.create(0)
    pool.setAutostart(1)
    refresh_storage_pools(conn)


def find_storage_pool(conn: libvirt.virConnect, name: str, path: str) -> Optional[libvirt.virStoragePool]:
    """Find a pool by name, or failing that an active pool at a path.

    A pool found by name is started if it is not running.
    """
    name = name or constants.STORAGE_POOL
    try:
        pool = conn.storagePoolLookupByName(name)
        start_storage_pool(conn, pool)
        return pool
    except libvirt.libvirtError as e:
        if not is_error(e, libvirt.VIR_ERR_NO_STORAGE_POOL):
            raise

    for pool in conn.listAllStoragePools(libvirt.VIR_CONNECT_LIST_STORAGE_POOLS_ACTIVE):
        if get_storage_pool_path(pool) == path:
            return pool
    return None


def create_storage_pool(conn: libvirt.virConnect, name: str, path: str) -> libvirt.virStoragePool:
    logger.debug("Creating storage pool %s at %s", name, path)
    pool = conn.storagePoolDefineXML(render("libvirt/pool.xml.j2", name=name, path=path, mode=POOL_MODE), 0)
    start_storage_pool(conn, pool)
    return pool


def find_or_create_storage_pool(conn: libvirt.virConnect, uri: str, local: bool,
                                name: str) -> libvirt.virStoragePool:
    path = get_default_pool_path(uri, local)
    if local:
        os.makedirs(path, mode=0o750, exist_ok=True)

    pool = find_storage_pool(conn, name, path)
    if pool is not None:
        return pool
    return create_storage_pool(conn, constants.STORAGE_POOL, path)


def lookup_volume(pool: libvirt.virStoragePool, name: str) -> Optional[libvirt.virStorageVol]:
    try:
        return pool.storageVolLookupByName(name)
    except libvirt.libvirtError as e:
        if is_error(e, libvirt.VIR_ERR_NO_STORAGE_VOL):
            return None
        raise


def delete_volume(pool: libvirt.virStoragePool, name: str) -> None:
    vol = lookup_volume(pool, name)
    if vol is None:
        return
    vol.delete(libvirt.VIR_STORAGE_VOL_DELETE_NORMAL)


def get_volume_path(pool: libvirt.virStoragePool, name: str) -> str:
    vol = pool.storageVolLookupByName(name)
    return ET.fromstring(vol.XMLDesc(0)).findtext("target/path", default="")


def _send(stream: libvirt.virStream, nbytes: int, reader: IO[bytes]) -> bytes:
    return reader.read(nbytes)


def transfer_to_pool(conn: libvirt.virConnect, reader: IO[bytes], pool: libvirt.virStoragePool, name: str,
                     volume_format: str, reupload: bool, size: int = 0) -> None:
    """Replace a volume with the contents of a stream.

    Args:
        conn: libvirt connection
        reader: Volume contents
        pool: Pool to create the volume in
        name: Volume name
        volume_format: Volume format, such as qcow2 or raw
        reupload: Upload again if the volume appears while it is being replaced
        size: Size of the contents in bytes, or zero if unknown
    """
    delete_volume(pool, name)

    xml = render("libvirt/volume_nobacking.xml.j2", name=name, size=size, format=volume_format)
    try:
        vol = pool.createXML(xml, 0)
    except libvirt.libvirtError as e:
        if not is_error(e, libvirt.VIR_ERR_STORAGE_VOL_EXIST):
            raise
        if not reupload:
            return
        vol = pool.storageVolLookupByName(name)

    stream = conn.newStream(0)
    try:
        vol.upload(stream, 0, size, 0)
        stream.sendAll(_send, reader)
        stream.finish()
    except libvirt.libvirtError as e:
        stream.abort()
        raise FatalError(f"Failed to upload volume {name}: {e}") from e


def does_volume_exist(pool: libvirt.virStoragePool, name: str) -> bool:
    return lookup_volume(pool, name) is not None


def transfer_base_image(conn: libvirt.virConnect, image: str, pool: libvirt.virStoragePool,
                        name: str, arch: str) -> None:
    """Copy the boot disk out of a container image into a pool."""
    logger.info(f"📦 Transferring boot image {image} to volume {name}")
    reader, closer = ensure_base_qcow2_image(image, arch)
    try:
        transfer_to_pool(conn, reader, pool, name, "qcow2", False)
    finally:
        closer()


def create_volume_from_pool(node: Node, pool: libvirt.virStoragePool, name: str,
                            boot_volume_name: str) -> libvirt.virStorageVol:
    """Create a node disk backed by the boot volume."""
    pool_path = get_storage_pool_path(pool)
    unit, size = parse_capacity(node.storage)
    xml = render(
        "libvirt/volume.xml.j2",
        name=name,
        unit=unit,
        size=size,
        backing_path=str(Path(pool_path) / boot_volume_name),
    )
    return pool.createXML(xml, 0)


def upload_ignition(conn: libvirt.virConnect, ignition: bytes, pool: libvirt.virStoragePool, name: str) -> None:
    transfer_to_pool(conn, io.BytesIO(ignition), pool, name, "raw", True, len(ignition))
