"""Container image references and read access to registries.

Only what node image handling needs is implemented: resolving a manifest
for an architecture, reading an image's creation time, and pulling the
first layer of a boot image to get at the qcow2 inside it.
"""
import datetime
import json
import logging
import os
import re
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable, Dict, Optional, Tuple

import requests

from .. import constants
from ..config import user_config_dir
from ..errors import FatalError, NotFoundError, TransientRemoteError, ValidationError
from ..utils.versions import is_supported

logger = logging.getLogger("ocnectl.containers")

DOCKER_TRANSPORT = "docker://"
DEFAULT_REGISTRY = "docker.io"
DOCKER_HUB_API = "registry-1.docker.io"
BOOT_QCOW2_PATH = "disk/boot.qcow2"
REQUEST_TIMEOUT = 60
CHUNK_SIZE = 1024 * 1024

MANIFEST_LIST_TYPES = (
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
)
MANIFEST_TYPES = (
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
)

_AUTH_PARAM = re.compile(r'(\w+)="([^"]*)"')


@dataclass
class ImageReference:
    registry: str
    repository: str
    tag: str = ""
    digest: str = ""

    @property
    def base(self) -> str:
        return f"{self.registry}/{self.repository}"

    @property
    def reference(self) -> str:
        """The tag or digest to ask the registry for."""
        return self.digest or self.tag or "latest"

    def __str__(self) -> str:
        out = self.base
        if self.tag:
            out = f"{out}:{self.tag}"
        if self.digest:
            out = f"{out}@{self.digest}"
        return out


def parse_image_reference(image: str) -> ImageReference:
    """Parse ``[docker://]registry/repository[:tag][@digest]``.

    Raises:
        ValidationError: If the reference is empty or malformed
    """
    ref = image.strip()
    if ref.startswith(DOCKER_TRANSPORT):
        ref = ref[len(DOCKER_TRANSPORT):]
    if not ref:
        raise ValidationError(f"{image!r} is not a valid image reference")

    digest = ""
    if "@" in ref:
        ref, digest = ref.split("@", 1)

    tag = ""
    last = ref.rsplit("/", 1)[-1]
    if ":" in last:
        ref, tag = ref.rsplit(":", 1)

    parts = ref.split("/")
    first = parts[0]
    if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
        registry, repository = first, "/".join(parts[1:])
    else:
        registry, repository = DEFAULT_REGISTRY, ref
        if len(parts) == 1:
            repository = f"library/{ref}"

    if not repository:
        raise ValidationError(f"{image!r} is not a valid image reference")
    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)


def split_image(image: str) -> Tuple[str, str]:
    """Split an image into its name and tag. The tag is empty when absent."""
    ref = parse_image_reference(image)
    return ref.base, ref.tag


def ensure_boot_image_version(version: str, image: str) -> str:
    """Tag a boot image with a Kubernetes version unless it carries a custom tag or digest.

    Tags that are themselves Kubernetes versions are replaced, which lets a
    cached configuration move to a new version.
    """
    ref = parse_image_reference(image)
    result = image
    if ref.tag and is_supported(ref.tag):
        result = image.rsplit(":", 1)[0]
        ref.tag = ""
    if not ref.tag and not ref.digest:
        return f"{result}:{version.lstrip('v')}"
    return result


def image_to_directory(image: str) -> str:
    return re.sub(r"[/:@]", "_", image)


def parse_created(value: str) -> datetime.datetime:
    """Parse an RFC 3339 timestamp, including nanosecond precision."""
    match = re.match(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})?$", value.strip())
    if not match:
        raise ValidationError(f"Invalid timestamp {value!r}")
    seconds, fraction, zone = match.groups()
    fraction = (fraction or ".0")[:7]
    zone = "+00:00" if zone in (None, "Z") else zone
    return datetime.datetime.fromisoformat(f"{seconds}{fraction}{zone}")


class RegistryClient:
    """Minimal client for the OCI distribution API with anonymous bearer tokens."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()
        self._tokens: Dict[str, str] = {}

    @staticmethod
    def _api_host(registry: str) -> str:
        return DOCKER_HUB_API if registry == DEFAULT_REGISTRY else registry

    def _token(self, challenge: str, repository: str) -> str:
        params = dict(_AUTH_PARAM.findall(challenge))
        realm = params.pop("realm", "")
        if not realm:
            raise FatalError(f"Registry authentication challenge has no realm: {challenge}")
        params.setdefault("scope", f"repository:{repository}:pull")
        resp = self.session.get(realm, params=params, timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
        body = resp.json()
        return body.get("token") or body.get("access_token", "")

    def _get(self, ref: ImageReference, path: str, headers: Optional[Dict[str, str]] = None,
             stream: bool = False) -> requests.Response:
        url = f"https://{self._api_host(ref.registry)}/v2/{ref.repository}/{path}"
        headers = dict(headers or {})
        key = ref.base
        if key in self._tokens:
            headers["Authorization"] = f"Bearer {self._tokens[key]}"

        try:
            resp = self.session.get(url, headers=headers, stream=stream, timeout=REQUEST_TIMEOUT)
            if resp.status_code == 401 and resp.headers.get("WWW-Authenticate", "").startswith("Bearer"):
                self._tokens[key] = self._token(resp.headers["WWW-Authenticate"], ref.repository)
                headers["Authorization"] = f"Bearer {self._tokens[key]}"
                resp = self.session.get(url, headers=headers, stream=stream, timeout=REQUEST_TIMEOUT)
        except requests.ConnectionError as e:
            raise TransientRemoteError(f"Could not reach registry {ref.registry}: {e}") from e

        if resp.status_code == 404:
            raise NotFoundError(f"{path} not found for {ref}")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientRemoteError(f"Registry {ref.registry} returned {resp.status_code} for {ref}")
        if not resp.ok:
            raise FatalError(f"Registry {ref.registry} returned {resp.status_code} for {ref}")
        return resp

    def get_manifest(self, image: str, arch: str) -> Dict[str, Any]:
        """The image manifest, resolving manifest lists by architecture."""
        ref = parse_image_reference(image)
        accept = ", ".join(MANIFEST_LIST_TYPES + MANIFEST_TYPES)
        manifest = self._get(ref, f"manifests/{ref.reference}", {"Accept": accept}).json()

        media_type = manifest.get("mediaType", "")
        if media_type in MANIFEST_LIST_TYPES or "manifests" in manifest:
            for entry in manifest.get("manifests", []):
                platform = entry.get("platform", {})
                if platform.get("architecture") == arch and platform.get("os", "linux") == "linux":
                    ref.digest = entry["digest"]
                    return self._get(ref, f"manifests/{entry['digest']}", {"Accept": accept}).json()
            raise NotFoundError(f"Image {image} does not have a manifest for {arch}")
        return manifest

    def get_config(self, image: str, arch: str) -> Dict[str, Any]:
        ref = parse_image_reference(image)
        manifest = self.get_manifest(image, arch)
        digest = manifest["config"]["digest"]
        return json.loads(self._get(ref, f"blobs/{digest}").content)

    def download_blob(self, image: str, digest: str, dest: Path,
                      progress: Optional[Callable[[int], None]] = None) -> None:
        ref = parse_image_reference(image)
        resp = self._get(ref, f"blobs/{digest}", stream=True)
        partial = dest.with_suffix(dest.suffix + ".partial")
        with open(partial, "wb") as f:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                f.write(chunk)
                if progress:
                    progress(len(chunk))
        os.replace(partial, dest)


def image_created(image: str, arch: str, client: Optional[RegistryClient] = None) -> datetime.datetime:
    """When an image was built, from the ``created`` field of its config."""
    config = (client or RegistryClient()).get_config(image, arch)
    created = config.get("created")
    if not created:
        raise NotFoundError(f"Image {image} does not have a creation time")
    return parse_created(created)


def image_cache_dir() -> Path:
    return user_config_dir() / constants.USER_IMAGE_CACHE_DIR


def ensure_base_qcow2_image(image: str, arch: str,
                            client: Optional[RegistryClient] = None) -> Tuple[IO[bytes], Callable[[], None]]:
    """Open the boot qcow2 stored in the first layer of a boot image.

    The layer is cached under ~/.ocne/images by digest, so repeated calls
    only read from disk.

    Returns:
        Tuple of a reader positioned at the start of the qcow2 and a function
        that closes it
    """
    client = client or RegistryClient()
    manifest = client.get_manifest(image, arch)
    layers = manifest.get("layers") or []
    if not layers:
        raise NotFoundError(f"Image {image} does not have any layers")
    digest = layers[0]["digest"]

    cache = image_cache_dir() / image_to_directory(image)
    cache.mkdir(parents=True, exist_ok=True)
    layer_path = cache / digest.replace(":", "_")
    if not layer_path.exists():
        logger.info("📥 Pulling %s", image)
        client.download_blob(image, digest, layer_path)

    archive = tarfile.open(layer_path, "r|*")
    try:
        for member in archive:
            if member.name.lstrip("./") == BOOT_QCOW2_PATH:
                reader = archive.extractfile(member)
                if reader is None:
                    break
                return reader, archive.close
    except tarfile.TarError as e:
        archive.close()
        raise FatalError(f"Could not read layer {digest} of {image}: {e}") from e
    archive.close()
    raise NotFoundError(f"{BOOT_QCOW2_PATH} not found in {image}")


OSTREE_TRANSPORTS = ("ostree-unverified-registry", "ostree-unverified-image", "ostree-image-signed",
                     "ostree-remote-image")


def parse_ostree_reference(image: str) -> Tuple[str, str, str]:
    """Split an ostree container reference into transport, registry and tag.

    Raises:
        ValidationError: If the reference has no recognized transport
    """
    fields = image.split(":")
    if len(fields) < 2 or fields[0] not in OSTREE_TRANSPORTS:
        raise ValidationError(f"{image} is not a valid ostree image reference")

    transport, rest = fields[0], ":".join(fields[1:])
    if transport in ("ostree-unverified-image", "ostree-image-signed"):
        if rest.startswith("registry:"):
            transport, rest = f"{transport}:registry", rest[len("registry:"):]
        elif rest.startswith(DOCKER_TRANSPORT):
            transport, rest = f"{transport}:{DOCKER_TRANSPORT}", rest[len(DOCKER_TRANSPORT):]
        else:
            raise ValidationError(f"{image} is not a valid ostree image reference")
    elif transport == "ostree-remote-image":
        remote, _, rest = rest.partition(":")
        if rest.startswith("registry:"):
            transport, rest = f"{transport}:{remote}:registry", rest[len("registry:"):]
        elif rest.startswith(DOCKER_TRANSPORT):
            transport, rest = f"{transport}:{remote}:{DOCKER_TRANSPORT}", rest[len(DOCKER_TRANSPORT):]
        else:
            raise ValidationError(f"{image} is not a valid ostree image reference")

    ref = parse_image_reference(rest)
    return transport, ref.base, ref.tag


def make_ostree_reference(image: str) -> str:
    """Add the unverified registry transport to a plain container image reference."""
    try:
        parse_ostree_reference(image)
        return image
    except ValidationError:
        return f"{constants.OS_TRANSPORT}:{image}"
