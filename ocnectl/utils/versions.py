"""Kubernetes version helpers."""
from typing import Dict, Tuple

from .. import constants
from ..errors import ValidationError


def _parse(version: str) -> Tuple[int, ...]:
    version = version.strip().lstrip("v")
    # Drop build metadata and pre-release suffixes such as 1.30.3+1.el8
    for sep in ("+", "-"):
        version = version.split(sep, 1)[0]
    try:
        return tuple(int(p) for p in version.split("."))
    except ValueError as e:
        raise ValidationError(f"Invalid version {version!r}") from e


def major_minor(version: str) -> str:
    """Return the major.minor part of a version such as v1.30.3."""
    parts = _parse(version)
    if len(parts) < 2:
        raise ValidationError(f"Version {version!r} does not have a minor version")
    return f"{parts[0]}.{parts[1]}"


def compare_major_minor(a: str, b: str) -> int:
    """Compare two versions by major.minor. Returns -1, 0 or 1."""
    pa = _parse(major_minor(a))
    pb = _parse(major_minor(b))
    return (pa > pb) - (pa < pb)


def is_supported(version: str) -> bool:
    version = version.lstrip("v")
    return version in constants.KUBERNETES_VERSIONS or version in constants.KUBERNETES_MINOR_VERSIONS


def get_kubernetes_versions(version: str) -> Dict[str, str]:
    """Component tags that ship with a Kubernetes version.

    Raises:
        ValidationError: If the version is not supported
    """
    version = version.lstrip("v")
    full = constants.KUBERNETES_MINOR_VERSIONS.get(version, version)
    try:
        return dict(constants.KUBERNETES_VERSIONS[full])
    except KeyError:
        raise ValidationError(f"Kubernetes version {version} is not supported") from None


def compare_kubernetes_versions(a: str, b: str) -> int:
    """Compare two supported Kubernetes versions by major.minor."""
    for v in (a, b):
        if not is_supported(v) and not is_supported(major_minor(v)):
            raise ValidationError(f"Kubernetes version {v} is not supported")
    return compare_major_minor(a, b)
