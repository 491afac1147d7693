"""Cluster drivers, one per provider."""
from ... import constants
from ...config import ClusterConfig
from ...errors import ValidationError
from .base import ClusterDriver


def get_driver(cluster_config: ClusterConfig) -> ClusterDriver:
    """Create the driver for the provider named in a cluster configuration.

    Drivers are imported on use so that a provider's client libraries are
    only loaded when that provider is selected.
    """
    provider = cluster_config.provider
    if provider == constants.PROVIDER_LIBVIRT:
        from .libvirt.driver import LibvirtDriver
        return LibvirtDriver(cluster_config)
    if provider == constants.PROVIDER_OCI:
        from .oci.driver import OciDriver
        return OciDriver(cluster_config)
    if provider == constants.PROVIDER_NONE:
        from .none import NoneDriver
        return NoneDriver(cluster_config)
    raise ValidationError(f"Unknown provider {provider!r}, expected one of {', '.join(constants.PROVIDERS)}")
