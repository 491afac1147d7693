"""OCI SDK configuration and clients for a configuration file profile."""
import logging
import os
from dataclasses import dataclass

import oci

from ... import constants
from ...errors import ValidationError

logger = logging.getLogger("ocnectl.oci.client")

# The Cluster API provider refuses an empty passphrase
DEFAULT_PASSPHRASE = "fiddlesticks"


@dataclass
class OciConfig:
    """Credentials of one profile, with the private key read into memory."""
    name: str
    user: str
    fingerprint: str
    tenancy: str
    region: str
    key: str
    passphrase: str
    use_instance_principal: bool = False


def load_sdk_config(profile: str = constants.OCI_DEFAULT_PROFILE) -> dict:
    """The SDK configuration dictionary for a profile of ~/.oci/config."""
    try:
        config = oci.config.from_file(profile_name=profile or constants.OCI_DEFAULT_PROFILE)
    except (oci.exceptions.ConfigFileNotFound, oci.exceptions.ProfileNotFound) as e:
        raise ValidationError(f"Could not load OCI configuration profile {profile}: {e}") from e
    except oci.exceptions.InvalidConfig as e:
        raise ValidationError(f"Invalid OCI configuration profile {profile}: {e}") from e
    return config


def get_config(profile: str = constants.OCI_DEFAULT_PROFILE) -> OciConfig:
    config = load_sdk_config(profile)
    key = ""
    key_file = config.get("key_file")
    if key_file:
        with open(os.path.expanduser(key_file)) as f:
            key = f.read()
    return OciConfig(
        name=profile,
        user=config.get("user", ""),
        fingerprint=config.get("fingerprint", ""),
        tenancy=config.get("tenancy", ""),
        region=config.get("region", ""),
        key=key,
        passphrase=config.get("pass_phrase") or DEFAULT_PASSPHRASE,
    )


def compute_client(profile: str) -> oci.core.ComputeClient:
    return oci.core.ComputeClient(load_sdk_config(profile))


def identity_client(profile: str) -> oci.identity.IdentityClient:
    return oci.identity.IdentityClient(load_sdk_config(profile))


def object_storage_client(profile: str) -> oci.object_storage.ObjectStorageClient:
    return oci.object_storage.ObjectStorageClient(load_sdk_config(profile))


def work_request_client(profile: str) -> oci.work_requests.WorkRequestClient:
    return oci.work_requests.WorkRequestClient(load_sdk_config(profile))
