import logging

from ... import constants
from ...errors import NotFoundError, ValidationError
from .client import identity_client, load_sdk_config

logger = logging.getLogger("ocnectl.oci.compartment")

COMPARTMENT_OCID_PREFIX = "ocid1.compartment"


def get_compartment_id(compartment: str, profile: str = constants.OCI_DEFAULT_PROFILE) -> str:
    """Resolve a compartment OCID or a slash separated path below the tenancy.

    Raises:
        NotFoundError: If a path component does not exist
    """
    if compartment.startswith(COMPARTMENT_OCID_PREFIX):
        return compartment

    elements = [e for e in compartment.split("/") if e]
    if not elements:
        raise ValidationError(f'"{compartment}" is not a valid compartment name')

    identity = identity_client(profile)
    current = load_sdk_config(profile)["tenancy"]
    for name in elements:
        children = identity.list_compartments(current).data
        match = next((c for c in children if c.name == name), None)
        if match is None:
            raise NotFoundError(f"could not find compartment named {name} in {compartment}")
        current = match.id
        logger.debug("Compartment %s is %s", name, current)

    return current
