"""Custom compute images tagged with a Kubernetes version and architecture."""
import logging
from typing import List, Optional, Tuple

import oci
from oci.core.models import (
    AddImageShapeCompatibilityEntryDetails,
    CreateComputeImageCapabilitySchemaDetails,
    CreateImageDetails,
    EnumStringImageCapabilitySchemaDescriptor,
    ImageSourceViaObjectStorageTupleDetails,
)

from ... import constants
from ...errors import FatalError, NotFoundError, TransientRemoteError
from .capabilities import FIRMWARE, LAUNCH_MODE
from .client import compute_client
from .objectstorage import get_namespace
from .shapes import is_arm_shape

logger = logging.getLogger("ocnectl.oci.images")


def service_error(err: oci.exceptions.ServiceError, context: str):
    message = f"{context}: {err.message}"
    if err.status == 404:
        return NotFoundError(message)
    if err.status == 429 or err.status >= 500:
        return TransientRemoteError(message)
    return FatalError(message)


def get_image_by_id(image_id: str, profile: str = constants.OCI_DEFAULT_PROFILE) -> oci.core.models.Image:
    try:
        return compute_client(profile).get_image(image_id).data
    except oci.exceptions.ServiceError as e:
        raise service_error(e, f"getting image {image_id}") from e


def get_image(name: str, version: str, arch: str, compartment_id: str,
              profile: str = constants.OCI_DEFAULT_PROFILE) -> Tuple[Optional[oci.core.models.Image], bool]:
    """The newest image with a display name and matching version and architecture tags.

    Returns:
        Tuple of the image, or None, and whether one was found
    """
    client = compute_client(profile)
    try:
        images = oci.pagination.list_call_get_all_results(
            client.list_images, compartment_id, display_name=name,
        ).data
    except oci.exceptions.ServiceError as e:
        raise service_error(e, f"listing images named {name}") from e

    latest = None
    for image in images:
        tags = image.freeform_tags or {}
        if tags.get(constants.OCI_KUBERNETES_TAG) != version:
            continue
        if tags.get(constants.OCI_ARCHITECTURE_TAG) != arch:
            continue
        if latest is None or latest.time_created < image.time_created:
            latest = image

    return latest, latest is not None


def import_image(name: str, version: str, arch: str, compartment_id: str, bucket: str, object_name: str,
                 profile: str = constants.OCI_DEFAULT_PROFILE) -> Tuple[str, str]:
    """Start importing an image from object storage.

    Returns:
        Tuple of the new image OCID and the work request tracking the import
    """
    namespace = get_namespace(profile)
    details = CreateImageDetails(
        compartment_id=compartment_id,
        display_name=name,
        freeform_tags={
            constants.OCI_ARCHITECTURE_TAG: arch,
            constants.OCI_KUBERNETES_TAG: version,
        },
        image_source_details=ImageSourceViaObjectStorageTupleDetails(
            namespace_name=namespace,
            bucket_name=bucket,
            object_name=object_name,
            operating_system=constants.OCI_OPERATING_SYSTEM,
            operating_system_version=constants.OCI_OPERATING_SYSTEM_VERSION,
        ),
    )
    try:
        resp = compute_client(profile).create_image(details)
    except oci.exceptions.ServiceError as e:
        raise service_error(e, f"importing image {name} from {bucket}/{object_name}") from e
    return resp.data.id, resp.headers["opc-work-request-id"]


def create_efi_image_schema(compartment_id: str, image_id: str, profile: str = constants.OCI_DEFAULT_PROFILE) -> None:
    """Declare that an image boots with UEFI firmware in paravirtualized mode."""
    client = compute_client(profile)
    schemas = client.list_compute_global_image_capability_schemas().data
    if len(schemas) != 1:
        raise FatalError("Unexpected number of global image capability schemas")

    details = CreateComputeImageCapabilitySchemaDetails(
        compartment_id=compartment_id,
        image_id=image_id,
        compute_global_image_capability_schema_version_name=schemas[0].current_version_name,
        schema_data={
            "Compute.Firmware": EnumStringImageCapabilitySchemaDescriptor(
                values=[FIRMWARE], default_value=FIRMWARE, source="IMAGE",
            ),
            "Compute.LaunchMode": EnumStringImageCapabilitySchemaDescriptor(
                values=[LAUNCH_MODE], default_value=LAUNCH_MODE, source="IMAGE",
            ),
        },
    )
    try:
        client.create_compute_image_capability_schema(details)
    except oci.exceptions.ServiceError as e:
        raise service_error(e, f"creating capability schema for image {image_id}") from e


def ensure_compatible_image_shapes(image_id: str, arch: str, profile: str = constants.OCI_DEFAULT_PROFILE) -> None:
    """Restrict an arm64 image to arm shapes. Other architectures are left alone."""
    if arch != constants.ARCH_ARM64:
        return

    client = compute_client(profile)
    entries = oci.pagination.list_call_get_all_results(
        client.list_image_shape_compatibility_entries, image_id,
    ).data

    to_remove: List[str] = [e.shape for e in entries if not is_arm_shape(e.shape)]
    for shape in to_remove:
        try:
            client.remove_image_shape_compatibility_entry(image_id, shape)
        except oci.exceptions.ServiceError as e:
            logger.warning("Unable to remove shape entry '%s' from image: %s", shape, e.message)

    for shape in constants.OCI_ARM_COMPATIBLE_SHAPES:
        try:
            client.add_image_shape_compatibility_entry(
                image_id, shape, add_image_shape_compatibility_entry_details=AddImageShapeCompatibilityEntryDetails(),
            )
        except oci.exceptions.ServiceError as e:
            raise service_error(e, f"adding shape {shape} to image {image_id}") from e
