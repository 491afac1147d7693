import logging
from typing import BinaryIO, Dict, Optional

from oci.object_storage import UploadManager

from ... import constants
from .client import object_storage_client

logger = logging.getLogger("ocnectl.oci.objectstorage")


def get_namespace(profile: str = constants.OCI_DEFAULT_PROFILE) -> str:
    return object_storage_client(profile).get_namespace().data


def upload_object(bucket: str, name: str, stream: BinaryIO, profile: str = constants.OCI_DEFAULT_PROFILE,
                  metadata: Optional[Dict[str, str]] = None) -> None:
    """Upload a stream to a bucket, in parts when it is large."""
    client = object_storage_client(profile)
    namespace = client.get_namespace().data
    logger.debug("Uploading %s to %s/%s", name, namespace, bucket)
    manager = UploadManager(client, allow_parallel_uploads=True)
    manager.upload_stream(namespace, bucket, name, stream, metadata=metadata or {})
