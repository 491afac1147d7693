"""The ``image_metadata.json`` document packed next to an exported qcow2.

Custom image imports read launch options and shape compatibility from this
file. Images built here boot with UEFI firmware in paravirtualized mode.
"""
from typing import Any, Dict, List

from ... import constants

IMAGE_CAPS_FORMAT_VERSION = "34dd2cea-aff2-4f45-b8f6-1cb5290bfab2"
FIRMWARE = "UEFI_64"
LAUNCH_MODE = "PARAVIRTUALIZED"

AMD64_SHAPES = [
    "VM.DenseIO1.16", "VM.DenseIO1.4", "VM.DenseIO1.8", "VM.DenseIO2.16", "VM.DenseIO2.24", "VM.DenseIO2.8",
    "VM.GPU2.1", "VM.GPU3.1", "VM.GPU3.2", "VM.GPU3.4",
    "VM.Standard.B1.1", "VM.Standard.B1.16", "VM.Standard.B1.2", "VM.Standard.B1.4", "VM.Standard.B1.8",
    "VM.Standard.E2.1", "VM.Standard.E2.1.Micro", "VM.Standard.E2.2", "VM.Standard.E2.4", "VM.Standard.E2.8",
    "VM.Standard.E3.Flex", "VM.Standard.E4.Flex", "VM.Standard.E5.Flex", "VM.Standard.E6.Flex",
    "VM.Standard1.1", "VM.Standard1.16", "VM.Standard1.2", "VM.Standard1.2XL", "VM.Standard1.4XL",
    "VM.Standard2.1", "VM.Standard2.16", "VM.Standard2.2", "VM.Standard2.24", "VM.Standard2.4", "VM.Standard2.8",
    "VM.Standard2.Flex.Micro", "VM.Standard3.Flex", "VM.Standard4.Flex",
]
ARM64_SHAPES = ["VM.Standard.A1.Flex", "VM.Standard.A2.Flex", "a1-2c.160.1024"]


def _descriptor(value: str) -> Dict[str, Any]:
    return {"descriptorType": "enumstring", "values": [value], "defaultValue": value}


def new_image_capability(arch: str) -> Dict[str, Any]:
    shapes: List[str] = ARM64_SHAPES if arch == constants.ARCH_ARM64 else AMD64_SHAPES
    return {
        "version": 2,
        "externalLaunchOptions": {
            "firmware": FIRMWARE,
            "networkType": "VFIO",
            "bootVolumeType": "ISCSI",
            "remoteDataVolumeType": LAUNCH_MODE,
            "localDataVolumeType": "VFIO",
            "launchOptionsSource": "NATIVE",
            "pvAttachmentVersion": 1,
            "pvEncryptionInTransitEnabled": False,
            "consistentVolumeNamingEnabled": False,
        },
        "imageCapabilityData": {
            "capabilities": {
                "Compute.LaunchMode": _descriptor(LAUNCH_MODE),
                "Compute.Firmware": _descriptor(FIRMWARE),
            },
        },
        "imageCapsFormatVersion": IMAGE_CAPS_FORMAT_VERSION,
        "operatingSystem": constants.OCI_OPERATING_SYSTEM,
        "operatingSystemVersion": constants.OCI_OPERATING_SYSTEM_VERSION,
        "additionalMetadata": {
            "shapeCompatibilities": [{"internalShapeName": s} for s in shapes],
        },
    }
