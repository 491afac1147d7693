from ... import constants


def architecture_from_shape(shape: str) -> str:
    """The CPU architecture of images that can boot on a compute shape."""
    if shape in constants.OCI_ARM_COMPATIBLE_SHAPES:
        return constants.ARCH_ARM64
    return constants.ARCH_AMD64


def is_arm_shape(shape: str) -> bool:
    """Whether a shape name belongs to the arm family or is a generic entry."""
    return any(marker in shape for marker in constants.OCI_ARM_SHAPE_MARKERS)
