from types import SimpleNamespace

import oci
import pytest

from ocnectl import constants
from ocnectl.errors import FatalError, TransientRemoteError
from ocnectl.modules.oci import images
from ocnectl.modules.oci.capabilities import FIRMWARE, LAUNCH_MODE


class FakeCompute:
    def __init__(self, shapes=(), schemas=1, fail_remove=(), fail_add=()):
        self.shapes = list(shapes)
        self.schemas = [SimpleNamespace(current_version_name=f"v{i}") for i in range(schemas)]
        self.fail_remove = set(fail_remove)
        self.fail_add = set(fail_add)
        self.removed = []
        self.added = []
        self.created_schemas = []

    def list_image_shape_compatibility_entries(self, image_id):
        return SimpleNamespace(data=[SimpleNamespace(shape=s) for s in self.shapes])

    def remove_image_shape_compatibility_entry(self, image_id, shape):
        if shape in self.fail_remove:
            raise oci.exceptions.ServiceError(409, "Conflict", {}, "in use")
        self.removed.append(shape)

    def add_image_shape_compatibility_entry(self, image_id, shape, add_image_shape_compatibility_entry_details=None):
        if shape in self.fail_add:
            raise oci.exceptions.ServiceError(503, "Unavailable", {}, "try later")
        self.added.append(shape)

    def list_compute_global_image_capability_schemas(self):
        return SimpleNamespace(data=self.schemas)

    def create_compute_image_capability_schema(self, details):
        self.created_schemas.append(details)


@pytest.fixture
def compute(monkeypatch):
    def use(fake):
        monkeypatch.setattr(images, "compute_client", lambda profile: fake)
        monkeypatch.setattr(images.oci.pagination, "list_call_get_all_results", lambda func, *args: func(*args))
        return fake
    return use


def test_arm_image_shapes_are_corrected(compute):
    fake = compute(FakeCompute(shapes=["VM.Standard.E4.Flex", "VM.Standard.A1.Flex", "VM.Standard3.Flex", "Generic"]))
    images.ensure_compatible_image_shapes("ocid1.image.oc1..arm", constants.ARCH_ARM64)

    assert fake.removed == ["VM.Standard.E4.Flex", "VM.Standard3.Flex"]
    assert fake.added == list(constants.OCI_ARM_COMPATIBLE_SHAPES)


def test_amd64_image_shapes_are_untouched(compute):
    fake = compute(FakeCompute(shapes=["VM.Standard.E4.Flex"]))
    images.ensure_compatible_image_shapes("ocid1.image.oc1..x86", constants.ARCH_AMD64)
    assert fake.removed == []
    assert fake.added == []


def test_shape_removal_failure_is_not_fatal(compute):
    fake = compute(FakeCompute(shapes=["VM.Standard.E4.Flex", "VM.Standard.E5.Flex"],
                               fail_remove=["VM.Standard.E4.Flex"]))
    images.ensure_compatible_image_shapes("ocid1.image.oc1..arm", constants.ARCH_ARM64)
    assert fake.removed == ["VM.Standard.E5.Flex"]
    assert fake.added == list(constants.OCI_ARM_COMPATIBLE_SHAPES)


def test_shape_add_failure(compute):
    compute(FakeCompute(fail_add=["VM.Standard.A2.Flex"]))
    with pytest.raises(TransientRemoteError, match="VM.Standard.A2.Flex"):
        images.ensure_compatible_image_shapes("ocid1.image.oc1..arm", constants.ARCH_ARM64)


def test_create_efi_image_schema(compute):
    fake = compute(FakeCompute())
    images.create_efi_image_schema("ocid1.compartment.oc1..c", "ocid1.image.oc1..x86")

    details = fake.created_schemas[0]
    assert details.compartment_id == "ocid1.compartment.oc1..c"
    assert details.image_id == "ocid1.image.oc1..x86"
    assert details.compute_global_image_capability_schema_version_name == "v0"
    assert details.schema_data["Compute.Firmware"].default_value == FIRMWARE
    assert details.schema_data["Compute.Firmware"].values == [FIRMWARE]
    assert details.schema_data["Compute.LaunchMode"].default_value == LAUNCH_MODE


def test_create_efi_image_schema_needs_one_global_schema(compute):
    compute(FakeCompute(schemas=2))
    with pytest.raises(FatalError):
        images.create_efi_image_schema("ocid1.compartment.oc1..c", "ocid1.image.oc1..x86")
