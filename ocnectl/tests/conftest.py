import datetime
from types import SimpleNamespace

import pytest
from kubernetes import client

from ocnectl import constants


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Point the ocnectl configuration directory at a temporary home."""
    monkeypatch.setattr("ocnectl.config.user_home", lambda: tmp_path)
    return tmp_path


def make_node(name, version="v1.30.3", control_plane=False, update_available=False, images=None):
    labels = {constants.CONTROL_PLANE_LABEL: ""} if control_plane else {}
    annotations = {constants.UPDATE_AVAILABLE_ANNOTATION: "true"} if update_available else {}
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name, labels=labels, annotations=annotations),
        status=client.V1NodeStatus(
            node_info=client.V1NodeSystemInfo(
                architecture="amd64", boot_id="", container_runtime_version="", kernel_version="",
                kube_proxy_version=version, kubelet_version=version, machine_id="", operating_system="linux",
                os_image="", system_uuid="",
            ),
            images=[client.V1ContainerImage(names=list(names)) for names in (images or [])],
        ),
    )


def make_image(image_id="ocid1.image.oc1..old", name="ock", version="1.30", arch="amd64",
               created=datetime.datetime(2024, 6, 1, tzinfo=datetime.timezone.utc)):
    return SimpleNamespace(
        id=image_id,
        display_name=name,
        compartment_id="ocid1.compartment.oc1..test",
        freeform_tags={constants.OCI_KUBERNETES_TAG: version, constants.OCI_ARCHITECTURE_TAG: arch},
        time_created=created,
    )


class FakeResources:
    """An in-memory stand-in for ResourceClient."""

    def __init__(self, objs=()):
        self.objs = {}
        self.created = []
        self.patched = []
        self.deleted = []
        for obj in objs:
            self._store(obj)

    @staticmethod
    def _key(api_version, kind, namespace, name):
        return api_version, kind, namespace, name

    def _store(self, obj):
        md = obj["metadata"]
        self.objs[self._key(obj["apiVersion"], obj["kind"], md.get("namespace", ""), md["name"])] = obj

    def get(self, api_version, kind, namespace, name):
        from ocnectl.errors import NotFoundError
        try:
            return self.objs[self._key(api_version, kind, namespace, name)]
        except KeyError:
            raise NotFoundError(f"{kind} {namespace}/{name} not found") from None

    def list(self, api_version, kind, namespace="", label_selector=""):
        return [o for (av, k, ns, _), o in self.objs.items()
                if av == api_version and k == kind and (not namespace or ns == namespace)]

    def create(self, obj):
        self.created.append(obj)
        self._store(obj)
        return obj

    def patch(self, api_version, kind, namespace, name, body, **kwargs):
        self.patched.append((kind, namespace, name, body))
        return self.get(api_version, kind, namespace, name)

    def delete(self, api_version, kind, namespace, name):
        from ocnectl.errors import NotFoundError
        try:
            del self.objs[self._key(api_version, kind, namespace, name)]
        except KeyError:
            raise NotFoundError(f"{kind} {namespace}/{name} not found") from None
        self.deleted.append((kind, namespace, name))
