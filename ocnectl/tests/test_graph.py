from ocnectl import constants
from ocnectl.modules.capi.graph import get_cluster_graph

from conftest import FakeResources

INFRA_API = "infrastructure.cluster.x-k8s.io/v1beta2"
CONTROL_PLANE_API = "controlplane.cluster.x-k8s.io/v1beta1"


def cluster_objects():
    cluster = {
        "apiVersion": constants.CAPI_API_VERSION, "kind": "Cluster",
        "metadata": {"name": "A", "namespace": "demo", "labels": {constants.CLUSTER_NAME_LABEL: "A"}},
        "spec": {
            "infrastructureRef": {"apiVersion": INFRA_API, "kind": "OCICluster", "name": "A"},
            "controlPlaneRef": {"apiVersion": CONTROL_PLANE_API, "kind": "KubeadmControlPlane", "name": "A-cp"},
        },
    }
    oci_cluster = {"apiVersion": INFRA_API, "kind": "OCICluster", "metadata": {"name": "A", "namespace": "demo"}}
    control_plane = {
        "apiVersion": CONTROL_PLANE_API, "kind": "KubeadmControlPlane",
        "metadata": {"name": "A-cp", "namespace": "demo"},
        "spec": {
            "version": "v1.30.3",
            "machineTemplate": {
                "infrastructureRef": {"apiVersion": INFRA_API, "kind": "OCIMachineTemplate", "name": "A-mt"},
            },
        },
    }
    machine_deployment = {
        "apiVersion": constants.CAPI_API_VERSION, "kind": "MachineDeployment",
        "metadata": {
            "name": "A-md", "namespace": "demo",
            "ownerReferences": [{"apiVersion": constants.CAPI_API_VERSION, "kind": "Cluster", "name": "A"}],
        },
        "spec": {"template": {"spec": {
            "version": "v1.30.3",
            "infrastructureRef": {"apiVersion": INFRA_API, "kind": "OCIMachineTemplate", "name": "A-mt"},
        }}},
    }
    machine_template = {
        "apiVersion": INFRA_API, "kind": "OCIMachineTemplate",
        "metadata": {"name": "A-mt", "namespace": "demo"},
        "spec": {"template": {"spec": {"imageId": "ocid1.image.oc1..old", "shape": "VM.Standard.E4.Flex"}}},
    }
    return [cluster, oci_cluster, control_plane, machine_deployment, machine_template]


def test_graph_shares_machine_templates():
    graph = get_cluster_graph(FakeResources(cluster_objects()), "demo", "A")

    assert sum(len(v) for v in graph.all.values()) == 5
    assert graph.control_plane.name == "A-cp"
    assert graph.infrastructure_cluster.kind == "OCICluster"
    assert list(graph.machine_deployments) == ["A-md"]

    mt_key = (INFRA_API, "OCIMachineTemplate")
    assert list(graph.machine_templates[mt_key]) == ["A-mt"]
    shared = graph.lookup(mt_key, "A-mt")
    assert graph.children_of(graph.control_plane)[0] is shared
    assert graph.children_of(graph.machine_deployments["A-md"])[0] is shared


def test_walk_visits_control_plane_first():
    graph = get_cluster_graph(FakeResources(cluster_objects()), "demo", "A")
    visits = []
    graph.walk_machine_templates(lambda parent, mt: visits.append((parent.kind, mt.name)))
    assert visits == [("KubeadmControlPlane", "A-mt"), ("MachineDeployment", "A-mt")]


def test_machine_deployments_of_other_clusters_are_ignored():
    objs = cluster_objects()
    other = dict(objs[3])
    other["metadata"] = {
        "name": "B-md", "namespace": "demo",
        "ownerReferences": [{"apiVersion": constants.CAPI_API_VERSION, "kind": "Cluster", "name": "B"}],
    }
    graph = get_cluster_graph(FakeResources(objs + [other]), "demo", "A")
    assert list(graph.machine_deployments) == ["A-md"]
