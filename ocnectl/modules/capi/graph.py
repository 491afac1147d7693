"""A graph of the Cluster API resources that make up one cluster.

The graph starts at a Cluster and follows its infrastructure and control
plane references, then finds the MachineDeployments owned by the Cluster
and the machine templates they use. Every resource lives exactly once in
``ClusterGraph.all``; nodes refer to their children by (gvk, name) keys
into that pool, so a template shared by the control plane and a
MachineDeployment is a single node.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from ... import constants
from ...errors import ValidationError
from ..k8s.resources import Gvk, ResourceClient, gvk_of, name_of, namespace_of, nested_get

logger = logging.getLogger("ocnectl.capi.graph")

# Paths to well known fields of Cluster API resources
CLUSTER_INFRASTRUCTURE_REF = ("spec", "infrastructureRef")
CLUSTER_CONTROL_PLANE_REF = ("spec", "controlPlaneRef")
CONTROL_PLANE_MACHINE_TEMPLATE_INFRASTRUCTURE_REF = ("spec", "machineTemplate", "infrastructureRef")
MACHINE_DEPLOYMENT_INFRASTRUCTURE_REF = ("spec", "template", "spec", "infrastructureRef")
CONTROL_PLANE_VERSION = ("spec", "version")
MACHINE_DEPLOYMENT_VERSION = ("spec", "template", "spec", "version")
MACHINE_TEMPLATE_IMAGE_ID = ("spec", "template", "spec", "imageId")
MACHINE_TEMPLATE_SHAPE = ("spec", "template", "spec", "shape")
CONTROL_PLANE_JOIN_PATCHES = ("spec", "kubeadmConfigSpec", "joinConfiguration", "patches")
CONTROL_PLANE_JOIN_SKIP_PHASES = ("spec", "kubeadmConfigSpec", "joinConfiguration", "skipPhases")

KUBEADM_CONTROL_PLANE_KIND = "KubeadmControlPlane"
MACHINE_DEPLOYMENT_KIND = "MachineDeployment"


@dataclass
class GraphNode:
    """One resource in the graph and the keys of its children."""
    obj: Dict[str, Any]
    children: Dict[Gvk, Set[str]] = field(default_factory=dict)

    @property
    def gvk(self) -> Gvk:
        return gvk_of(self.obj)

    @property
    def name(self) -> str:
        return name_of(self.obj)

    @property
    def namespace(self) -> str:
        return namespace_of(self.obj)

    @property
    def kind(self) -> str:
        return self.obj.get("kind", "")

    def add_child(self, child: 'GraphNode') -> None:
        self.children.setdefault(child.gvk, set()).add(child.name)

    def get(self, path) -> Any:
        value, _ = nested_get(self.obj, path)
        return value


WalkCallback = Callable[[GraphNode, GraphNode], None]


class ClusterGraph:
    """The Cluster API resources of a single cluster."""

    def __init__(self):
        self.cluster: Optional[GraphNode] = None
        self.infrastructure_cluster: Optional[GraphNode] = None
        self.control_plane: Optional[GraphNode] = None
        self.machine_templates: Dict[Gvk, Dict[str, GraphNode]] = {}
        self.machine_deployments: Dict[str, GraphNode] = {}
        self.machine_sets: Dict[str, GraphNode] = {}
        self.machines: Dict[str, GraphNode] = {}
        self.all: Dict[Gvk, Dict[str, GraphNode]] = {}

    def add_to_all(self, node: GraphNode) -> GraphNode:
        """Insert a node into the pool, returning the canonical instance."""
        by_name = self.all.setdefault(node.gvk, {})
        existing = by_name.get(node.name)
        if existing is not None:
            return existing
        by_name[node.name] = node
        return node

    def lookup(self, gvk: Gvk, name: str) -> Optional[GraphNode]:
        return self.all.get(gvk, {}).get(name)

    def children_of(self, node: GraphNode) -> List[GraphNode]:
        ret = []
        for gvk, names in node.children.items():
            for name in sorted(names):
                child = self.lookup(gvk, name)
                if child is not None:
                    ret.append(child)
        return ret

    def _add_machine_template(self, node: GraphNode) -> None:
        self.machine_templates.setdefault(node.gvk, {})[node.name] = node

    def _walk_node(self, parent: GraphNode, cb: WalkCallback) -> None:
        for gvk, names in parent.children.items():
            templates = self.machine_templates.get(gvk)
            if templates is None:
                continue
            for name in sorted(names):
                mt = templates.get(name)
                if mt is not None:
                    cb(parent, mt)

    def walk_machine_templates(self, cb: WalkCallback) -> None:
        """Call ``cb(parent, machine_template)`` for every template in use.

        The control plane is visited first, then each MachineDeployment.
        """
        if self.control_plane is not None:
            self._walk_node(self.control_plane, cb)
        for name in sorted(self.machine_deployments):
            self._walk_node(self.machine_deployments[name], cb)


def ref_key(ref: Any) -> Dict[str, str]:
    """Validate an object reference and return its apiVersion, kind and name.

    Raises:
        ValidationError: If a field is missing
    """
    if not isinstance(ref, dict):
        raise ValidationError("Reference is not an object")
    for key, article in (("apiVersion", "an"), ("kind", "a"), ("name", "a")):
        if not ref.get(key):
            raise ValidationError(f"Reference does not contain {article} {key}")
    return {"apiVersion": ref["apiVersion"], "kind": ref["kind"], "name": ref["name"]}


def get_by_ref(client: ResourceClient, node: GraphNode, path) -> GraphNode:
    """Fetch the resource that a reference field points at.

    The namespace is inherited from the referring resource.
    """
    ref, found = nested_get(node.obj, path)
    if not found:
        raise ValidationError(f"{node.kind} {node.namespace}/{node.name} has no {'.'.join(path)}")
    ref = ref_key(ref)
    obj = client.get(ref["apiVersion"], ref["kind"], node.namespace, ref["name"])
    return GraphNode(obj=obj)


def get_by_owner(client: ResourceClient, owner: GraphNode, api_version: str, kind: str) -> List[GraphNode]:
    """List resources of a kind that name ``owner`` in their owner references."""
    ret = []
    for obj in client.list(api_version, kind, owner.namespace):
        if namespace_of(obj) != owner.namespace:
            continue
        for ref in obj.get("metadata", {}).get("ownerReferences", None) or []:
            if (ref.get("apiVersion") == owner.gvk[0] and ref.get("kind") == owner.kind
                    and ref.get("name") == owner.name):
                ret.append(GraphNode(obj=obj))
                break
    return ret


def _populate_control_plane(client: ResourceClient, graph: ClusterGraph, control_plane: GraphNode) -> None:
    if control_plane.kind != KUBEADM_CONTROL_PLANE_KIND:
        raise ValidationError("Only KubeadmControlPlanes are supported")

    mt = get_by_ref(client, control_plane, CONTROL_PLANE_MACHINE_TEMPLATE_INFRASTRUCTURE_REF)
    mt = graph.add_to_all(mt)
    control_plane.add_child(mt)
    graph._add_machine_template(mt)


def _populate_machine_deployments(client: ResourceClient, graph: ClusterGraph, cluster: GraphNode) -> None:
    for md in get_by_owner(client, cluster, constants.CAPI_API_VERSION, MACHINE_DEPLOYMENT_KIND):
        md = graph.add_to_all(md)
        cluster.add_child(md)
        graph.machine_deployments[md.name] = md

        mt = graph.add_to_all(get_by_ref(client, md, MACHINE_DEPLOYMENT_INFRASTRUCTURE_REF))
        md.add_child(mt)
        graph._add_machine_template(mt)


def get_cluster_graph(client: ResourceClient, namespace: str, name: str) -> ClusterGraph:
    """Build the graph for the Cluster ``namespace/name``."""
    graph = ClusterGraph()

    cluster = GraphNode(obj=client.get(constants.CAPI_API_VERSION, "Cluster", namespace, name))
    graph.cluster = graph.add_to_all(cluster)

    infra = graph.add_to_all(get_by_ref(client, cluster, CLUSTER_INFRASTRUCTURE_REF))
    cluster.add_child(infra)
    graph.infrastructure_cluster = infra

    control_plane = graph.add_to_all(get_by_ref(client, cluster, CLUSTER_CONTROL_PLANE_REF))
    cluster.add_child(control_plane)
    graph.control_plane = control_plane

    _populate_control_plane(client, graph, control_plane)
    _populate_machine_deployments(client, graph, cluster)

    logger.debug("Built graph for Cluster %s/%s with %d resources",
                 namespace, name, sum(len(v) for v in graph.all.values()))
    return graph
