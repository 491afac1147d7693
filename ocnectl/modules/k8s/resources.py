"""Unstructured access to arbitrary Kubernetes resources.

Cluster API objects have no typed client, so they are handled as plain
dictionaries through the dynamic client. Nested fields are read and
written with lists of keys.
"""
import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError

from ...errors import NotFoundError, ValidationError
from .client import api_error, get_dynamic_client

logger = logging.getLogger("ocnectl.k8s.resources")

Gvk = Tuple[str, str]


def gvk_of(obj: Dict[str, Any]) -> Gvk:
    return obj.get("apiVersion", ""), obj.get("kind", "")


def name_of(obj: Dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("name", "")


def namespace_of(obj: Dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("namespace", "")


def nested_get(obj: Dict[str, Any], path: Sequence[str]) -> Tuple[Any, bool]:
    """Read a nested field. Returns (value, found)."""
    current: Any = obj
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return None, False
        current = current[key]
    return current, True


def nested_string(obj: Dict[str, Any], path: Sequence[str]) -> Tuple[str, bool]:
    """Read a nested string field.

    Raises:
        ValidationError: If the field exists but is not a string
    """
    value, found = nested_get(obj, path)
    if not found:
        return "", False
    if not isinstance(value, str):
        raise ValidationError(f"{'.'.join(path)} is {type(value).__name__}, not a string")
    return value, True


def nested_set(obj: Dict[str, Any], path: Sequence[str], value: Any) -> None:
    """Write a nested field, creating intermediate mappings."""
    current = obj
    for key in path[:-1]:
        nxt = current.get(key)
        if not isinstance(nxt, dict):
            nxt = {}
            current[key] = nxt
        current = nxt
    current[path[-1]] = value


def unmarshall_yaml(text: str) -> List[Dict[str, Any]]:
    """Parse a multi-document YAML string into resource dictionaries."""
    try:
        docs = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise ValidationError(f"Could not parse resources: {e}") from e
    return [d for d in docs if d]


class ResourceClient:
    """Thin wrapper over the dynamic client that speaks dictionaries."""

    def __init__(self, dynamic_client: DynamicClient):
        self.dynamic_client = dynamic_client

    @classmethod
    def from_kubeconfig(cls, path: str) -> 'ResourceClient':
        return cls(get_dynamic_client(path))

    def _api(self, api_version: str, kind: str):
        try:
            return self.dynamic_client.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            raise NotFoundError(f"Resource type {kind}.{api_version} is not served by the cluster") from e

    def _call(self, context: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (ApiException, DynamicApiError) as e:
            raise api_error(e, context) from e

    def get(self, api_version: str, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        api = self._api(api_version, kind)
        result = self._call(f"getting {kind} {namespace}/{name}", api.get, name=name, namespace=namespace or None)
        return result.to_dict()

    def list(self, api_version: str, kind: str, namespace: str = "",
             label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        api = self._api(api_version, kind)
        kwargs = {"namespace": namespace or None}
        if label_selector:
            kwargs["label_selector"] = label_selector
        result = self._call(f"listing {kind} in {namespace or 'all namespaces'}", api.get, **kwargs)
        return result.to_dict().get("items", [])

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        api_version, kind = gvk_of(obj)
        api = self._api(api_version, kind)
        namespace = namespace_of(obj)
        result = self._call(
            f"creating {kind} {namespace}/{name_of(obj)}", api.create, body=obj, namespace=namespace or None
        )
        return result.to_dict()

    def create_if_not_exist(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        api_version, kind = gvk_of(obj)
        try:
            return self.get(api_version, kind, namespace_of(obj), name_of(obj))
        except NotFoundError:
            logger.debug("Creating %s %s", kind, name_of(obj))
            return self.create(obj)

    def replace(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        api_version, kind = gvk_of(obj)
        api = self._api(api_version, kind)
        namespace = namespace_of(obj)
        result = self._call(
            f"updating {kind} {namespace}/{name_of(obj)}", api.replace, body=obj, namespace=namespace or None
        )
        return result.to_dict()

    def patch(self, api_version: str, kind: str, namespace: str, name: str, body: Any,
              content_type: str = "application/merge-patch+json") -> Dict[str, Any]:
        api = self._api(api_version, kind)
        result = self._call(
            f"patching {kind} {namespace}/{name}", api.patch,
            name=name, namespace=namespace or None, body=body, content_type=content_type,
        )
        return result.to_dict()

    def delete(self, api_version: str, kind: str, namespace: str, name: str) -> None:
        api = self._api(api_version, kind)
        self._call(f"deleting {kind} {namespace}/{name}", api.delete, name=name, namespace=namespace or None)

    def apply_resources(self, objs: Iterable[Dict[str, Any]]) -> None:
        """Create every resource that does not exist yet."""
        for obj in objs:
            self.create_if_not_exist(copy.deepcopy(obj))
