"""Build RFC 6902 JSON patches for printing as kubectl commands."""
import json
from typing import Any, Dict, List, Sequence


class JsonPatches:
    """An ordered list of JSON patch operations."""

    def __init__(self):
        self.patches: List[Dict[str, Any]] = []

    def add_patch(self, op: str, path: Sequence[str], value: Any) -> 'JsonPatches':
        self.patches.append({
            "op": op,
            "path": "/" + "/".join(path),
            "value": value,
        })
        return self

    def replace(self, path: Sequence[str], value: Any) -> 'JsonPatches':
        return self.add_patch("replace", path, value)

    def add(self, path: Sequence[str], value: Any) -> 'JsonPatches':
        return self.add_patch("add", path, value)

    def merge(self, other: 'JsonPatches') -> 'JsonPatches':
        self.patches.extend(other.patches)
        return self

    def to_list(self) -> List[Dict[str, Any]]:
        return list(self.patches)

    def __len__(self) -> int:
        return len(self.patches)

    def __str__(self) -> str:
        # Escaped for use inside a single-quoted shell argument
        return json.dumps(self.patches, separators=(",", ":")).replace("'", "'\\''")
