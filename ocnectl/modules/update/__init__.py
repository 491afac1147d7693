"""Rolling ostree updates of cluster nodes."""
from .update import UpdateOptions, update_node

__all__ = ["UpdateOptions", "update_node"]
