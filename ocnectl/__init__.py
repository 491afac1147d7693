"""ocnectl - Kubernetes cluster lifecycle management for libvirt, OCI and existing clusters."""

__version__ = "0.1.0"
