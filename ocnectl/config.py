"""Configuration management for ocnectl.

Configuration comes from two places:
1. Process settings read from the environment (``Config``)
2. Cluster configuration files, layered over the user defaults document
   (``ClusterConfig.load``)

Values set in a cluster file win over the defaults document, and nested
mappings are merged key by key.
"""
import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from . import constants
from .errors import ValidationError

# Load environment variables from .env file if it exists
load_dotenv()

logger = logging.getLogger("ocnectl.config")


class Config:
    """Process level settings with sensible defaults."""

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def defaults_path() -> Path:
        """Path of the user defaults document."""
        path = os.getenv("OCNE_DEFAULTS", "")
        if path:
            return Path(path).expanduser()
        return user_config_dir() / constants.USER_DEFAULTS_FILE

    @staticmethod
    def kubeconfig() -> str:
        return os.getenv("KUBECONFIG", "")

    @staticmethod
    def force_stage_upload() -> bool:
        """Rebuild and upload images during stage even if they look current."""
        return os.getenv("OCNE_OCI_STAGE_FORCE_UPLOAD", "") != ""

    @staticmethod
    def force_stage_templates() -> bool:
        """Create new machine templates during stage even without a new image."""
        return os.getenv("OCNE_OCI_STAGE_FORCE_TEMPLATES", "") != ""

    @classmethod
    def validate(cls) -> None:
        """Validate process configuration."""
        if cls.LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {cls.LOG_LEVEL}")


def user_home() -> Path:
    return Path.home()


def user_config_dir() -> Path:
    return user_home() / constants.USER_CONFIG_DIR


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Node(_Model):
    """Resources given to a virtual machine."""
    memory: str = Field(default=constants.NODE_MEMORY, description="Memory with a unit suffix")
    cpus: int = Field(default=constants.NODE_CPUS, alias="cpu", description="Number of virtual CPUs")
    storage: str = Field(default=constants.NODE_STORAGE, description="Boot disk size with a unit suffix")


class Proxy(_Model):
    https_proxy: str = Field(default="", alias="httpsProxy")
    http_proxy: str = Field(default="", alias="httpProxy")
    no_proxy: str = Field(default="", alias="noProxy")

    def is_set(self) -> bool:
        return bool(self.https_proxy or self.http_proxy or self.no_proxy)


class CertificateInformation(_Model):
    """Subject fields for generated certificate authorities."""
    country: str = Field(default="US")
    org: str = Field(default="OCNE")
    org_unit: str = Field(default="OCNE", alias="orgUnit")
    state: str = Field(default="TX")


class LibvirtProvider(_Model):
    session_uri: str = Field(default=constants.SESSION_URI, alias="uri", description="libvirt connection URI")
    ssh_key: str = Field(default="", alias="sshKey")
    storage_pool: str = Field(default="", alias="storagePool")
    network: str = Field(default="", description="Bridged libvirt network name")
    control_plane_node: Node = Field(default_factory=Node, alias="controlPlaneNode")
    worker_node: Node = Field(default_factory=Node, alias="workerNode")
    boot_volume_name: str = Field(default=constants.BOOT_VOLUME_NAME, alias="bootVolumeName")
    boot_volume_container_image_path: str = Field(
        default=constants.BOOT_VOLUME_CONTAINER_IMAGE_PATH, alias="bootVolumeContainerImagePath"
    )


class OciInstanceShape(_Model):
    shape: str = Field(default=constants.OCI_DEFAULT_SHAPE)
    ocpus: int = Field(default=0)
    boot_volume_size: str = Field(default=constants.BOOT_VOLUME_SIZE, alias="bootVolumeInGBs")


class OciLoadBalancer(_Model):
    subnet1: str = Field(default="")
    subnet2: str = Field(default="")


class OciImageSet(_Model):
    amd64: str = Field(default="")
    arm64: str = Field(default="")


class OciProvider(_Model):
    kubeconfig: str = Field(default="", description="Kubeconfig of the management cluster")
    compartment: str = Field(default="", description="Compartment OCID or path")
    profile: str = Field(default=constants.OCI_DEFAULT_PROFILE)
    namespace: str = Field(default="", description="Namespace for Cluster API resources")
    control_plane_shape: OciInstanceShape = Field(
        default_factory=lambda: OciInstanceShape(ocpus=constants.CONTROL_PLANE_OCPUS),
        alias="controlPlaneShape",
    )
    worker_shape: OciInstanceShape = Field(
        default_factory=lambda: OciInstanceShape(ocpus=constants.WORKER_OCPUS),
        alias="workerShape",
    )
    images: OciImageSet = Field(default_factory=OciImageSet)
    self_managed: bool = Field(default=False, alias="selfManaged")
    load_balancer: OciLoadBalancer = Field(default_factory=OciLoadBalancer, alias="loadBalancer")
    vcn: str = Field(default="")
    image_bucket: str = Field(default=constants.OCI_BUCKET, alias="imageBucket")
    proxy: Proxy = Field(default_factory=Proxy)


class Providers(_Model):
    libvirt: LibvirtProvider = Field(default_factory=LibvirtProvider)
    oci: OciProvider = Field(default_factory=OciProvider)


class EphemeralClusterConfig(_Model):
    """Bootstrap cluster used to host Cluster API controllers."""
    name: str = Field(default=constants.EPHEMERAL_CLUSTER_NAME)
    preserve: bool = Field(default=False)
    node: Node = Field(default_factory=Node)


class ClusterConfig(_Model):
    """A cluster configuration document."""
    name: str = Field(default="ocne")
    provider: str = Field(default=constants.PROVIDER_LIBVIRT)
    providers: Providers = Field(default_factory=Providers)
    working_directory: str = Field(default="", alias="directory")
    kubeconfig: str = Field(default="")
    proxy: Proxy = Field(default_factory=Proxy)
    registry: str = Field(default=constants.CONTAINER_REGISTRY)
    worker_nodes: int = Field(default=0, ge=0, alias="workerNodes")
    control_plane_nodes: int = Field(default=1, ge=0, alias="controlPlaneNodes")
    kube_api_server_bind_port: int = Field(default=constants.KUBE_API_SERVER_BIND_PORT, alias="kubeApiServerBindPort")
    kube_api_server_bind_port_alt: int = Field(
        default=constants.KUBE_API_SERVER_BIND_PORT_ALT, alias="kubeApiServerBindPortAlt"
    )
    virtual_ip: str = Field(default="", alias="virtualIp")
    load_balancer: str = Field(default="", alias="loadBalancer")
    pod_subnet: str = Field(default=constants.POD_SUBNET, alias="podSubnet")
    service_subnet: str = Field(default=constants.SERVICE_SUBNET, alias="serviceSubnet")
    certificate_information: CertificateInformation = Field(
        default_factory=CertificateInformation, alias="certificateInformation"
    )
    os_tag: str = Field(default=constants.OS_TAG, alias="osTag")
    os_registry: str = Field(default=constants.OS_REGISTRY, alias="osRegistry")
    kube_proxy_mode: str = Field(default="iptables", alias="kubeProxyMode")
    boot_volume_container_image: str = Field(
        default=constants.BOOT_VOLUME_CONTAINER_IMAGE, alias="bootVolumeContainerImage"
    )
    cni: str = Field(default=constants.CNI_FLANNEL)
    headless: bool = Field(default=False)
    ephemeral_cluster: EphemeralClusterConfig = Field(
        default_factory=EphemeralClusterConfig, alias="ephemeralCluster"
    )
    kube_version: str = Field(default=constants.KUBE_VERSION, alias="kubernetesVersion")
    ssh_public_key_path: str = Field(default="", alias="sshPublicKeyPath")
    ssh_public_key: str = Field(default="", alias="sshPublicKey")
    password: str = Field(default="")
    cipher_suites: str = Field(default="", alias="cipherSuites")
    cluster_definition_inline: str = Field(default="", alias="clusterDefinitionInline")
    cluster_definition: str = Field(default="", alias="clusterDefinition")
    extra_ignition_inline: str = Field(default="", alias="extraIgnitionInline")
    extra_ignition: str = Field(default="", alias="extraIgnition")

    @model_validator(mode="after")
    def check_provider(self) -> "ClusterConfig":
        if self.provider not in constants.PROVIDERS:
            raise ValueError(
                f"provider must be one of {', '.join(constants.PROVIDERS)}, not {self.provider!r}"
            )
        if self.virtual_ip and self.load_balancer:
            raise ValueError("Can not specify both virtual IP and load balancer")
        if not self.working_directory:
            self.working_directory = os.getcwd()
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClusterConfig':
        """Build a configuration from a parsed document.

        Raises:
            ValidationError: If the document does not describe a valid cluster
        """
        try:
            return cls.model_validate(data or {})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid cluster configuration: {e}") from e

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'ClusterConfig':
        """Load a cluster configuration layered over the user defaults."""
        config_data = load_defaults()

        if config_path:
            config_path = Path(config_path).expanduser().absolute()
            if not config_path.exists():
                raise ValidationError(f"Cluster configuration {config_path} does not exist")
            config_data = merge(config_data, _load_config_file(config_path))
            # Relative paths inside the file are relative to the file
            config_data.setdefault("directory", str(config_path.parent))

        return cls.from_dict(config_data)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def copy_with(self, **updates: Any) -> 'ClusterConfig':
        return self.model_copy(deep=True, update=updates)

    def ssh_key(self) -> str:
        """The public key given to the node user, read from a path if needed."""
        if self.ssh_public_key:
            return self.ssh_public_key
        if self.ssh_public_key_path:
            with open(os.path.expanduser(self.ssh_public_key_path)) as f:
                return f.read().strip()
        return ""


def merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge two configuration documents. Values in override win."""
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def load_defaults() -> Dict[str, Any]:
    """Read the user defaults document, if there is one."""
    path = Config.defaults_path()
    if not path.exists():
        return {}
    return _load_config_file(path)


def _load_config_file(path: Path) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Failed to parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"{path} does not contain a configuration document")
    return data
