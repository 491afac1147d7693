"""Fixed names, paths and defaults used across ocnectl."""

# User state
USER_CONFIG_DIR = ".ocne"
USER_IP_FILE = "ips.yaml"
USER_CLUSTER_CACHE_FILE = "clusters.yaml"
USER_DEFAULTS_FILE = "defaults.yaml"
USER_IMAGE_CACHE_DIR = "images"
USER_TMP_DIR = "tmp"
USER_LOCK_FILE = "ocne.pid"
USER_KUBECONFIG_DIR = ".kube"

# Providers
PROVIDER_LIBVIRT = "libvirt"
PROVIDER_OCI = "oci"
PROVIDER_NONE = "none"
PROVIDERS = (PROVIDER_LIBVIRT, PROVIDER_OCI, PROVIDER_NONE)

# Libvirt
DARWIN_LIBVIRT_SOCKET_PATH = ".cache/libvirt/libvirt-sock"
STORAGE_POOL = "images"
SESSION_URI = "qemu:///session"
NETWORK = "default"
STORAGE_POOL_PATH = "/var/lib/libvirt/images"
USER_STORAGE_POOL_PATH = ".local/share/libvirt/images"
BOOT_VOLUME_NAME = "boot.qcow2"
BOOT_VOLUME_CONTAINER_IMAGE_PATH = "disk/boot.qcow2"
NODE_CPUS = 2
NODE_MEMORY = "4194304Ki"
NODE_STORAGE = "20Gi"
SLIRP_SUBNET = "192.18.255.0/24"
EPHEMERAL_CLUSTER_NAME = "ocne-ephemeral"
IP_SCAN_OFFSET = 200

# Cluster defaults
KUBE_API_SERVER_BIND_PORT = 6443
KUBE_API_SERVER_BIND_PORT_ALT = 6444
MAX_PORT = 65534
POD_SUBNET = "10.244.0.0/16"
SERVICE_SUBNET = "10.96.0.0/12"
KUBE_VERSION = "1.32"
BOOT_VOLUME_CONTAINER_IMAGE = "container-registry.oracle.com/olcne/ock"
OS_REGISTRY = "container-registry.oracle.com/olcne/ock-ostree"
OS_TAG = "ock"
OS_TRANSPORT = "ostree-unverified-registry"
CONTAINER_REGISTRY = "container-registry.oracle.com/olcne"
CNI_FLANNEL = "flannel"

# OCI
CONTROL_PLANE_OCPUS = 2
WORKER_OCPUS = 4
BOOT_VOLUME_SIZE = "50"
OCI_IMAGE_NAME = "ock"
OCI_BUCKET = "ocne-images"
OCI_DEFAULT_SHAPE = "VM.Standard.E4.Flex"
OCI_DEFAULT_PROFILE = "DEFAULT"
OCI_ARM_COMPATIBLE_SHAPES = (
    "VM.Standard.A1.Flex",
    "VM.Standard.A2.Flex",
    "BM.Standard.A1.160",
)
OCI_ARM_SHAPE_MARKERS = (".A1.", ".A2.", "Generic")
OCI_ARCHITECTURE_TAG = "ocne/architecture"
OCI_KUBERNETES_TAG = "ocne/kubernetes"
OCI_OPERATING_SYSTEM = "Oracle Linux"
OCI_OPERATING_SYSTEM_VERSION = "8"
OCI_WORK_REQUEST_POLL_SECONDS = 10
OCI_WORK_REQUEST_STATUS_RETRIES = 5
OCI_DEFAULT_NAMESPACE = "ocne"
OCI_INSTANCE_METADATA = "169.254.169.254"
OCI_CAPI_API_VERSION = "infrastructure.cluster.x-k8s.io/v1beta2"
OCI_CLUSTER_KIND = "OCICluster"
OCI_CCM_SERVICE_LB_ROLE = "service-lb"
ARCH_AMD64 = "amd64"
ARCH_ARM64 = "arm64"

# Labels and annotations
UPDATE_AVAILABLE_ANNOTATION = "ocne.oracle.com/update-available"
CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"
SKIP_KUBE_PROXY_ANNOTATION = "controlplane.cluster.x-k8s.io/skip-kube-proxy"
SKIP_COREDNS_ANNOTATION = "controlplane.cluster.x-k8s.io/skip-coredns"
CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"

OCNE_SYSTEM_NAMESPACE = "ocne-system"
KUBE_SYSTEM_NAMESPACE = "kube-system"

# kube-proxy
KUBE_PROXY_RELEASE = "kube-proxy"
KUBE_PROXY_CHART = "kube-proxy"
KUBE_PROXY_NAMESPACE = "kube-system"
KUBE_PROXY_DAEMONSET = "kube-proxy"
KUBE_PROXY_CONFIGMAP = "kube-proxy"
KUBE_PROXY_CONFIG_KEY = "config.conf"
KUBE_PROXY_KUBECONFIG_KEY = "kubeconfig.conf"
KUBE_PROXY_IMAGE = "container-registry.oracle.com/olcne/kube-proxy"
CURRENT_TAG = "current"

# CoreDNS
COREDNS_DEPLOYMENT = "coredns"
COREDNS_NAMESPACE = "kube-system"
COREDNS_IMAGE = "container-registry.oracle.com/olcne/coredns"

# CNI and UI images that get a "current" tag during pre-update
FLANNEL_DAEMONSET = "kube-flannel-ds"
FLANNEL_NAMESPACE = "kube-flannel"
FLANNEL_IMAGE = "container-registry.oracle.com/olcne/flannel"
UI_DEPLOYMENT = "ui"
UI_NAMESPACE = "ocne-system"
UI_IMAGE = "container-registry.oracle.com/olcne/headlamp"

DEFAULT_POD_IMAGE = "container-registry.oracle.com/os/oraclelinux:8"
SCRIPT_MOUNT_PATH = "/ocne-scripts"
HOST_ROOT_MOUNT_PATH = "/hostroot"

# kubeadm
KUBEADM_CONFIGMAP = "kubeadm-config"
KUBEADM_CLUSTER_CONFIGURATION_KEY = "ClusterConfiguration"
OCK_PATCH_DIRECTORY = "/etc/ocne/ock/patches"

# Nodes at or below this kubelet version still need their images retagged
PRE_UPDATE_KUBELET_THRESHOLD = "1.30"

# Cluster API
CAPI_API_VERSION = "cluster.x-k8s.io/v1beta1"
CAPI_MOVE_RETRY_SECONDS = 3
CERT_MANAGER_NAMESPACE = "cert-manager"
CORE_CAPI_NAMESPACE = "capi-system"
BOOTSTRAP_CAPI_NAMESPACE = "capi-kubeadm-bootstrap-system"
CONTROL_PLANE_CAPI_NAMESPACE = "capi-kubeadm-control-plane-system"
OCI_CAPI_NAMESPACE = "cluster-api-provider-oci-system"
CAPI_DEPLOYMENTS = (
    (CORE_CAPI_NAMESPACE, "capi-controller-manager"),
    (BOOTSTRAP_CAPI_NAMESPACE, "capi-kubeadm-bootstrap-controller-manager"),
    (CONTROL_PLANE_CAPI_NAMESPACE, "capi-kubeadm-control-plane-controller-manager"),
    (OCI_CAPI_NAMESPACE, "capoci-controller-manager"),
)
CATALOG_REPOSITORY = "oci://container-registry.oracle.com/olcne/charts"

# OCI cloud controller manager
OCI_CCM_CHART = "oci-ccm"
OCI_CCM_RELEASE = "oci-ccm"
OCI_CCM_NAMESPACE = "kube-system"
OCI_CCM_SECRET = "oci-cloud-controller-manager"
OCI_VOLUME_PROVISIONER_SECRET = "oci-volume-provisioner"

# Timeouts in seconds
GET_NODES_TIMEOUT = 600
NODE_READY_TIMEOUT = 600
PROBE_INTERVAL = 5
KUBECONFIG_SECRET_TIMEOUT = 1200
CLUSTER_DELETE_TIMEOUT = 1200
LOCK_TIMEOUT = 10
POD_READY_RETRIES = 48
DEFAULT_DRAIN_TIMEOUT = "30m"

# Kubernetes versions and the component tags that ship with them
KUBERNETES_VERSIONS = {
    "1.26.6": {"kubernetes": "v1.26.6", "pause": "3.9", "etcd": "3.5.6", "coredns": "v1.9.3-4"},
    "1.27.12": {"kubernetes": "v1.27.12", "pause": "3.9", "etcd": "3.5.10", "coredns": "v1.10.1"},
    "1.28.8": {"kubernetes": "v1.28.8", "pause": "3.9", "etcd": "3.5.10", "coredns": "v1.10.1-1"},
    "1.29.3": {"kubernetes": "v1.29.3", "pause": "3.9", "etcd": "3.5.10", "coredns": "v1.11.1"},
    "1.30.3": {"kubernetes": "v1.30.3", "pause": "3.9", "etcd": "3.5.12", "coredns": "v1.11.1"},
    "1.31.0": {"kubernetes": "v1.31.0", "pause": "3.10", "etcd": "3.5.15", "coredns": "current"},
    "1.32.0": {"kubernetes": "v1.32.0", "pause": "3.10", "etcd": "3.5.15", "coredns": "current"},
}
KUBERNETES_MINOR_VERSIONS = {
    "1.26": "1.26.6",
    "1.27": "1.27.12",
    "1.28": "1.28.8",
    "1.29": "1.29.3",
    "1.30": "1.30.3",
    "1.31": "1.31.0",
    "1.32": "1.32.0",
}
