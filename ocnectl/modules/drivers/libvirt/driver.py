"""Clusters of virtual machines on a libvirt host."""
import logging
import os
import sys
from typing import List, Optional, Tuple
from urllib.parse import urlparse

import libvirt

from .... import constants
from ....config import ClusterConfig, Node
from ....errors import NotFoundError, OcneError, ValidationError
from ....registry import ClusterCache
from ... import ignition
from ...containers import ensure_boot_image_version
from ...k8s.client import get_kube_client, get_kubeconfig_path
from ...k8s.nodes import get_node_list, wait_until_get_nodes_succeeds
from ...k8s.tokens import (
    create_join,
    create_upload_certificate_key,
    upload_certificates,
)
from ...lifecycle import ClusterState
from ...pki import KubeconfigRequest, PKIInfo, generate_pki
from ..base import ClusterDriver
from . import accounting, domains, names, network, storage
from .connection import connect, get_cpu_architecture, resolve_session_uri

logger = logging.getLogger("ocnectl.drivers.libvirt")

HYPERVISOR_KVM = "kvm"
HYPERVISOR_HVF = "hvf"


def is_cluster_up(kubeconfig: str, wait: bool) -> bool:
    """Whether the API server of a cluster answers, optionally waiting for it."""
    _, core = get_kube_client(kubeconfig)
    if wait:
        wait_until_get_nodes_succeeds(core)
    else:
        get_node_list(core)
    return True


class LibvirtDriver(ClusterDriver):
    """Runs every node of a cluster as a libvirt domain.

    The first control plane node is reachable through a user mode network
    that forwards a tunnel port on the libvirt host to the API server. When
    the host has a bridged network, every node is also attached to it and
    further nodes can be joined.
    """

    def __init__(self, cluster_config: ClusterConfig):
        super().__init__(cluster_config)
        lp = cluster_config.providers.libvirt
        self.name = cluster_config.name

        self.uri, self.target_ip, self.local = resolve_session_uri(lp.session_uri)
        # Network accounting is keyed by the host name of the URI
        self.host = urlparse(self.uri).hostname or ""
        self.connection = connect(self.uri)

        self.local_kubeconfig_path = get_kubeconfig_path(self.name, "local")
        self.vm_kubeconfig_path = get_kubeconfig_path(self.name, "vm")
        self.cpu_arch = get_cpu_architecture(self.connection)

        self.network_name = lp.network or constants.NETWORK
        self.bridge_networking = True
        self.networking_resolved = False
        self.kube_api_server_ip = ""
        self.tunnel_port = 0
        self.pki_info: Optional[PKIInfo] = None
        self.upload_certificate_key = create_upload_certificate_key()
        self.kube_version = cluster_config.kube_version
        self.boot_volume_container_image = ensure_boot_image_version(
            cluster_config.kube_version, cluster_config.boot_volume_container_image
        )

    def _node_config(self, role: str) -> Node:
        lp = self.cluster_config.providers.libvirt
        return lp.control_plane_node if role == ignition.ROLE_CONTROL_PLANE else lp.worker_node

    def _internal_lb(self) -> bool:
        return not self.cluster_config.load_balancer and self.kube_api_server_ip != accounting.LOCALHOST

    def generate_ignition(self, node_name: str, role: str, join: bool, join_token: str,
                          ca_cert_hashes: List[str], user_network: bool) -> bytes:
        """The first boot configuration of a node."""
        cc = self.cluster_config
        net_interface = names.bridge_nic() if self.bridge_networking else names.user_nic()

        if not join:
            with open(self.pki_info.ca_cert_path) as f:
                ca_cert = f.read()
            with open(self.pki_info.ca_key_path) as f:
                ca_key = f.read()

            ign = ignition.initialize_cluster(ignition.ClusterInit(
                os_tag=cc.os_tag,
                os_registry=cc.os_registry,
                image_registry=cc.registry,
                kube_api_server_ip=self.kube_api_server_ip,
                kube_api_bind_port=cc.kube_api_server_bind_port,
                kube_api_bind_port_alt=cc.kube_api_server_bind_port_alt,
                kube_pki_cert=ca_cert,
                kube_pki_key=ca_key,
                service_subnet=cc.service_subnet,
                pod_subnet=cc.pod_subnet,
                kube_version=self.kube_version,
                net_interface=net_interface,
                internal_lb=self._internal_lb(),
                expecting_worker_nodes=cc.worker_nodes > 0,
                proxy_mode=cc.kube_proxy_mode,
                upload_certificate_key=self.upload_certificate_key,
                cipher_suites=cc.cipher_suites,
                extra_sans=[self.target_ip],
            ))
        else:
            ign = ignition.join_cluster(ignition.ClusterJoin(
                role=role,
                os_tag=cc.os_tag,
                os_registry=cc.os_registry,
                image_registry=cc.registry,
                kube_api_server_ip=self.kube_api_server_ip,
                kube_api_bind_port=cc.kube_api_server_bind_port,
                kube_api_bind_port_alt=cc.kube_api_server_bind_port_alt,
                join_token=join_token,
                net_interface=net_interface,
                kube_pki_cert_hashes=ca_cert_hashes,
                internal_lb=self._internal_lb(),
                proxy_mode=cc.kube_proxy_mode,
                upload_certificate_key=self.upload_certificate_key,
                cipher_suites=cc.cipher_suites,
            ))

        if self.bridge_networking:
            ign = ignition.merge(ign, ignition.network_file(names.bridge_nic(), default_route=not user_network))
        if user_network:
            ign = ignition.merge(ign, ignition.network_file(names.user_nic()))

        ign = ignition.merge(ign, ignition.proxy(cc.proxy, self.kube_api_server_ip, cc.service_subnet, cc.pod_subnet))
        ign = ignition.merge(ign, ignition.hostname(node_name))
        ign = ignition.merge(ign, ignition.ocne_user(cc.ssh_public_key, cc.ssh_public_key_path, cc.password))

        if cc.extra_ignition:
            path = cc.extra_ignition
            if not os.path.isabs(path):
                path = os.path.abspath(os.path.join(cc.working_directory, path))
            ign = ignition.merge(ign, ignition.from_path(path))
        if cc.extra_ignition_inline:
            ign = ignition.merge(ign, ignition.from_string(cc.extra_ignition_inline))

        return ignition.marshal(ign)

    def _boot_volume_name(self) -> str:
        name = self.cluster_config.providers.libvirt.boot_volume_name
        if name == constants.BOOT_VOLUME_NAME:
            name = f"{name}-{self.kube_version}"
        return name

    def add_node(self, role: str, num: int, join: bool, join_token: str = "",
                 ca_cert_hashes: Optional[List[str]] = None) -> None:
        """Create and start the domain for one node."""
        cc = self.cluster_config
        name = names.domain_name(self.name, role, num)
        volume_name, ignition_volume_name = names.resource_names(name)
        # Only the first node is reachable through the tunnel
        user_network = not join
        if join:
            logger.debug("Adding node %s to the cluster", name)
        else:
            logger.debug("Initializing a cluster with first node %s", name)

        ign = self.generate_ignition(name, role, join, join_token, ca_cert_hashes or [], user_network)

        logger.debug("Ensuring presence of storage pool")
        pool = storage.find_or_create_storage_pool(
            self.connection, self.uri, self.local, cc.providers.libvirt.storage_pool
        )

        boot_volume_name = self._boot_volume_name()
        storage.refresh_storage_pools(self.connection)
        if not storage.does_volume_exist(pool, boot_volume_name):
            storage.transfer_base_image(self.connection, self.boot_volume_container_image, pool,
                                        boot_volume_name, self.cpu_arch)

        if not storage.does_volume_exist(pool, volume_name):
            logger.debug("Creating volume %s", volume_name)
            storage.create_volume_from_pool(self._node_config(role), pool, volume_name, boot_volume_name)

        logger.debug("Uploading ignition file to %s", ignition_volume_name)
        storage.upload_ignition(self.connection, ign, pool, ignition_volume_name)
        storage.refresh_storage_pools(self.connection)
        ignition_path = storage.get_volume_path(pool, ignition_volume_name)

        hypervisor = HYPERVISOR_HVF if self.local and sys.platform == "darwin" else HYPERVISOR_KVM

        networks = []
        if user_network:
            user = domains.DomainNetwork(
                type=domains.NETWORK_TYPE_USER,
                bus=str(names.USER_BUS),
                slot=str(names.USER_SLOT),
                subnet=constants.SLIRP_SUBNET,
            )
            if not cc.load_balancer:
                user.port_forwards.append(domains.PortForward(
                    from_port=self.tunnel_port,
                    to_port=constants.KUBE_API_SERVER_BIND_PORT,
                    listen=self.target_ip,
                ))
            networks.append(user)
        if self.bridge_networking:
            networks.append(domains.DomainNetwork(
                type=domains.NETWORK_TYPE_BRIDGE,
                network=self.network_name,
                bus=f"0x{names.BRIDGE_BUS:x}",
                slot=f"0x{names.BRIDGE_SLOT:x}",
            ))
        if not networks:
            raise ValidationError("No networks defined for node")

        logger.info(f"🖥️ Creating node {name}")
        domains.create_domain(self.connection, domains.Domain(
            name=name,
            volume_pool=pool.name(),
            volume=volume_name,
            ignition_path=ignition_path,
            hypervisor=hypervisor,
            networks=networks,
        ), self._node_config(role), self.cpu_arch)

    def remove_node(self, name: str) -> None:
        volume_name, ignition_volume_name = names.resource_names(name)
        logger.info(f"🗑️ Deleting node {name}")
        domains.remove_domain(self.connection, name)

        pool_path = storage.get_default_pool_path(self.uri, self.local)
        pool = storage.find_storage_pool(self.connection, self.cluster_config.providers.libvirt.storage_pool, pool_path)
        if pool is None:
            logger.info(f"ℹ️ Could not find pool with path {pool_path}")
            return

        logger.debug("Deleting volume %s", ignition_volume_name)
        storage.delete_volume(pool, ignition_volume_name)
        logger.debug("Deleting volume %s", volume_name)
        storage.delete_volume(pool, volume_name)

    def resolve_networking(self) -> None:
        """Use bridged networking when the host has networks at all.

        Raises:
            NotFoundError: If the host has networks but not the configured one
        """
        if self.networking_resolved:
            return
        self.networking_resolved = True

        exists, any_exist = network.does_network_exist(self.connection, self.network_name)
        if not any_exist:
            self.bridge_networking = False
        elif not exists:
            raise NotFoundError(f"Network {self.network_name} does not exist")
        else:
            self.bridge_networking = True

    def initialize_cluster(self) -> None:
        cc = self.cluster_config
        self.tunnel_port = accounting.allocate_port(self.host)
        logger.debug("Tunnel port is %d", self.tunnel_port)

        if cc.load_balancer:
            local = KubeconfigRequest(self.local_kubeconfig_path, cc.load_balancer,
                                      constants.KUBE_API_SERVER_BIND_PORT, [cc.service_subnet])
        else:
            local = KubeconfigRequest(self.local_kubeconfig_path, self.target_ip, self.tunnel_port,
                                      [cc.service_subnet])
        vm = KubeconfigRequest(self.vm_kubeconfig_path, self.kube_api_server_ip,
                               constants.KUBE_API_SERVER_BIND_PORT, [cc.service_subnet])
        self.pki_info = generate_pki(cc.certificate_information, vm, local)

        self.add_node(ignition.ROLE_CONTROL_PLANE, 1, False)
        accounting.add_cluster(self.host, self.name, self.kube_api_server_ip, self.tunnel_port)

    def create(self) -> None:
        cc = self.cluster_config
        logger.info(f"🚀 Creating new Kubernetes cluster with version {self.kube_version} named {self.name}")
        self.report_state(ClusterState.BOOTSTRAPPING)

        kube_api_server_ip = accounting.LOCALHOST
        reserved_ip = ""
        if self.bridge_networking:
            if cc.virtual_ip:
                kube_api_server_ip = cc.virtual_ip
            elif cc.load_balancer:
                kube_api_server_ip = cc.load_balancer
            else:
                kube_api_server_ip = network.allocate_ip(self.connection, self.host, self.network_name)
                reserved_ip = kube_api_server_ip
        self.kube_api_server_ip = kube_api_server_ip
        logger.debug("Kubernetes API Server address is %s", self.kube_api_server_ip)

        try:
            self.initialize_cluster()
        except Exception:
            # Nothing recorded the cluster, so delete cannot find these later
            accounting.release(self.host, reserved_ip, self.tunnel_port)
            raise

        _, core = get_kube_client(self.local_kubeconfig_path)
        wait_until_get_nodes_succeeds(core)
        self.report_state(ClusterState.CONTROL_PLANE_READY)

        if cc.control_plane_nodes > 1 or cc.worker_nodes > 0:
            self.report_state(ClusterState.WORKERS_JOINING)
        self._join(ignition.ROLE_CONTROL_PLANE, 2, cc.control_plane_nodes, self.local_kubeconfig_path)
        self._join(ignition.ROLE_WORKER, 1, cc.worker_nodes, self.local_kubeconfig_path)

    def _join(self, role: str, first: int, last: int, kubeconfig: str) -> None:
        if last < first:
            return

        self.resolve_networking()
        if not self.bridge_networking:
            raise ValidationError("Adding nodes to user-only network clusters is not supported")

        token, ca_cert_hashes = create_join(kubeconfig)
        for num in range(first, last + 1):
            self.add_node(role, num, True, token, ca_cert_hashes)

    def start(self) -> Tuple[bool, bool]:
        cc = self.cluster_config
        existing = ClusterCache.load().get(self.name)
        if existing is not None:
            existing_uri = existing.config.providers.libvirt.session_uri
            if existing_uri != cc.providers.libvirt.session_uri:
                raise ValidationError(
                    f"A cluster named {self.name} already exists for the libvirt provider "
                    f"but has session URI {existing_uri}"
                )

        self.resolve_networking()
        if not self.bridge_networking and cc.worker_nodes > 0:
            raise ValidationError("Adding worker nodes to user-networking clusters is not supported")
        if not self.bridge_networking and cc.control_plane_nodes > 1:
            raise ValidationError("Adding more than one control plane nodes to user-networking clusters is not supported")
        if cc.virtual_ip and cc.load_balancer:
            raise ValidationError("Can not specify both virtual IP and load balancer")

        first = names.domain_name(self.name, ignition.ROLE_CONTROL_PLANE, 1)
        is_running, was_running = domains.set_domain_running_if_exists(self.connection, first)
        if is_running:
            try:
                is_cluster_up(self.local_kubeconfig_path, not was_running)
            except OcneError:
                logger.error(f"❌ Failed to start cluster {self.name!r}. The libvirt domain {first!r} is running.")
                raise
            logger.info(f"✅ Cluster {self.name} is running already")
            return True, False

        self.create()
        return False, False

    def _cluster_address(self) -> None:
        ni = accounting.load_network_information()
        cluster = ni.clusters.get(self.name)
        if cluster is None:
            raise NotFoundError(f"Cluster {self.name} is not known on host {self.host}")
        self.kube_api_server_ip = cluster.ip
        self.tunnel_port = cluster.port

    def join(self, kubeconfig: str, control_plane_nodes: int, worker_nodes: int) -> None:
        """Add nodes after the ones that already exist."""
        kubeconfig = kubeconfig or self.local_kubeconfig_path
        self._cluster_address()
        existing = domains.list_cluster_domains(self.connection, self.name)

        if control_plane_nodes > 0:
            logger.info("🔑 Uploading control plane certificates")
            upload_certificates(kubeconfig, self.upload_certificate_key)
            first = names.highest_ordinal(existing, self.name, ignition.ROLE_CONTROL_PLANE) + 1
            self._join(ignition.ROLE_CONTROL_PLANE, first, first + control_plane_nodes - 1, kubeconfig)
        if worker_nodes > 0:
            first = names.highest_ordinal(existing, self.name, ignition.ROLE_WORKER) + 1
            self._join(ignition.ROLE_WORKER, first, first + worker_nodes - 1, kubeconfig)

    def delete(self) -> None:
        for name in domains.list_cluster_domains(self.connection, self.name):
            self.remove_node(name)

        for path in (self.local_kubeconfig_path, self.vm_kubeconfig_path):
            logger.info(f"🗑️ Deleting file {path}")
            try:
                os.remove(path)
            except FileNotFoundError:
                logger.debug("%s was already deleted", path)

        accounting.remove_cluster(self.name)

    def close(self) -> None:
        if self.pki_info is not None:
            self.pki_info.cleanup()
        try:
            self.connection.close()
        except libvirt.libvirtError as e:
            logger.debug("Error closing libvirt connection: %s", e)

    def stage(self, version: str) -> Tuple[str, str, bool]:
        # Nodes pick up new versions through the node update flow
        return "", "", True

    def get_kubeconfig_path(self) -> str:
        return self.local_kubeconfig_path

    def get_kube_api_server_address(self) -> str:
        return self.target_ip

    def post_install_help_stanza(self) -> str:
        return (
            f"To access the cluster from the VM host:\n"
            f"    copy {self.vm_kubeconfig_path} to that host and run kubectl there\n"
            f"To access the cluster from this system:\n"
            f"    use {self.local_kubeconfig_path}"
        )

    def default_cni_interfaces(self) -> List[str]:
        if self.bridge_networking:
            return [names.bridge_nic()]
        return [""]
