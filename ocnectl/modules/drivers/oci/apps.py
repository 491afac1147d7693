"""Applications installed into the management cluster and the new workload cluster."""
import logging
from typing import Any, Dict, List

import yaml
from kubernetes import client

from .... import constants
from ....config import ClusterConfig
from ....errors import ValidationError
from ...helm import Application
from ...k8s.resources import ResourceClient, name_of, namespace_of
from ...k8s.workloads import create_secret
from ...oci.client import get_config
from ...oci.compartment import get_compartment_id

logger = logging.getLogger("ocnectl.drivers.oci.apps")

OCI_CLUSTER_VCN = ("spec", "networkSpec", "vcn")


def _proxy_values(cluster_config: ClusterConfig) -> Dict[str, str]:
    proxy = cluster_config.providers.oci.proxy
    return {
        "httpsProxy": proxy.https_proxy,
        "httpProxy": proxy.http_proxy,
        "noProxy": proxy.no_proxy,
    }


def capi_applications(cluster_config: ClusterConfig) -> List[Application]:
    """Cluster API controllers for OCI, in install order."""
    oci_config = get_config(cluster_config.providers.oci.profile)
    proxy = {"proxy": _proxy_values(cluster_config)}

    return [
        Application(name="cert-manager", namespace=constants.CERT_MANAGER_NAMESPACE),
        Application(name="core-capi", namespace=constants.CORE_CAPI_NAMESPACE, config=proxy),
        Application(name="oci-capi", namespace=constants.OCI_CAPI_NAMESPACE, config={
            "authConfig": {
                "fingerprint": oci_config.fingerprint,
                "key": oci_config.key,
                "passphrase": oci_config.passphrase,
                "region": oci_config.region,
                "tenancy": oci_config.tenancy,
                "useInstancePrincipal": str(oci_config.use_instance_principal).lower(),
                "user": oci_config.user,
            },
            **proxy,
        }),
        Application(name="bootstrap-capi", namespace=constants.BOOTSTRAP_CAPI_NAMESPACE, config=proxy),
        Application(name="control-plane-capi", namespace=constants.CONTROL_PLANE_CAPI_NAMESPACE, config=proxy),
    ]


def oci_ccm_credentials(cluster_config: ClusterConfig) -> str:
    """The cloud provider configuration shared by the OCI CCM and CSI driver."""
    oci = cluster_config.providers.oci
    oci_config = get_config(oci.profile)
    creds = {
        "auth": {
            "region": oci_config.region,
            "tenancy": oci_config.tenancy,
            "user": oci_config.user,
            "key": oci_config.key,
            "passphrase": oci_config.passphrase,
            "fingerprint": oci_config.fingerprint,
            "useInstancePrincipals": oci_config.use_instance_principal,
        },
        "compartment": get_compartment_id(oci.compartment, oci.profile),
        "vcn": oci.vcn,
        "loadBalancer": {
            "subnet1": oci.load_balancer.subnet1,
            "subnet2": oci.load_balancer.subnet2,
            "securityListManagementMode": "None",
        },
    }
    return yaml.safe_dump(creds, default_flow_style=False)


def create_oci_ccm_secrets(core: client.CoreV1Api, cluster_config: ClusterConfig) -> None:
    creds = oci_ccm_credentials(cluster_config)
    for name, key in ((constants.OCI_CCM_SECRET, "cloud-provider.yaml"),
                      (constants.OCI_VOLUME_PROVISIONER_SECRET, "config.yaml")):
        secret = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=constants.OCI_CCM_NAMESPACE),
            string_data={key: creds},
            type="Opaque",
        )
        create_secret(core, constants.OCI_CCM_NAMESPACE, secret)


def workload_applications() -> List[Application]:
    return [
        Application(name=constants.OCI_CCM_CHART, namespace=constants.OCI_CCM_NAMESPACE,
                    release=constants.OCI_CCM_RELEASE),
    ]


def _service_lb_subnets(vcn: Dict[str, Any]) -> List[str]:
    ret = []
    for subnet in vcn.get("subnets") or []:
        if not isinstance(subnet, dict) or subnet.get("role") != constants.OCI_CCM_SERVICE_LB_ROLE:
            continue
        if isinstance(subnet.get("id"), str):
            ret.append(subnet["id"])
            logger.debug("Found service-lb subnet OCID %s", subnet["id"])
    return ret


def get_oci_ccm_options(resources: ResourceClient, cluster_config: ClusterConfig,
                        oci_cluster: Dict[str, Any]) -> None:
    """Fill in the VCN and load balancer subnets from the live OCICluster.

    Values already present in the configuration are kept.

    Raises:
        ValidationError: If the OCICluster has no VCN id or service-lb subnet
    """
    oci = cluster_config.providers.oci
    if oci.vcn and oci.load_balancer.subnet1 and oci.load_balancer.subnet2:
        return

    ns, name = namespace_of(oci_cluster), name_of(oci_cluster)
    live = resources.get(oci_cluster["apiVersion"], oci_cluster["kind"], ns, name)

    vcn: Any = live
    for key in OCI_CLUSTER_VCN:
        if not isinstance(vcn, dict) or key not in vcn:
            raise ValidationError(f"Cluster {ns}/{name} does not have a {key} field")
        vcn = vcn[key]
    if not isinstance(vcn, dict):
        raise ValidationError(f"Cluster {ns}/{name} field vcn has an unexpected format")

    vcn_id = vcn.get("id") or ""
    if not vcn_id:
        raise ValidationError(f"OCICluster {ns}/{name} has an empty vcn id")
    logger.debug("Found VCN OCID %s", vcn_id)

    subnets = _service_lb_subnets(vcn)
    if not subnets:
        raise ValidationError(f"OCICluster {ns}/{name} does not have a service-lb subnet")

    oci.vcn = vcn_id
    oci.load_balancer.subnet1 = subnets[0]
    if len(subnets) > 1:
        oci.load_balancer.subnet2 = subnets[-1]
