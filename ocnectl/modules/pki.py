"""Certificate authority and admin kubeconfig generation for new clusters."""
import base64
import datetime
import ipaddress
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import List, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .. import constants
from ..config import CertificateInformation, user_config_dir
from ..utils.net import get_uri_address
from .templates import render

logger = logging.getLogger("ocnectl.pki")

KEY_SIZE = 2048
CA_VALIDITY_DAYS = 20 * 365
LEAF_VALIDITY_DAYS = 365
KUBERNETES_DNS_NAMES = (
    "kubernetes",
    "kubernetes.default",
    "kubernetes.default.svc",
    "kubernetes.default.svc.cluster",
    "kubernetes.default.svc.cluster.local",
)


@dataclass
class KubeconfigRequest:
    """Where to write an admin kubeconfig and which API server it points at."""
    path: str
    host: str
    port: int
    service_subnets: List[str] = field(default_factory=list)


@dataclass
class PKIInfo:
    ca_cert_path: str
    ca_key_path: str
    certs_dir: str

    def cleanup(self) -> None:
        shutil.rmtree(self.certs_dir, ignore_errors=True)


@dataclass
class CertPair:
    cert_pem: bytes
    key_pem: bytes


def create_temp_dir(prefix: str) -> str:
    parent = user_config_dir() / constants.USER_TMP_DIR
    parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    return tempfile.mkdtemp(prefix=f"{prefix}-", dir=parent)


def _subject(options: CertificateInformation, common_name: str, org: str = "") -> x509.Name:
    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if options.country:
        attrs.append(x509.NameAttribute(NameOID.COUNTRY_NAME, options.country))
    if options.state:
        attrs.append(x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, options.state))
    attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, org or options.org))
    if options.org_unit:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, options.org_unit))
    return x509.Name(attrs)


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def create_ca(options: CertificateInformation, common_name: str) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    now = datetime.datetime.now(datetime.timezone.utc)
    subject = _subject(options, common_name)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=CA_VALIDITY_DAYS))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=True,
            data_encipherment=False, key_agreement=False, key_cert_sign=True,
            crl_sign=True, encipher_only=False, decipher_only=False,
        ), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert, key


def create_admin_cert(options: CertificateInformation, ca_cert: x509.Certificate, ca_key: rsa.RSAPrivateKey,
                      host: str, service_subnets: List[str]) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    """A client and server certificate for the cluster admin, signed by the CA."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    now = datetime.datetime.now(datetime.timezone.utc)

    sans: List[x509.GeneralName] = [x509.DNSName(n) for n in KUBERNETES_DNS_NAMES]
    addresses = []
    for subnet in service_subnets:
        addresses.append(ipaddress.ip_network(subnet, strict=False)[1])
    for address in (host, "127.0.0.1"):
        try:
            addresses.append(ipaddress.ip_address(address))
        except ValueError:
            sans.append(x509.DNSName(address))
    seen = set()
    for address in addresses:
        if address not in seen:
            seen.add(address)
            sans.append(x509.IPAddress(address))

    cert = (
        x509.CertificateBuilder()
        .subject_name(_subject(options, "admin", org="system:masters"))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=LEAF_VALIDITY_DAYS))
        .add_extension(x509.SubjectAlternativeName(sans), critical=False)
        .add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=True,
            data_encipherment=True, key_agreement=False, key_cert_sign=False,
            crl_sign=False, encipher_only=False, decipher_only=False,
        ), critical=True)
        .add_extension(x509.ExtendedKeyUsage([
            ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.SERVER_AUTH,
        ]), critical=False)
        .sign(ca_key, hashes.SHA256())
    )
    return cert, key


def _write(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def write_kubeconfig(path: str, host: str, port: int, ca: CertPair, leaf: CertPair) -> None:
    contents = render(
        "kubeconfig.yaml.j2",
        ca_cert=_b64(ca.cert_pem),
        client_cert=_b64(leaf.cert_pem),
        client_key=_b64(leaf.key_pem),
        server=f"https://{get_uri_address(host)}:{port}",
    )
    os.makedirs(os.path.dirname(path) or ".", mode=0o700, exist_ok=True)
    _write(path, contents.encode(), 0o644)
    os.chmod(path, 0o644)


def generate_pki(options: CertificateInformation, canonical: KubeconfigRequest,
                 *extra: KubeconfigRequest) -> PKIInfo:
    """Create a cluster CA, an admin certificate, and admin kubeconfigs.

    The first request is the canonical endpoint of the cluster and decides
    the CA common name and the admin certificate SANs. Each extra request
    gets its own kubeconfig with the same credentials.

    Returns:
        PKIInfo: Paths of the CA material. The directory is temporary and
        should be removed once the cluster nodes have been configured.
    """
    certs_dir = create_temp_dir("bootstrap_certs")

    ca_cert, ca_key = create_ca(options, canonical.host)
    leaf_cert, leaf_key = create_admin_cert(options, ca_cert, ca_key, canonical.host, canonical.service_subnets)

    ca = CertPair(ca_cert.public_bytes(serialization.Encoding.PEM), _key_pem(ca_key))
    leaf = CertPair(leaf_cert.public_bytes(serialization.Encoding.PEM), _key_pem(leaf_key))

    info = PKIInfo(
        ca_cert_path=os.path.join(certs_dir, "ca.crt"),
        ca_key_path=os.path.join(certs_dir, "ca.key"),
        certs_dir=certs_dir,
    )
    _write(info.ca_cert_path, ca.cert_pem, 0o644)
    _write(info.ca_key_path, ca.key_pem, 0o600)
    _write(os.path.join(certs_dir, "admin.crt"), leaf.cert_pem, 0o644)
    _write(os.path.join(certs_dir, "admin.key"), leaf.key_pem, 0o600)

    for request in (canonical,) + extra:
        logger.debug("Writing kubeconfig %s for %s:%d", request.path, request.host, request.port)
        write_kubeconfig(request.path, request.host, request.port, ca, leaf)

    return info
