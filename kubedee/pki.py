"""Cluster certificate authority.

Each cluster has a single root CA stored under its certificates directory
next to a cfssl-style ``ca-config.json`` describing the signing profiles.
Leaf certificates are signed with the ``kubernetes`` profile and rewritten
whenever they are reissued.
"""

import datetime
import functools
import ipaddress
import json
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from kubedee.exceptions import CertificateError, NoAddressAssignedError
from kubedee.logging_config import get_logger
from kubedee.models.certificate import LeafSpec

logger = get_logger(__name__)

KEY_SIZE = 2048
DEFAULT_EXPIRY = "8760h"
SIGNING_PROFILE = "kubernetes"
PROFILE_USAGES = ["signing", "key encipherment", "server auth", "client auth"]

CA_CONFIG = {
    "signing": {
        "default": {"expiry": DEFAULT_EXPIRY},
        "profiles": {
            SIGNING_PROFILE: {"usages": PROFILE_USAGES, "expiry": DEFAULT_EXPIRY},
        },
    }
}

SUBJECT_DEFAULTS = {"country": "DE", "locality": "Berlin", "state": "Berlin"}


def parse_expiry(value: str) -> datetime.timedelta:
    """Parse a cfssl expiry such as '8760h' into a timedelta."""
    units = {"h": "hours", "m": "minutes", "s": "seconds"}
    if not value or value[-1] not in units:
        raise CertificateError(f"Invalid expiry '{value}'", "Expected a number followed by h, m or s")
    try:
        amount = int(value[:-1])
    except ValueError:
        raise CertificateError(f"Invalid expiry '{value}'", "Expected a number followed by h, m or s")
    return datetime.timedelta(**{units[value[-1]]: amount})


def _name(common_name: str, organization: str, organizational_unit: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.COUNTRY_NAME, SUBJECT_DEFAULTS["country"]),
            x509.NameAttribute(NameOID.LOCALITY_NAME, SUBJECT_DEFAULTS["locality"]),
            x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, SUBJECT_DEFAULTS["state"]),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, organizational_unit),
        ]
    )


def _generate_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _write_pair(cert_dir: Path, basename: str, cert: x509.Certificate, key: rsa.RSAPrivateKey) -> None:
    cert_dir.mkdir(parents=True, exist_ok=True)
    key_path = cert_dir / f"{basename}-key.pem"
    cert_path = cert_dir / f"{basename}.pem"
    # Reissuing replaces the pair
    for path in (key_path, cert_path):
        if path.exists():
            path.unlink()
    with open(key_path, "wb", opener=functools.partial(os.open, mode=0o600)) as f:
        f.write(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))


@dataclass
class IssuedCertificate:
    """A leaf certificate written to disk."""

    spec: LeafSpec
    certificate: x509.Certificate
    cert_path: Path
    key_path: Path

    @property
    def subject_alt_names(self) -> list[str]:
        try:
            san = self.certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return []
        ips = [str(ip) for ip in san.value.get_values_for_type(x509.IPAddress)]
        return ips + san.value.get_values_for_type(x509.DNSName)


class CertificateAuthority:
    """Root CA of a single cluster."""

    def __init__(self, cert_dir: Path, certificate: x509.Certificate, key: rsa.RSAPrivateKey, config: dict):
        self.cert_dir = Path(cert_dir)
        self.certificate = certificate
        self.key = key
        self.config = config

    @property
    def cert_path(self) -> Path:
        return self.cert_dir / "ca.pem"

    @property
    def key_path(self) -> Path:
        return self.cert_dir / "ca-key.pem"

    @classmethod
    def create(cls, cert_dir: Path) -> "CertificateAuthority":
        """Generate a self-signed root CA and its signing configuration.

        Args:
            cert_dir: The cluster's certificates directory

        Returns:
            The new certificate authority

        Raises:
            CertificateError: If the CA files cannot be written
        """
        cert_dir = Path(cert_dir)
        logger.info("Generate certificate authority ...")
        key = _generate_key()
        subject = _name("Kubernetes", "Kubernetes", "CA")
        now = datetime.datetime.now(datetime.timezone.utc)
        expiry = parse_expiry(DEFAULT_EXPIRY)
        certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + expiry)
            .add_extension(x509.BasicConstraints(ca=True, path_length=2), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=False,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .sign(key, hashes.SHA256())
        )

        try:
            _write_pair(cert_dir, "ca", certificate, key)
            (cert_dir / "ca-config.json").write_text(json.dumps(CA_CONFIG, indent=2) + "\n")
        except OSError as e:
            raise CertificateError(f"Failed to write certificate authority to {cert_dir}", str(e))

        return cls(cert_dir, certificate, key, CA_CONFIG)

    @classmethod
    def load(cls, cert_dir: Path) -> "CertificateAuthority":
        """Load an existing CA from a certificates directory.

        Raises:
            CertificateError: If the CA is missing or unreadable
        """
        cert_dir = Path(cert_dir)
        try:
            certificate = x509.load_pem_x509_certificate((cert_dir / "ca.pem").read_bytes())
            key = serialization.load_pem_private_key((cert_dir / "ca-key.pem").read_bytes(), password=None)
            config_path = cert_dir / "ca-config.json"
            config = json.loads(config_path.read_text()) if config_path.exists() else CA_CONFIG
        except FileNotFoundError as e:
            raise CertificateError(
                f"Certificate authority not found in {cert_dir}",
                f"Missing {e.filename}. Was the cluster created with 'kubedee create'?",
            )
        except (ValueError, OSError) as e:
            raise CertificateError(f"Failed to load certificate authority from {cert_dir}", str(e))
        return cls(cert_dir, certificate, key, config)

    def profile_expiry(self, profile: str = SIGNING_PROFILE) -> datetime.timedelta:
        signing = self.config.get("signing", {})
        profile_config = signing.get("profiles", {}).get(profile)
        if profile_config is None:
            raise CertificateError(f"Unknown signing profile '{profile}'")
        return parse_expiry(profile_config.get("expiry", signing.get("default", {}).get("expiry", DEFAULT_EXPIRY)))

    def issue_leaf(self, spec: LeafSpec, profile: str = SIGNING_PROFILE) -> IssuedCertificate:
        """Sign a leaf certificate and write it next to the CA.

        Args:
            spec: Subject and SAN hosts of the leaf
            profile: Signing profile from ca-config.json

        Returns:
            The issued certificate and the paths it was written to

        Raises:
            CertificateError: If signing or writing fails
        """
        logger.info(f"Generate {spec.basename} certificate ...")
        key = _generate_key()
        now = datetime.datetime.now(datetime.timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(_name(spec.common_name, spec.organization, spec.organizational_unit))
            .issuer_name(self.certificate.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + self.profile_expiry(profile))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self.key.public_key()),
                critical=False,
            )
        )

        alt_names = [x509.IPAddress(ip) for ip in spec.ip_addresses]
        alt_names += [x509.DNSName(name) for name in spec.dns_names]
        if alt_names:
            builder = builder.add_extension(x509.SubjectAlternativeName(alt_names), critical=False)

        try:
            certificate = builder.sign(self.key, hashes.SHA256())
            _write_pair(self.cert_dir, spec.basename, certificate, key)
        except (ValueError, OSError) as e:
            raise CertificateError(f"Failed to issue {spec.basename} certificate", str(e))

        return IssuedCertificate(
            spec=spec,
            certificate=certificate,
            cert_path=self.cert_dir / f"{spec.basename}.pem",
            key_path=self.cert_dir / f"{spec.basename}-key.pem",
        )


CLUSTER_SERVICE_IP = "10.32.0.1"
LOOPBACK = "127.0.0.1"


def _require_address(ip: ipaddress.IPv4Address | str | None, node_name: str) -> str:
    if not ip:
        raise NoAddressAssignedError(f"Failed to get IPv4 for {node_name}")
    return str(ip)


def admin_spec() -> LeafSpec:
    return LeafSpec(basename="admin", common_name="admin", organization="system:masters")


def etcd_spec(ip: ipaddress.IPv4Address | str | None, node_name: str) -> LeafSpec:
    ip = _require_address(ip, node_name)
    return LeafSpec(basename="etcd", common_name="etcd", organization="etcd", hosts=[ip, LOOPBACK])


def kubernetes_spec(ip: ipaddress.IPv4Address | str | None, node_name: str) -> LeafSpec:
    """Control-plane serving certificate, also used as etcd client."""
    ip = _require_address(ip, node_name)
    return LeafSpec(
        basename="kubernetes",
        common_name="kubernetes",
        organization="Kubernetes",
        hosts=[CLUSTER_SERVICE_IP, ip, LOOPBACK],
    )


def kube_proxy_spec() -> LeafSpec:
    return LeafSpec(basename="kube-proxy", common_name="system:kube-proxy", organization="system:node-proxier")


def worker_spec(ip: ipaddress.IPv4Address | str | None, node_name: str) -> LeafSpec:
    """Per-worker kubelet certificate, named after the worker container."""
    ip = _require_address(ip, node_name)
    return LeafSpec(
        basename=node_name,
        common_name=f"system:node:{node_name}",
        organization="system:nodes",
        hosts=[ip, node_name],
    )
