"""
Certificate Authority

Generates root key material and signs leaf identity certificates for
overlay nodes. Certificates are X.509 v3:

- CA: self-signed, BasicConstraints(ca=True), no groups, no networks
- Leaf: subject CN is the node name, one OU attribute per group, and for
  every bound network a SAN iPAddress entry for the host address plus one
  for the network it belongs to (e.g. 10.0.0.2 and 10.0.0.0/8)

Two curve families are supported. Curve25519 (default) signs with Ed25519
and gives nodes X25519 key-agreement keys; P256 uses ECDSA/SHA-256 and EC
P-256 node keys.

All functions are pure over the given key material and the system clock,
so they are safe to call concurrently.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, x25519
from cryptography.x509.oid import NameOID

from tunnel.errors import (
    CAExpiredError,
    CertificateExpiredError,
    IncompatibleKeyError,
    InvalidInputError,
    KeyMismatchError,
)

logger = logging.getLogger(__name__)


CA_DURATION = timedelta(hours=8760 * 10)
DEFAULT_LEAF_DURATION = timedelta(days=365)

# A leaf always expires at least this long before its issuer
SAFETY_MARGIN = timedelta(seconds=1)

# X.509 upper bound for common name and organizational unit values
MAX_NAME_LENGTH = 64


class Curve(str, Enum):
    """Signing curve family"""
    CURVE25519 = "25519"
    P256 = "P256"


@dataclass
class CertificatePair:
    """PEM certificate (or public key) with its PEM private key"""
    cert_pem: str
    key_pem: str


@dataclass
class NodeIdentity:
    """Parsed view of a certificate"""
    name: str
    groups: List[str]
    networks: List[str]
    not_before: datetime
    not_after: datetime
    is_ca: bool
    curve: Curve
    public_key: bytes
    issuer: str


@dataclass
class CAKeyMaterial:
    """Trust root: certificate, optional key and parsed attributes"""
    cert_pem: str
    identity: NodeIdentity
    key_pem: Optional[str] = field(default=None, repr=False)

    @property
    def curve(self) -> Curve:
        return self.identity.curve

    @property
    def not_after(self) -> datetime:
        return self.identity.not_after


def _now() -> datetime:
    # X.509 validity has whole-second precision
    return datetime.now(timezone.utc).replace(microsecond=0)


# ============================================================================
# PEM helpers
# ============================================================================

def private_key_to_pem(private_key) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode("ascii")


def public_key_to_pem(public_key) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")


def load_private_key_pem(key_pem: str):
    """
    Load a PEM private key

    Raises:
        InvalidInputError: If the PEM is malformed or the key type unsupported
    """
    try:
        key = serialization.load_pem_private_key(_as_bytes(key_pem), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise InvalidInputError(f"Parsing private key PEM: {e}") from e
    curve_of_key(key)
    return key


def load_public_key_pem(public_key_pem: str):
    """
    Load a PEM public key

    Raises:
        InvalidInputError: If the PEM is malformed or the key type unsupported
    """
    try:
        key = serialization.load_pem_public_key(_as_bytes(public_key_pem))
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise InvalidInputError(f"Parsing public key PEM: {e}") from e
    curve_of_key(key)
    return key


def load_certificate_pem(cert_pem: str) -> x509.Certificate:
    """
    Load a PEM certificate

    Raises:
        InvalidInputError: If the PEM is malformed
    """
    try:
        return x509.load_pem_x509_certificate(_as_bytes(cert_pem))
    except (ValueError, TypeError) as e:
        raise InvalidInputError(f"Parsing certificate PEM: {e}") from e


def _as_bytes(pem: Union[str, bytes]) -> bytes:
    if isinstance(pem, str):
        return pem.encode("ascii", errors="replace")
    return pem


def curve_of_key(key) -> Curve:
    """
    Curve family of a public or private key

    Raises:
        InvalidInputError: If the key is not on a supported curve
    """
    if isinstance(key, (
        ed25519.Ed25519PrivateKey, ed25519.Ed25519PublicKey,
        x25519.X25519PrivateKey, x25519.X25519PublicKey,
    )):
        return Curve.CURVE25519
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        if isinstance(key.curve, ec.SECP256R1):
            return Curve.P256
        raise InvalidInputError(f"Unsupported elliptic curve: {key.curve.name}")
    raise InvalidInputError(f"Unsupported key type: {type(key).__name__}")


def raw_public_key_bytes(public_key) -> bytes:
    """Raw 32-byte key for Curve25519, uncompressed point for P-256"""
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return public_key.public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.UncompressedPoint
        )
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def _spki(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )


def _signature_hash(curve: Curve):
    # Ed25519 signs the message directly
    return None if curve == Curve.CURVE25519 else hashes.SHA256()


# ============================================================================
# Key generation
# ============================================================================

def _new_signer_key(curve: Curve):
    if curve == Curve.CURVE25519:
        return ed25519.Ed25519PrivateKey.generate()
    if curve == Curve.P256:
        return ec.generate_private_key(ec.SECP256R1())
    raise InvalidInputError(f"Invalid curve: {curve}")


def _new_ephemeral_key(curve: Curve):
    if curve == Curve.CURVE25519:
        return x25519.X25519PrivateKey.generate()
    if curve == Curve.P256:
        return ec.generate_private_key(ec.SECP256R1())
    raise InvalidInputError(f"Invalid curve: {curve}")


def generate_ca(
    name: str,
    curve: Curve = Curve.CURVE25519,
    duration: timedelta = CA_DURATION
) -> CertificatePair:
    """
    Generate a self-signed root CA

    Args:
        name: CA common name
        curve: Signing curve family
        duration: Validity period (default 10 years)

    Returns:
        CertificatePair with PEM certificate and PEM PKCS#8 private key

    Raises:
        InvalidInputError: If name is empty or curve unsupported
    """
    if not name or not name.strip():
        raise InvalidInputError("CA name must not be empty")

    curve = Curve(curve)
    private_key = _new_signer_key(curve)
    public_key = private_key.public_key()

    subject = build_subject(name)
    not_before = _now()

    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + duration)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
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
            critical=True
        )
        .sign(private_key, _signature_hash(curve))
    )

    logger.info(f"Generated CA '{name}' on curve {curve.value}, valid until {not_before + duration}")

    return CertificatePair(
        cert_pem=certificate.public_bytes(serialization.Encoding.PEM).decode("ascii"),
        key_pem=private_key_to_pem(private_key)
    )


def generate_key_pair(curve: Curve = Curve.CURVE25519) -> CertificatePair:
    """
    Generate a node key-agreement keypair (not a signing key)

    Args:
        curve: Curve family, must match the CA

    Returns:
        CertificatePair whose cert_pem holds the PEM public key
    """
    private_key = _new_ephemeral_key(Curve(curve))
    return CertificatePair(
        cert_pem=public_key_to_pem(private_key.public_key()),
        key_pem=private_key_to_pem(private_key)
    )


# ============================================================================
# Parsing
# ============================================================================

def parse_groups(groups: Union[str, Iterable[str], None]) -> List[str]:
    """
    Split a comma separated group list, trimming entries

    Empty entries are dropped.
    """
    if groups is None:
        return []
    if isinstance(groups, str):
        groups = groups.split(",")
    return [g.strip() for g in groups if g and g.strip()]


def parse_networks(
    bound_address: Union[str, Iterable[str]]
) -> List[Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]]:
    """
    Parse one or more address/prefix entries (e.g. "10.0.0.2/8")

    Raises:
        InvalidInputError: If no entry is given or an entry is malformed
    """
    if isinstance(bound_address, str):
        bound_address = bound_address.split(",")

    networks = []
    for entry in bound_address or []:
        entry = (entry or "").strip()
        if not entry:
            continue
        if "/" not in entry:
            raise InvalidInputError(f"Invalid network definition: {entry}")
        try:
            networks.append(ipaddress.ip_interface(entry))
        except ValueError as e:
            raise InvalidInputError(f"Invalid network definition: {entry}") from e

    if not networks:
        raise InvalidInputError("At least one network must be bound to the certificate")
    return networks


def build_subject(name: str, groups: Iterable[str] = ()) -> x509.Name:
    """
    Build a subject with the name as CN and one OU per group

    Raises:
        InvalidInputError: If the name or a group is longer than
            MAX_NAME_LENGTH or otherwise not encodable
    """
    groups = list(groups)
    for value in [name, *groups]:
        if len(value) > MAX_NAME_LENGTH:
            raise InvalidInputError(
                f"'{value[:16]}...' is longer than {MAX_NAME_LENGTH} characters"
            )
    try:
        attrs = [x509.NameAttribute(NameOID.COMMON_NAME, name)]
        attrs.extend(
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, g) for g in groups
        )
    except ValueError as e:
        raise InvalidInputError(f"Invalid certificate subject: {e}") from e
    return x509.Name(attrs)


def describe_certificate(certificate: x509.Certificate) -> NodeIdentity:
    """
    Extract identity fields from a certificate (no verification)

    Args:
        certificate: Loaded X.509 certificate

    Returns:
        NodeIdentity
    """
    subject = certificate.subject
    names = subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    issuer_names = certificate.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
    groups = [
        attr.value for attr in
        subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME)
    ]

    try:
        is_ca = certificate.extensions.get_extension_for_class(
            x509.BasicConstraints
        ).value.ca
    except x509.ExtensionNotFound:
        is_ca = False

    public_key = certificate.public_key()

    return NodeIdentity(
        name=names[0].value if names else "",
        groups=groups,
        networks=_networks_from_san(certificate),
        not_before=certificate.not_valid_before_utc,
        not_after=certificate.not_valid_after_utc,
        is_ca=is_ca,
        curve=curve_of_key(public_key),
        public_key=raw_public_key_bytes(public_key),
        issuer=issuer_names[0].value if issuer_names else ""
    )


def _networks_from_san(certificate: x509.Certificate) -> List[str]:
    try:
        san = certificate.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        ).value
    except x509.ExtensionNotFound:
        return []

    entries = san.get_values_for_type(x509.IPAddress)
    hosts = [e for e in entries if isinstance(e, (ipaddress.IPv4Address, ipaddress.IPv6Address))]
    nets = [e for e in entries if isinstance(e, (ipaddress.IPv4Network, ipaddress.IPv6Network))]

    networks = []
    for host in hosts:
        prefix = host.max_prefixlen
        for net in nets:
            if host.version == net.version and host in net:
                prefix = net.prefixlen
                break
        networks.append(f"{host}/{prefix}")
    return networks


def parse_ca(cert_pem: str, key_pem: Optional[str] = None) -> CAKeyMaterial:
    """
    Parse CA material, checking the key against the certificate if given

    Args:
        cert_pem: PEM CA certificate
        key_pem: PEM CA private key (optional)

    Returns:
        CAKeyMaterial

    Raises:
        InvalidInputError: If the PEM is malformed or the certificate is not a CA
        KeyMismatchError: If the key does not match the certificate
    """
    certificate = load_certificate_pem(cert_pem)
    identity = describe_certificate(certificate)
    if not identity.is_ca:
        raise InvalidInputError(f"Certificate '{identity.name}' is not a CA")

    if key_pem is not None:
        private_key = load_private_key_pem(key_pem)
        _check_key_matches(certificate, private_key)

    return CAKeyMaterial(cert_pem=cert_pem, identity=identity, key_pem=key_pem)


def _check_key_matches(certificate: x509.Certificate, private_key) -> None:
    if _spki(private_key.public_key()) != _spki(certificate.public_key()):
        raise KeyMismatchError("Root certificate does not match private key")


# ============================================================================
# Signing
# ============================================================================

def sign_cert(
    ca_cert_pem: str,
    ca_key_pem: str,
    name: str,
    bound_address: Union[str, Iterable[str]],
    groups: Union[str, Iterable[str], None],
    node_public_key_pem: str,
    leaf_duration: timedelta = DEFAULT_LEAF_DURATION,
    now: Optional[datetime] = None
) -> CertificatePair:
    """
    Sign a leaf certificate for a node

    The validity window is [now, now + min(leaf_duration, CA remaining
    validity - SAFETY_MARGIN)), so the leaf never outlives its issuer.

    Args:
        ca_cert_pem: PEM CA certificate
        ca_key_pem: PEM CA private key
        name: Node name (subject CN)
        bound_address: One or more address/prefix entries, comma separated
        groups: Comma separated group list or iterable of groups
        node_public_key_pem: Node key-agreement public key (PEM)
        leaf_duration: Upper bound on leaf validity
        now: Reference time (defaults to current UTC time)

    Returns:
        CertificatePair with the PEM leaf certificate and an empty key_pem
        (the node already holds its private key)

    Raises:
        InvalidInputError: If PEM, name or networks are malformed
        KeyMismatchError: If the CA key does not match the CA certificate
        CAExpiredError: If the CA certificate is not valid at now
        IncompatibleKeyError: If the node key curve differs from the CA curve
    """
    ca_cert = load_certificate_pem(ca_cert_pem)
    ca_key = load_private_key_pem(ca_key_pem)

    _check_key_matches(ca_cert, ca_key)

    now = (now or _now()).astimezone(timezone.utc).replace(microsecond=0)
    ca_not_before = ca_cert.not_valid_before_utc
    ca_not_after = ca_cert.not_valid_after_utc
    if now < ca_not_before or now > ca_not_after:
        raise CAExpiredError("CA certificate is expired")

    ca_curve = curve_of_key(ca_key)
    node_public_key = load_public_key_pem(node_public_key_pem)
    node_curve = curve_of_key(node_public_key)
    if node_curve != ca_curve:
        raise IncompatibleKeyError(got=node_curve.value, want=ca_curve.value)

    networks = parse_networks(bound_address)

    if not name or not name.strip():
        raise InvalidInputError("Node name must not be empty")

    group_list = parse_groups(groups)
    subject = build_subject(name, group_list)

    duration = min(leaf_duration, ca_not_after - now - SAFETY_MARGIN)
    if duration <= timedelta(0):
        raise CAExpiredError("CA certificate expires too soon to sign a certificate")
    not_after = now + duration

    san_entries = []
    for interface in networks:
        san_entries.append(x509.IPAddress(interface.ip))
        san_entries.append(x509.IPAddress(interface.network))

    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(ca_cert.subject)
        .public_key(node_public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.SubjectAlternativeName(san_entries), critical=False)
        .sign(ca_key, _signature_hash(ca_curve))
    )

    logger.info(
        f"Signed certificate for '{name}' networks={[str(n) for n in networks]} "
        f"groups={group_list} valid until {not_after}"
    )

    return CertificatePair(
        cert_pem=certificate.public_bytes(serialization.Encoding.PEM).decode("ascii"),
        key_pem=""
    )


def verify_certificate(
    cert_pem: str,
    ca_cert_pem: str,
    now: Optional[datetime] = None
) -> NodeIdentity:
    """
    Verify a certificate against its issuing CA

    Args:
        cert_pem: PEM certificate to verify (may be the CA itself)
        ca_cert_pem: PEM issuing CA certificate
        now: Reference time (defaults to current UTC time)

    Returns:
        NodeIdentity of the verified certificate

    Raises:
        InvalidInputError: If PEM is malformed or the issuer is not a CA
        KeyMismatchError: If the signature does not verify against the CA
        CertificateExpiredError: If the certificate is not valid at now
    """
    certificate = load_certificate_pem(cert_pem)
    ca_cert = load_certificate_pem(ca_cert_pem)

    if not describe_certificate(ca_cert).is_ca:
        raise InvalidInputError("Issuer certificate is not a CA")

    try:
        certificate.verify_directly_issued_by(ca_cert)
    except (ValueError, TypeError, InvalidSignature) as e:
        raise KeyMismatchError(f"Certificate was not signed by this CA: {e}") from e

    identity = describe_certificate(certificate)
    now = now or _now()
    if now < identity.not_before or now > identity.not_after:
        raise CertificateExpiredError(f"Certificate '{identity.name}' is expired")

    return identity
