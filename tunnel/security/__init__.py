"""Security services: certificate authority, CA persistence, request authorization."""

from tunnel.security.certificate_authority import (
    CAKeyMaterial,
    CertificatePair,
    Curve,
    NodeIdentity,
    generate_ca,
    generate_key_pair,
    sign_cert,
    verify_certificate,
)
from tunnel.security.ca_store import load_or_generate_ca

__all__ = [
    "CAKeyMaterial",
    "CertificatePair",
    "Curve",
    "NodeIdentity",
    "generate_ca",
    "generate_key_pair",
    "sign_cert",
    "verify_certificate",
    "load_or_generate_ca",
]
