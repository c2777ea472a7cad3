"""
CA material persistence.

This module provides functionality for:
- Writing CA key/certificate PEM files with appropriate permissions
- Loading and validating persisted CA material
- Generating the CA on first boot

The private key is written with owner read/write only (0600), the
certificate world-readable (0644).
"""

import os
import logging
from pathlib import Path

from tunnel.errors import StoreError, TunnelError
from tunnel.security.certificate_authority import (
    CAKeyMaterial,
    Curve,
    generate_ca,
    parse_ca,
)

logger = logging.getLogger(__name__)


def _write_file(file_path: str, content: str, mode: int) -> None:
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        os.write(fd, content.encode("utf-8"))
    finally:
        os.close(fd)

    # umask may have stripped bits on creation; an existing file keeps its mode
    if os.stat(path).st_mode & 0o777 != mode:
        os.chmod(path, mode)


def store_ca(cert_pem: str, key_pem: str, key_path: str, cert_path: str) -> None:
    """
    Store CA material to disk.

    Args:
        cert_pem: PEM CA certificate
        key_pem: PEM CA private key
        key_path: Destination of the private key (mode 0600)
        cert_path: Destination of the certificate (mode 0644)

    Raises:
        StoreError: If writing fails
    """
    try:
        _write_file(key_path, key_pem, 0o600)
        _write_file(cert_path, cert_pem, 0o644)
    except OSError as e:
        raise StoreError(f"Failed to store CA material: {e}") from e


def load_ca(key_path: str, cert_path: str) -> CAKeyMaterial:
    """
    Load and validate CA material from disk.

    Args:
        key_path: Path to the CA private key
        cert_path: Path to the CA certificate

    Returns:
        CAKeyMaterial with the key attached

    Raises:
        StoreError: If a file is missing or unreadable
        InvalidInputError: If the PEM content is malformed
        KeyMismatchError: If the key does not match the certificate
    """
    for file_path in (key_path, cert_path):
        path = Path(file_path)
        if not path.is_file():
            raise StoreError(f"CA file not found: {file_path}")

    try:
        key_pem = Path(key_path).read_text(encoding="utf-8")
        cert_pem = Path(cert_path).read_text(encoding="utf-8")
    except OSError as e:
        raise StoreError(f"Failed to read CA material: {e}") from e

    return parse_ca(cert_pem, key_pem)


def load_or_generate_ca(
    key_path: str,
    cert_path: str,
    name: str,
    curve: Curve = Curve.CURVE25519
) -> CAKeyMaterial:
    """
    Load existing CA material or generate it if either file is missing.

    This function is idempotent - it can be called multiple times safely.

    Args:
        key_path: Path where the CA key is/should be stored
        cert_path: Path where the CA certificate is/should be stored
        name: CA name used when generating
        curve: Curve used when generating

    Returns:
        CAKeyMaterial with the key attached

    Raises:
        TunnelError: If loading, generation or storage fails
    """
    if not (Path(key_path).exists() and Path(cert_path).exists()):
        logger.info(f"Generating new CA at {key_path} and {cert_path}")
        pair = generate_ca(name, curve=curve)
        store_ca(pair.cert_pem, pair.key_pem, key_path, cert_path)

    try:
        material = load_ca(key_path, cert_path)
    except TunnelError as e:
        logger.error(f"Failed to load CA from {key_path} and {cert_path}: {e}")
        raise

    logger.info(
        f"Loaded CA '{material.identity.name}' (curve {material.curve.value}, "
        f"expires {material.not_after})"
    )
    return material
