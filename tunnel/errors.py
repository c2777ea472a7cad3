"""
Provisioning Error Taxonomy

Closed set of error variants raised by the provisioning core. Every error
carries an ErrorKind so callers (the HTTP layer, the auth layer) can branch
on the kind instead of matching messages.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Error kind enumeration"""
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    NOT_INITIALIZED = "not_initialized"
    INTEGRITY = "integrity"
    VALIDATION = "validation"
    STORE = "store"


# ============================================================================
# Base
# ============================================================================

class TunnelError(Exception):
    """Base exception for provisioning core errors"""
    kind: ErrorKind = ErrorKind.STORE


# ============================================================================
# Validation
# ============================================================================

class InvalidInputError(TunnelError):
    """Raised for malformed CIDR, PEM or group input"""
    kind = ErrorKind.VALIDATION


class PoolAlreadyInitializedError(TunnelError):
    """Raised when re-initializing an existing address pool without force"""
    kind = ErrorKind.VALIDATION

    def __init__(self, network_cidr: str, next_available_ip: str):
        self.network_cidr = network_cidr
        self.next_available_ip = next_available_ip
        super().__init__(
            f"Address pool already initialized with {network_cidr} "
            f"(next address {next_available_ip}); pass force=True to overwrite"
        )


# ============================================================================
# Integrity
# ============================================================================

class KeyMismatchError(TunnelError):
    """Raised when the CA private key does not match the CA certificate"""
    kind = ErrorKind.INTEGRITY


class IncompatibleKeyError(TunnelError):
    """Raised when a node public key is on a different curve than the CA"""
    kind = ErrorKind.INTEGRITY

    def __init__(self, got: str, want: str):
        self.got = got
        self.want = want
        super().__init__(
            f"Curve of public key does not match CA curve: got {got}, want {want}"
        )


# ============================================================================
# Expiry / lifecycle
# ============================================================================

class CertificateExpiredError(TunnelError):
    """Raised when a certificate is outside its validity window"""
    kind = ErrorKind.EXPIRED


class CAExpiredError(CertificateExpiredError):
    """Raised when the CA certificate is outside its validity window"""


class TokenExpiredError(TunnelError):
    """Raised when a presented one-time token is past its expiry"""
    kind = ErrorKind.EXPIRED


class TokenNotFoundError(TunnelError):
    """Raised when a presented one-time token does not exist or was used"""
    kind = ErrorKind.NOT_FOUND


# ============================================================================
# Address pool
# ============================================================================

class NetworkNotInitializedError(TunnelError):
    """Raised when allocating from a pool that was never initialized"""
    kind = ErrorKind.NOT_INITIALIZED

    def __init__(self):
        super().__init__("Network not initialized")


class AddressPoolExhaustedError(TunnelError):
    """Raised when the address pool has no usable addresses left"""
    kind = ErrorKind.EXHAUSTED

    def __init__(self, network_cidr: str, next_ip: str):
        self.network_cidr = network_cidr
        self.next_ip = next_ip
        super().__init__(
            f"Network exhaustion: next IP ({next_ip}) is outside of CIDR range "
            f"({network_cidr}) or is the broadcast address"
        )


# ============================================================================
# Store
# ============================================================================

class StoreError(TunnelError):
    """Raised when the durable store fails (connectivity, transaction)"""
    kind = ErrorKind.STORE
