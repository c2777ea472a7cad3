"""
Provisioning Coordinator

Composes the address allocator and the certificate authority into the node
provisioning workflow. The caller must already be authorized; token checks
happen in the auth layer before this service is invoked.

Workflow:
1. Allocate the next address from the pool
2. Generate the node keypair (unless the node supplied its public key)
3. Sign the leaf certificate binding name, groups and address
4. Return the connection profile with routing hints

Allocate-then-sign is not transactional: if signing fails, the allocated
address is not returned to the pool.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from tunnel.errors import InvalidInputError, PoolAlreadyInitializedError, TunnelError
from tunnel.models.provisioning import ConnectionProfile, NodeOptions, validate_endpoint
from tunnel.security.certificate_authority import (
    CAKeyMaterial,
    DEFAULT_LEAF_DURATION,
    build_subject,
    generate_key_pair,
    parse_groups,
    sign_cert,
)
from tunnel.services.address_allocator import AddressAllocator

logger = logging.getLogger(__name__)


class ProvisioningCoordinator:
    """
    Node provisioning service

    Attributes:
        allocator: Address allocator bound to the request's session
        ca: CA material including the private key
        public_address: Coordinator's public tunnel endpoint (host:port)
        leaf_duration: Upper bound on issued certificate validity
    """

    def __init__(
        self,
        allocator: AddressAllocator,
        ca: CAKeyMaterial,
        public_address: str,
        leaf_duration: timedelta = DEFAULT_LEAF_DURATION
    ):
        """
        Initialize provisioning coordinator

        Args:
            allocator: Address allocator
            ca: CA material (key_pem required)
            public_address: Coordinator's public tunnel endpoint
            leaf_duration: Upper bound on leaf validity

        Raises:
            ValueError: If the CA material has no private key
            InvalidInputError: If public_address is not host:port
        """
        if not ca.key_pem:
            raise ValueError("CA material must include the private key")

        try:
            validate_endpoint(public_address)
        except ValueError as e:
            raise InvalidInputError(f"Invalid public address: {e}") from e

        self.allocator = allocator
        self.ca = ca
        self.public_address = public_address
        self.leaf_duration = leaf_duration

    def provision_node(
        self,
        name: Optional[str] = None,
        options: Optional[NodeOptions] = None,
        node_public_key_pem: Optional[str] = None
    ) -> ConnectionProfile:
        """
        Provision a new node

        Args:
            name: Node name (random UUID if omitted)
            options: Tunnel flags and groups (client defaults if omitted)
            node_public_key_pem: Node's own public key; when omitted a
                keypair is generated and the private key is returned in
                the profile

        Returns:
            ConnectionProfile

        Raises:
            InvalidInputError: If the name or a group cannot be encoded in a
                certificate (checked before an address is allocated)
            NetworkNotInitializedError: If the pool was never initialized
            AddressPoolExhaustedError: If the pool is exhausted
            TunnelError: If signing fails (the address stays allocated)
        """
        name = name or str(uuid.uuid4())
        options = options or NodeOptions.client()

        logger.info(f"Provisioning node: name={name}, groups={options.groups}")

        build_subject(name, parse_groups(options.groups))

        address = self.allocator.next_ip()
        assigned_address = self.allocator.join_address_and_prefix(address)

        private_key_pem = None
        try:
            if node_public_key_pem is None:
                key_pair = generate_key_pair(self.ca.curve)
                node_public_key_pem = key_pair.cert_pem
                private_key_pem = key_pair.key_pem

            signed = sign_cert(
                ca_cert_pem=self.ca.cert_pem,
                ca_key_pem=self.ca.key_pem,
                name=name,
                bound_address=assigned_address,
                groups=options.groups,
                node_public_key_pem=node_public_key_pem,
                leaf_duration=self.leaf_duration
            )
        except TunnelError as e:
            logger.error(
                f"Signing failed for {name}; address {address} stays allocated: {e}"
            )
            raise

        profile = ConnectionProfile(
            name=name,
            groups=parse_groups(options.groups),
            assigned_address=assigned_address,
            certificate_pem=signed.cert_pem,
            private_key_pem=private_key_pem,
            ca_pem=self.ca.cert_pem,
            server_address=self.allocator.server_addr(),
            public_address=self.public_address,
            options=options,
            provisioned_at=datetime.now(timezone.utc).isoformat()
        )

        logger.info(f"Successfully provisioned node {name} with address {assigned_address}")

        return profile

    def bootstrap_server(
        self,
        tun_device: str = "nebula1",
        reinitialize: bool = False
    ) -> ConnectionProfile:
        """
        Provision the coordinator's own node on first boot

        Initializes the address pool so that the server receives the
        reserved server address, then signs the server certificate.

        Args:
            tun_device: TUN device name for the server
            reinitialize: Wipe an existing pool (destroys allocation history)

        Returns:
            ConnectionProfile for the server

        Raises:
            PoolAlreadyInitializedError: If a pool exists and reinitialize
                is False
        """
        try:
            self.allocator.initialize_network(force=reinitialize)
        except PoolAlreadyInitializedError:
            logger.error(
                "Server profile missing but address pool already initialized; "
                "set reinitialize to wipe the pool"
            )
            raise

        return self.provision_node(
            name="server",
            options=NodeOptions.server(tun_device=tun_device)
        )
