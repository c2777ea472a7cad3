"""
Node Connect API Endpoint

Provides:
- GET /connect - Provision a node and return its overlay engine config

Security:
- Master token or one-time token required (token burnt on use)
- Error details for integrity/store failures are not returned to clients
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from tunnel.api.deps import get_ca, get_db, get_settings
from tunnel.config import Settings
from tunnel.errors import (
    AddressPoolExhaustedError,
    ErrorKind,
    NetworkNotInitializedError,
    TunnelError,
)
from tunnel.models.provisioning import ConnectResponse
from tunnel.networking.overlay_config import build_settings, render_yaml
from tunnel.security.auth import require_master_or_token
from tunnel.security.certificate_authority import CAKeyMaterial
from tunnel.services.address_allocator import AddressAllocator
from tunnel.services.provisioning_coordinator import ProvisioningCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Provisioning"])


@router.get(
    "/connect",
    response_model=ConnectResponse,
    status_code=status.HTTP_200_OK,
    summary="Connect",
    description="""
    Requests a certificate for establishing a tunnel.

    Allocates the next overlay address, signs a certificate for a freshly
    generated node key and returns the rendered overlay engine config.

    **Errors:**
    - 401: Missing, unknown, used or expired token
    - 403: Master token used from a non-loopback client
    - 503: Address pool exhausted or not initialized
    - 500: Internal server error
    """,
    dependencies=[Depends(require_master_or_token)]
)
def connect(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ca: CAKeyMaterial = Depends(get_ca)
) -> ConnectResponse:
    """
    Provision a node

    Returns:
        ConnectResponse with the YAML connection config

    Raises:
        HTTPException: On provisioning errors
    """
    coordinator = ProvisioningCoordinator(
        allocator=AddressAllocator(db=db, network_cidr=settings.network_cidr),
        ca=ca,
        public_address=settings.nebula_public_addr,
        leaf_duration=settings.leaf_duration
    )

    try:
        profile = coordinator.provision_node()

    except AddressPoolExhaustedError as e:
        logger.error(f"Address pool exhausted: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Address pool exhausted"
        )

    except NetworkNotInitializedError as e:
        logger.error(f"Address pool not initialized: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Network not initialized"
        )

    except TunnelError as e:
        if e.kind == ErrorKind.INTEGRITY:
            logger.critical(f"CA integrity failure while provisioning: {e}")
        else:
            logger.error(f"Provisioning failed ({e.kind.value}): {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error during provisioning"
        )

    return ConnectResponse(connection_config=render_yaml(build_settings(profile)))
