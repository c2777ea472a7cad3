"""
One-Time Token API Endpoint

Provides:
- GET /token - Issue a one-time provisioning token

Intended to be called from the server's localhost environment with the
master token.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from tunnel.api.deps import get_db, get_settings
from tunnel.config import Settings
from tunnel.errors import StoreError
from tunnel.models.provisioning import TokenResponse
from tunnel.security.auth import require_master
from tunnel.services.token_ledger import TokenLedger

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Tokens"])


@router.get(
    "/token",
    response_model=TokenResponse,
    status_code=status.HTTP_200_OK,
    summary="One Time Token Request",
    description="""
    Requests a one time token to use it for a certificate request.
    The token is returned once and cannot be retrieved again.

    **Errors:**
    - 401: Master token missing or wrong
    - 403: Master token used from a non-loopback client
    - 500: Internal server error
    """,
    dependencies=[Depends(require_master)]
)
def issue_token(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
) -> TokenResponse:
    """
    Issue a one-time token

    Returns:
        TokenResponse with the raw token value
    """
    try:
        token = TokenLedger(db).new_token(expires_in=settings.token_ttl)
    except StoreError as e:
        logger.error(f"Failed to issue one-time token: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    return TokenResponse(one_time_token=token)
