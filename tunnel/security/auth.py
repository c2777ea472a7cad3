"""
Request Authorization

Decides whether a request may provision a node or mint a one-time token.

Two credentials are accepted as `Authorization: Bearer <value>`:
- the master token (optionally only from loopback clients)
- a one-time token from the token ledger, burnt on first use

A missing, unknown, used or expired one-time token all produce the same
401 "unauthorized" response; which one it was is only logged.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from tunnel.api.deps import get_db, get_settings
from tunnel.config import Settings
from tunnel.errors import StoreError, TokenExpiredError, TokenNotFoundError
from tunnel.services.token_ledger import TokenLedger

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = ("127.0.0.1", "::1")


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="unauthorized",
        headers={"WWW-Authenticate": "Bearer"}
    )


def bearer_token(request: Request) -> Optional[str]:
    """
    Extract the bearer token from the Authorization header

    Returns:
        Token value, or None if the header is missing or empty
    """
    header = request.headers.get("Authorization", "")
    if not header:
        return None
    token = header
    if token.startswith("Bearer "):
        token = token[len("Bearer "):]
    token = token.strip()
    return token or None


class AuthService:
    """
    Authorization decisions for the provisioning API

    Attributes:
        master_token: Master token (empty string disables it)
        master_localhost_only: Accept the master token from loopback only
        token_auth_disabled: Reject all one-time tokens
    """

    def __init__(
        self,
        master_token: str = "",
        master_localhost_only: bool = True,
        token_auth_disabled: bool = False
    ):
        self.master_token = master_token
        self.master_localhost_only = master_localhost_only
        self.token_auth_disabled = token_auth_disabled

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthService":
        return cls(
            master_token=settings.master_token,
            master_localhost_only=settings.master_localhost_only,
            token_auth_disabled=settings.token_auth_disabled,
        )

    def is_master(self, request: Request) -> bool:
        """
        Check whether the request carries the master token

        Returns:
            True if the master token was presented from an allowed client

        Raises:
            HTTPException: 403 if the master token comes from a non-loopback
                client while localhost-only mode is on
        """
        if not self.master_token:
            return False

        token = bearer_token(request)
        if token is None or not hmac.compare_digest(
            token.encode("utf-8"), self.master_token.encode("utf-8")
        ):
            return False

        if self.master_localhost_only:
            client_host = request.client.host if request.client else None
            if client_host is None:
                return False
            if client_host not in LOOPBACK_HOSTS:
                logger.warning(f"Master token presented from non-loopback client {client_host}")
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="unauthorized"
                )

        return True

    def authorize_with_token(self, request: Request, ledger: TokenLedger) -> None:
        """
        Authorize by burning a one-time token

        Raises:
            HTTPException: 401 for any token failure, 500 if the store fails
        """
        if self.token_auth_disabled:
            raise _unauthorized()

        token = bearer_token(request)
        if token is None:
            raise _unauthorized()

        try:
            ledger.validate_and_burn_token(token)
        except TokenNotFoundError:
            logger.warning("Rejected one-time token: not found or already used")
            raise _unauthorized()
        except TokenExpiredError:
            logger.warning("Rejected one-time token: expired (purged)")
            raise _unauthorized()
        except StoreError as e:
            logger.error(f"Token validation failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Internal server error"
            )


def get_auth_service(settings: Settings = Depends(get_settings)) -> AuthService:
    return AuthService.from_settings(settings)


def require_master(
    request: Request,
    auth: AuthService = Depends(get_auth_service)
) -> None:
    """Dependency: only the master token passes"""
    if not auth.is_master(request):
        raise _unauthorized()


def require_master_or_token(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    db: Session = Depends(get_db)
) -> None:
    """Dependency: master token, or a valid one-time token (burnt)"""
    if auth.is_master(request):
        return
    auth.authorize_with_token(request, TokenLedger(db))
