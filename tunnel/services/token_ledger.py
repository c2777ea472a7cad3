"""
Token Ledger

Issues and atomically consumes single-use access tokens with expiry.

A token is either present-and-unconsumed or absent. The first validation
attempt always deletes the row, whether it succeeds or reports expiry, so a
stale token cannot be probed repeatedly.
"""

from datetime import timedelta
import logging
import secrets

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tunnel.errors import (
    InvalidInputError,
    StoreError,
    TokenExpiredError,
    TokenNotFoundError,
    TunnelError,
)
from tunnel.models.one_time_token import OneTimeToken, utcnow


logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = timedelta(hours=24)

# 32 bytes = 256 bits of entropy, hex encoded
TOKEN_BYTES = 32


def _redact(token: str) -> str:
    return f"{token[:8]}..."


class TokenLedger:
    """
    Store-backed one-time token ledger

    Attributes:
        db: Database session (one per request / thread)
    """

    def __init__(self, db: Session):
        """
        Initialize token ledger

        Args:
            db: Database session for persistence
        """
        self.db = db

    def new_token(self, expires_in: timedelta = DEFAULT_TOKEN_TTL) -> str:
        """
        Issue a new one-time token

        The raw value is returned exactly once and cannot be retrieved again.

        Args:
            expires_in: Token lifetime (default 24 hours)

        Returns:
            Hex-encoded token value

        Raises:
            StoreError: If the token cannot be persisted
        """
        value = secrets.token_hex(TOKEN_BYTES)
        entry = OneTimeToken.create(token=value, expires_in=expires_in)

        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store one-time token: {e}")
            raise StoreError(f"Failed to store one-time token: {e}") from e

        logger.info(f"Issued one-time token {_redact(value)}, expires in {expires_in}")
        return value

    def validate_and_burn_token(self, token: str) -> None:
        """
        Validate a token and consume it

        Runs in one transaction holding a row lock on the matching token, so
        two concurrent validations cannot both observe it valid.

        Args:
            token: Token value presented by the caller

        Raises:
            InvalidInputError: If the token is empty
            TokenNotFoundError: If the token does not exist or was consumed
            TokenExpiredError: If the token exists but has expired (the row
                is deleted anyway)
            StoreError: If the store fails
        """
        if not token:
            raise InvalidInputError("Token must not be empty")

        try:
            entry = (
                self.db.query(OneTimeToken)
                .filter(OneTimeToken.token == token)
                .with_for_update()
                .one_or_none()
            )
            if entry is None:
                raise TokenNotFoundError("Token not found or already used")

            expired = entry.is_expired()

            self.db.delete(entry)
            self.db.commit()

        except TunnelError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Transaction rolled back while burning token: {e}")
            raise StoreError(f"Failed to validate token: {e}") from e

        if expired:
            logger.info(f"Purged expired one-time token {_redact(token)}")
            raise TokenExpiredError("Token has expired")

        logger.info(f"Consumed one-time token {_redact(token)}")

    def purge_expired(self) -> int:
        """
        Delete all expired tokens that were never presented

        Returns:
            Number of deleted rows

        Raises:
            StoreError: If the store fails
        """
        try:
            count = (
                self.db.query(OneTimeToken)
                .filter(OneTimeToken.expires_at < utcnow())
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"Failed to purge expired tokens: {e}") from e

        if count:
            logger.info(f"Purged {count} expired one-time tokens")
        return count
