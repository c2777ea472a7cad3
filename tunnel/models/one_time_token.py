"""
One-Time Token Model

Single-use bearer tokens gating node provisioning. A row exists only while
the token is unconsumed; deleting the row is the consumption signal.
"""

from datetime import datetime, timedelta, timezone
from sqlalchemy import Column, String, DateTime
from tunnel.db.base_class import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from SQLite"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OneTimeToken(Base):
    """
    One-time token entry

    Attributes:
        token: Hex-encoded token value - Primary Key
        created_at: Issuance timestamp
        expires_at: Timestamp after which the token is rejected
    """
    __tablename__ = "one_time_tokens"

    token = Column(String(128), primary_key=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        # Never render the full secret
        return f"<OneTimeToken(token={self.token[:8]}..., expires_at={self.expires_at})>"

    @classmethod
    def create(cls, token: str, expires_in: timedelta) -> "OneTimeToken":
        """
        Create a new token entry

        Args:
            token: Token value
            expires_in: Lifetime from now

        Returns:
            New token entry
        """
        now = utcnow()
        return cls(token=token, created_at=now, expires_at=now + expires_in)

    def is_expired(self, now: datetime = None) -> bool:
        """
        Check if token is past its expiry

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            True if now is after expires_at
        """
        now = now or utcnow()
        return now > as_utc(self.expires_at)
