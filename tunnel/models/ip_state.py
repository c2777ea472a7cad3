"""
Address Pool State Model

Singleton row holding the overlay network range and the next address to
hand out. Every allocation locks this row for its read-modify-write.
"""

from sqlalchemy import Column, Integer, Text
from tunnel.db.base_class import Base


# Primary key of the only row in ip_state
SINGLETON_ROW_ID = 1


class IPState(Base):
    """
    Address pool state

    Attributes:
        id: Always SINGLETON_ROW_ID
        network_cidr: Overlay network range (e.g. "10.0.0.0/8")
        next_available_ip: Next address to allocate
    """
    __tablename__ = "ip_state"

    id = Column(Integer, primary_key=True, autoincrement=False)
    network_cidr = Column(Text, nullable=False)
    next_available_ip = Column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<IPState(network_cidr={self.network_cidr}, next_available_ip={self.next_available_ip})>"
