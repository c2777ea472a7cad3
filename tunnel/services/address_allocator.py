"""
Address Allocator

Hands out overlay network addresses sequentially from a single shared range.
The counter lives in the ip_state singleton row; every allocation locks that
row for its read-modify-write so concurrent handlers, in one process or in
many, serialize instead of racing.

Security considerations:
- No in-process caching of the counter, every call round-trips the store
- Network/broadcast addresses never allocated
- Exhaustion aborts the transaction without advancing the counter
"""

import ipaddress
import logging
from typing import Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tunnel.errors import (
    AddressPoolExhaustedError,
    InvalidInputError,
    NetworkNotInitializedError,
    PoolAlreadyInitializedError,
    StoreError,
    TunnelError,
)
from tunnel.models.ip_state import IPState, SINGLETON_ROW_ID

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_network(network_cidr: str) -> IPNetwork:
    """
    Parse a CIDR string, tolerating host bits (e.g. "10.0.0.5/8")

    Raises:
        InvalidInputError: If the CIDR is malformed
    """
    try:
        return ipaddress.ip_network(network_cidr, strict=False)
    except ValueError as e:
        raise InvalidInputError(f"Invalid CIDR format: {e}") from e


def increment_ip(ip: IPAddress) -> IPAddress:
    """
    Add one to an address treated as a fixed-width big-endian integer

    Carry propagates from the least significant byte. An all-ones address
    wraps to all-zeros within the same width.
    """
    packed = bytearray(ip.packed)
    for i in range(len(packed) - 1, -1, -1):
        packed[i] = (packed[i] + 1) & 0xFF
        if packed[i] != 0:
            break
    return ipaddress.ip_address(bytes(packed))


def is_broadcast(ip: IPAddress, network: IPNetwork) -> bool:
    """IPv4 broadcast check; IPv6 has no broadcast address"""
    if ip.version != 4 or network.version != 4:
        return False
    return ip == network.broadcast_address


class AddressAllocator:
    """
    Store-backed sequential address allocator

    Attributes:
        db: Database session (one per request / thread)
        network: Configured overlay network
    """

    def __init__(self, db: Session, network_cidr: str):
        """
        Initialize allocator

        Args:
            db: Database session
            network_cidr: Network CIDR (e.g., "10.0.0.0/8")

        Raises:
            InvalidInputError: If network CIDR is invalid
        """
        self.db = db
        self.network = parse_network(network_cidr)

    @property
    def network_cidr(self) -> str:
        return str(self.network)

    def server_addr(self) -> str:
        """
        Address reserved for the coordinator itself

        Pure; does not touch the store and works before initialization.

        Returns:
            network address + 1
        """
        return str(increment_ip(self.network.network_address))

    def join_address_and_prefix(self, address: str) -> str:
        """
        Format an address with the pool's prefix length

        Args:
            address: Bare address (e.g., "10.0.0.2")

        Returns:
            CIDR notation (e.g., "10.0.0.2/8")
        """
        return f"{address}/{self.network.prefixlen}"

    def initialize_network(self, force: bool = False) -> None:
        """
        Reset pool state to {cidr, network address + 1}

        Replaces any existing row inside one transaction. On failure the
        previous state is left intact.

        Args:
            force: Overwrite an already initialized pool

        Raises:
            PoolAlreadyInitializedError: If a pool exists and force is False
            StoreError: If the store fails
        """
        first_usable = str(increment_ip(self.network.network_address))

        try:
            existing = self._lock_state()

            if existing is not None:
                if not force:
                    raise PoolAlreadyInitializedError(
                        network_cidr=existing.network_cidr,
                        next_available_ip=existing.next_available_ip
                    )
                logger.warning(
                    f"Overwriting address pool {existing.network_cidr} "
                    f"(next address was {existing.next_available_ip})"
                )
                self.db.delete(existing)
                self.db.flush()

            self.db.add(IPState(
                id=SINGLETON_ROW_ID,
                network_cidr=self.network_cidr,
                next_available_ip=first_usable
            ))
            self.db.commit()

        except TunnelError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Transaction rolled back while initializing network: {e}")
            raise StoreError(f"Failed to initialize network: {e}") from e

        logger.info(
            f"Initialized address pool: network={self.network_cidr}, "
            f"first_usable={first_usable}"
        )

    def is_initialized(self) -> bool:
        """
        Check whether the pool row exists

        Returns:
            True if initialize_network has run
        """
        return self.pool_state() is not None

    def next_ip(self) -> str:
        """
        Allocate the next address

        Returns:
            Allocated address as string (without prefix)

        Raises:
            NetworkNotInitializedError: If the pool row does not exist
            AddressPoolExhaustedError: If the candidate is outside the range
                or is the broadcast address
            StoreError: If the store fails
        """
        try:
            state = self._lock_state()
            if state is None:
                raise NetworkNotInitializedError()

            try:
                network = ipaddress.ip_network(state.network_cidr, strict=False)
            except ValueError as e:
                raise StoreError(
                    f"Invalid stored CIDR ({state.network_cidr}): {e}"
                ) from e

            try:
                candidate = ipaddress.ip_address(state.next_available_ip)
            except ValueError:
                candidate = None

            if (
                candidate is None
                or candidate.version != network.version
                or candidate not in network
                or is_broadcast(candidate, network)
            ):
                raise AddressPoolExhaustedError(
                    network_cidr=state.network_cidr,
                    next_ip=state.next_available_ip
                )

            state.next_available_ip = str(increment_ip(candidate))
            self.db.commit()

        except TunnelError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Transaction rolled back while allocating address: {e}")
            raise StoreError(f"Failed to allocate address: {e}") from e

        allocated = str(candidate)
        logger.info(f"Allocated address {allocated} from {network}")
        return allocated

    def pool_state(self) -> Optional[Dict[str, str]]:
        """
        Read current pool row without locking

        Returns:
            Dict with network_cidr and next_available_ip, or None
        """
        try:
            state = self.db.get(IPState, SINGLETON_ROW_ID)
            result = None
            if state is not None:
                result = {
                    "network_cidr": state.network_cidr,
                    "next_available_ip": state.next_available_ip,
                }
            self.db.commit()
            return result
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"Failed to read address pool: {e}") from e

    def get_pool_stats(self) -> Dict[str, int]:
        """
        Get pool statistics

        Returns:
            Dictionary with pool statistics

        Raises:
            NetworkNotInitializedError: If the pool row does not exist
        """
        state = self.pool_state()
        if state is None:
            raise NetworkNotInitializedError()

        network = ipaddress.ip_network(state["network_cidr"], strict=False)
        next_ip = ipaddress.ip_address(state["next_available_ip"])

        # IPv4 excludes network and broadcast, IPv6 only the network address
        reserved = 2 if network.version == 4 else 1
        total = max(network.num_addresses - reserved, 0)

        if next_ip in network:
            allocated = int(next_ip) - int(network.network_address) - 1
        else:
            allocated = total
        allocated = min(max(allocated, 0), total)

        return {
            "total_addresses": total,
            "allocated_addresses": allocated,
            "available_addresses": total - allocated,
            "utilization_percent": int((allocated / total) * 100) if total > 0 else 0
        }

    def _lock_state(self) -> Optional[IPState]:
        # SELECT ... FOR UPDATE on PostgreSQL; BEGIN IMMEDIATE covers SQLite
        return (
            self.db.query(IPState)
            .filter(IPState.id == SINGLETON_ROW_ID)
            .with_for_update()
            .one_or_none()
        )
