# meshplane/core/ipam.py
"""
IP Address Management (IPAM) Service
Networks, addresses and reservations with CIDR and IPv6 arithmetic
"""

import ipaddress
from typing import Optional, List, Iterable, Union
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import datetime
import logging

from meshplane.database.models import (
    Network, Address, Reservation, AddressStatus, NetworkType, ReservationType
)
from meshplane.config import settings
from .exceptions import (
    AllocationExhausted, InvalidCidr, InvalidAddress, AddressStateError, EntityNotFound
)

logger = logging.getLogger(__name__)

NetworkLike = Union[Network, str]

# Metadata columns cleared on release
_ADDRESS_DETAILS = ("hostname", "fqdn", "mac_address", "owner", "service", "description")

# Editable reservation columns
_RESERVATION_FIELDS = ("name", "description", "reservation_type", "is_active", "start_ip", "end_ip")


def parse_cidr(cidr: str):
    """
    Parse a CIDR string into an ipaddress network (host bits are masked off)

    Raises:
        InvalidCidr: If the string is not a valid network
    """
    try:
        return ipaddress.ip_network(str(cidr).strip(), strict=False)
    except (ValueError, TypeError) as e:
        raise InvalidCidr(f"Invalid CIDR '{cidr}': {e}") from e


def parse_ip(ip: str):
    """Parse a single address, dropping any /prefix suffix"""
    ip_only = str(ip).split('/')[0].strip()
    try:
        return ipaddress.ip_address(ip_only)
    except ValueError as e:
        raise InvalidAddress(f"Invalid IP address '{ip}': {e}") from e


def _as_network(network: NetworkLike):
    if isinstance(network, Network):
        return parse_cidr(network.cidr)
    return parse_cidr(network)


def count_usable(prefix_length: int, ip_version: int = 4) -> int:
    """Usable address count: IPv4 drops network and broadcast, IPv6 counts every address"""
    if ip_version == 6:
        return 2 ** (128 - prefix_length)
    return max(2 ** (32 - prefix_length) - 2, 0)


class IPAMService:
    """
    IPAM Service for networks, addresses and reservations

    Features:
    - Network and hierarchical subnet creation
    - Containment checks and IPv6 expansion
    - Next free address search (lowest first)
    - Address allocation and release with status guards
    - Reservation bookkeeping and overlap lookup
    - Reverse DNS zone and PTR labels for IPv6
    """

    def __init__(self, retry_attempts: Optional[int] = None):
        self.retry_attempts = retry_attempts or settings.ALLOCATION_RETRY_ATTEMPTS

    # =========================================================================
    # Networks
    # =========================================================================

    def create_network(
        self,
        db: Session,
        cidr: str,
        name: str,
        network_type: str = NetworkType.PRIVATE.value,
        description: Optional[str] = None,
        gateway: Optional[str] = None,
        dns_servers: Optional[List[str]] = None,
        parent: Optional[Network] = None,
    ) -> Network:
        """
        Create a network from CIDR notation

        Args:
            db: Database session
            cidr: Network in CIDR notation (e.g., "10.0.0.0/24")
            name: Human readable name
            network_type: One of NetworkType
            parent: Optional parent network for hierarchical subnetting

        Returns:
            Created Network

        Raises:
            InvalidCidr: If the CIDR or network type is malformed
            InvalidAddress: If the gateway is outside the network
        """
        net = parse_cidr(cidr)

        if network_type not in {t.value for t in NetworkType}:
            raise InvalidCidr(f"Unknown network type: {network_type}")

        if gateway and parse_ip(gateway) not in net:
            raise InvalidAddress(f"Gateway {gateway} is not in network {net}")

        network = Network(
            name=name,
            description=description,
            cidr=str(net),
            network_address=str(net.network_address),
            prefix_length=net.prefixlen,
            ip_version=net.version,
            gateway=gateway,
            dns_servers=dns_servers or [],
            network_type=network_type,
            is_active=True,
            total_addresses=count_usable(net.prefixlen, net.version),
            parent_network_id=parent.id if parent else None,
        )
        db.add(network)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise InvalidCidr(f"Network {net} already exists") from e
        db.refresh(network)

        logger.info(f"Created network {network.cidr} ({network.name})")
        return network

    def create_subnet(self, db: Session, parent: Network, cidr: str, name: str, **kwargs) -> Network:
        """Create a child network that must lie entirely within its parent"""
        child = parse_cidr(cidr)
        outer = _as_network(parent)

        if child.version != outer.version or not child.subnet_of(outer):
            raise InvalidCidr(f"Subnet {child} is not within parent network {outer}")

        return self.create_network(db, str(child), name, parent=parent, **kwargs)

    def get_network(self, db: Session, network_id: int) -> Network:
        network = db.query(Network).filter(Network.id == network_id).first()
        if not network:
            raise EntityNotFound(f"Network {network_id} not found")
        return network

    def list_networks(self, db: Session, active_only: bool = False) -> List[Network]:
        query = db.query(Network)
        if active_only:
            query = query.filter(Network.is_active == True)  # noqa: E712
        return query.order_by(Network.id).all()

    # =========================================================================
    # Address arithmetic
    # =========================================================================

    @staticmethod
    def total_addresses(network: NetworkLike) -> int:
        """Usable address count of a network (pure function of prefix and version)"""
        if isinstance(network, Network):
            return count_usable(network.prefix_length, int(network.ip_version))
        net = parse_cidr(network)
        return count_usable(net.prefixlen, net.version)

    @staticmethod
    def expand_ipv6(ip: str) -> str:
        """
        Expand an IPv6 address to eight four-hex-digit groups

        Already expanded input is returned unchanged.
        """
        try:
            return ipaddress.IPv6Address(str(ip).split('/')[0].strip()).exploded
        except ValueError as e:
            raise InvalidAddress(f"Invalid IPv6 address '{ip}': {e}") from e

    def contains_ip(self, network: NetworkLike, ip: str) -> bool:
        """
        Check if a network contains an address

        Both values are masked to the network prefix and compared.
        An address of the other IP version is never contained.

        Raises:
            InvalidAddress: If the address is malformed
        """
        net = _as_network(network)
        if net.version == 6 and ':' in str(ip):
            ip = self.expand_ipv6(ip)
        addr = parse_ip(ip)

        if addr.version != net.version:
            return False

        host_bits = net.max_prefixlen - net.prefixlen
        mask = ((1 << net.max_prefixlen) - 1) ^ ((1 << host_bits) - 1)
        return (int(addr) & mask) == (int(net.network_address) & mask)

    def first_free_address(
        self, network: NetworkLike, taken: Iterable[str] = ()
    ) -> str:
        """
        Lowest address in the scan range that is not in `taken`

        The scan covers offsets 1 .. total-1 from the network address.

        Raises:
            AllocationExhausted: If every address in the range is taken
        """
        net = _as_network(network)
        total = count_usable(net.prefixlen, net.version)
        used = {int(parse_ip(ip)) for ip in taken if ip}
        base = int(net.network_address)

        for offset in range(1, total):
            candidate = base + offset
            if candidate not in used:
                return str(ipaddress.ip_address(candidate))

        logger.error(f"Address space exhausted in {net}")
        raise AllocationExhausted(f"No available addresses in {net}")

    def next_available_ip(
        self, db: Session, network: Network, exclude: Iterable[str] = ()
    ) -> str:
        """
        Find the lowest free address of a network

        Addresses whose status is not `available` are skipped, as is
        anything in `exclude`.

        Raises:
            AllocationExhausted: If the network has no free address
        """
        rows = db.query(Address.ip_address).filter(
            Address.network_id == network.id,
            Address.status != AddressStatus.AVAILABLE.value,
        ).all()
        taken = [row[0] for row in rows]
        taken.extend(exclude)
        return self.first_free_address(network, taken)

    def utilization(self, db: Session, network: Network) -> float:
        """Percentage of the network in use, rounded to 2 decimals"""
        total = self.total_addresses(network)
        if total <= 0:
            return 0.0
        used = self._used_count(db, network) + self._reserved_count(db, network)
        return round((used / total) * 100, 2)

    def get_network_stats(self, db: Session, network: Network) -> dict:
        """
        Get allocation statistics for a network

        Returns:
            Dictionary with allocation stats
        """
        total = self.total_addresses(network)
        used = self._used_count(db, network)
        reserved = self._reserved_count(db, network)

        return {
            "network": network.cidr,
            "total": total,
            "used": used,
            "reserved": reserved,
            "available": max(total - used - reserved, 0),
            "utilization_percent": self.utilization(db, network),
        }

    def _used_count(self, db: Session, network: Network) -> int:
        return db.query(Address).filter(
            Address.network_id == network.id,
            Address.status != AddressStatus.AVAILABLE.value,
        ).count()

    def _reserved_count(self, db: Session, network: Network) -> int:
        reservations = db.query(Reservation).filter(
            Reservation.network_id == network.id,
            Reservation.is_active == True,  # noqa: E712
        ).all()
        return sum(r.address_count for r in reservations)

    # =========================================================================
    # Reverse DNS
    # =========================================================================

    def reverse_zone(self, network: NetworkLike) -> Optional[str]:
        """
        Reverse DNS zone of an IPv6 network (None for IPv4)

        Example: 2001:db8::/32 -> 8.b.d.0.1.0.0.2.ip6.arpa
        """
        net = _as_network(network)
        if net.version != 6:
            return None

        nibbles = self.expand_ipv6(str(net.network_address)).replace(':', '')
        zone_nibbles = nibbles[:net.prefixlen // 4]
        return '.'.join(reversed(zone_nibbles)) + '.ip6.arpa'

    def ptr_label(self, network: NetworkLike, ip: str) -> Optional[str]:
        """Host part nibbles of `ip`, reversed, for a PTR record inside the reverse zone"""
        net = _as_network(network)
        if net.version != 6 or not self.contains_ip(net.with_prefixlen, ip):
            return None

        nibbles = self.expand_ipv6(ip).replace(':', '')
        host_nibbles = nibbles[net.prefixlen // 4:]
        return '.'.join(reversed(host_nibbles))

    # =========================================================================
    # Address lifecycle
    # =========================================================================

    def get_address(self, db: Session, network: Network, ip: str) -> Optional[Address]:
        normalized = str(parse_ip(ip))
        return db.query(Address).filter(
            Address.network_id == network.id,
            Address.ip_address == normalized,
        ).first()

    def add_address(
        self, db: Session, network: Network, ip: str,
        status: str = AddressStatus.AVAILABLE.value,
    ) -> Address:
        """
        Track an address of a network

        Raises:
            InvalidAddress: If the address is outside the network
            AddressStateError: If the address is already tracked
        """
        if not self.contains_ip(network, ip):
            raise InvalidAddress(f"IP {ip} is not in network {network.cidr}")

        address = Address(network_id=network.id, ip_address=str(parse_ip(ip)), status=status)
        db.add(address)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise AddressStateError(f"IP {ip} is already tracked in {network.cidr}") from e
        db.refresh(address)
        return address

    def allocate(self, db: Session, address: Address, **details) -> Address:
        """
        Allocate a tracked address

        Args:
            db: Database session
            address: Address row, must currently be available
            **details: hostname, fqdn, mac_address, owner, service, description

        Raises:
            AddressStateError: If the address is not available; nothing is changed
        """
        if address.status != AddressStatus.AVAILABLE.value:
            raise AddressStateError(
                f"IP {address.ip_address} is {address.status}, cannot allocate"
            )

        unknown = set(details) - set(_ADDRESS_DETAILS)
        if unknown:
            raise InvalidAddress(f"Unknown address fields: {', '.join(sorted(unknown))}")

        address.status = AddressStatus.ALLOCATED.value
        address.allocated_at = datetime.utcnow()
        for field, value in details.items():
            setattr(address, field, value)

        db.commit()
        db.refresh(address)

        logger.info(f"Allocated IP {address.ip_address} (hostname={address.hostname})")
        return address

    def release(self, db: Session, address: Address) -> Address:
        """
        Return an address to the pool and clear its metadata

        Raises:
            AddressStateError: If the address is already available
        """
        if address.status == AddressStatus.AVAILABLE.value:
            raise AddressStateError(f"IP {address.ip_address} is already available")

        address.status = AddressStatus.AVAILABLE.value
        address.allocated_at = None
        for field in _ADDRESS_DETAILS:
            setattr(address, field, None)

        db.commit()
        db.refresh(address)

        logger.info(f"Released IP {address.ip_address}")
        return address

    def allocate_next(self, db: Session, network: Network, **details) -> Address:
        """
        Allocate the lowest free address of a network

        A concurrent writer taking the same address trips the
        (network_id, ip_address) constraint; the search is then repeated.

        Raises:
            AllocationExhausted: If no address is free or every attempt conflicted
        """
        for attempt in range(1, self.retry_attempts + 1):
            ip = self.next_available_ip(db, network)
            address = self.get_address(db, network, ip)

            if address is None:
                address = Address(
                    network_id=network.id,
                    ip_address=ip,
                    status=AddressStatus.AVAILABLE.value,
                )
                db.add(address)
                try:
                    db.flush()
                except IntegrityError:
                    db.rollback()
                    logger.warning(
                        f"Allocation conflict on {ip} in {network.cidr} "
                        f"(attempt {attempt}/{self.retry_attempts})"
                    )
                    continue

            return self.allocate(db, address, **details)

        raise AllocationExhausted(
            f"Could not allocate in {network.cidr} after {self.retry_attempts} attempts"
        )

    # =========================================================================
    # Reservations
    # =========================================================================

    def _validate_range(self, network: Network, start_ip: str, end_ip: str) -> int:
        start = parse_ip(start_ip)
        end = parse_ip(end_ip)

        for ip in (start_ip, end_ip):
            if not self.contains_ip(network, ip):
                raise InvalidAddress(f"IP {ip} is not in network {network.cidr}")

        if int(start) > int(end):
            raise InvalidAddress(f"Range start {start_ip} is after end {end_ip}")

        return int(end) - int(start) + 1

    def create_reservation(
        self,
        db: Session,
        network: Network,
        name: str,
        start_ip: str,
        end_ip: str,
        reservation_type: str = ReservationType.STATIC_RANGE.value,
        description: Optional[str] = None,
    ) -> Reservation:
        """
        Reserve an inclusive address range

        Overlap with other reservations is not checked here;
        use find_overlapping_reservations() first when it matters.
        """
        count = self._validate_range(network, start_ip, end_ip)

        reservation = Reservation(
            network_id=network.id,
            name=name,
            description=description,
            start_ip=str(parse_ip(start_ip)),
            end_ip=str(parse_ip(end_ip)),
            reservation_type=reservation_type,
            is_active=True,
            address_count=count,
        )
        db.add(reservation)
        db.commit()
        db.refresh(reservation)

        logger.info(f"Reserved {reservation.start_ip}-{reservation.end_ip} ({count} addresses) in {network.cidr}")
        return reservation

    def update_reservation(self, db: Session, reservation: Reservation, **changes) -> Reservation:
        """
        Update a reservation; address_count is recomputed from the resulting range

        The row is left untouched when any change is rejected.
        """
        unknown = set(changes) - set(_RESERVATION_FIELDS)
        if unknown:
            raise InvalidAddress(f"Unknown reservation fields: {', '.join(sorted(unknown))}")

        start_ip = changes.pop("start_ip", reservation.start_ip)
        end_ip = changes.pop("end_ip", reservation.end_ip)
        count = self._validate_range(reservation.network, start_ip, end_ip)

        reservation.address_count = count
        reservation.start_ip = str(parse_ip(start_ip))
        reservation.end_ip = str(parse_ip(end_ip))
        for field, value in changes.items():
            setattr(reservation, field, value)

        db.commit()
        db.refresh(reservation)
        return reservation

    @staticmethod
    def reservation_contains(reservation: Reservation, ip: str) -> bool:
        value = int(parse_ip(ip))
        return int(parse_ip(reservation.start_ip)) <= value <= int(parse_ip(reservation.end_ip))

    def find_overlapping_reservations(
        self,
        db: Session,
        network: Network,
        start_ip: str,
        end_ip: str,
        exclude_id: Optional[int] = None,
    ) -> List[Reservation]:
        """Active reservations of the network whose range intersects [start_ip, end_ip]"""
        start = int(parse_ip(start_ip))
        end = int(parse_ip(end_ip))

        query = db.query(Reservation).filter(
            Reservation.network_id == network.id,
            Reservation.is_active == True,  # noqa: E712
        )
        if exclude_id is not None:
            query = query.filter(Reservation.id != exclude_id)

        return [
            r for r in query.all()
            if int(parse_ip(r.start_ip)) <= end and start <= int(parse_ip(r.end_ip))
        ]


# Singleton instance
ipam_service = IPAMService()
