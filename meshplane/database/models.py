# meshplane/database/models.py
"""
SQLAlchemy Database Models for the Meshplane Control Plane
"""

from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, DateTime, Text, JSON,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.types import TypeDecorator
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import enum

Base = declarative_base()


class AddressCount(TypeDecorator):
    """
    Address count stored as decimal text

    IPv6 networks hold up to 2**128 addresses, past any SQL integer type.
    """
    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(int(value))

    def process_result_value(self, value, dialect):
        return None if value is None else int(value)


class NetworkType(str, enum.Enum):
    """Network classification tags"""
    PUBLIC = "public"
    PRIVATE = "private"
    DMZ = "dmz"
    MANAGEMENT = "management"
    STORAGE = "storage"
    CLUSTER = "cluster"
    CONTAINER = "container"
    VPN = "vpn"
    OTHER = "other"


class AddressStatus(str, enum.Enum):
    """IP address lifecycle status"""
    AVAILABLE = "available"
    ALLOCATED = "allocated"
    RESERVED = "reserved"
    DHCP_POOL = "dhcp_pool"
    NETWORK = "network"
    BROADCAST = "broadcast"
    GATEWAY = "gateway"
    DNS = "dns"
    NTP = "ntp"
    BLACKLISTED = "blacklisted"


class ReservationType(str, enum.Enum):
    STATIC_RANGE = "static_range"
    FUTURE_ALLOCATION = "future_allocation"


class HubType(str, enum.Enum):
    """WireGuard hub flavours"""
    WORKSTATION = "workstation"
    LOGGING = "logging"
    GATEWAY = "gateway"
    CUSTOMER = "customer"


class EntityStatus(str, enum.Enum):
    """Administrative status of a hub or spoke"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DECOMMISSIONED = "decommissioned"


class DeploymentStatus(str, enum.Enum):
    PENDING = "pending"
    DEPLOYED = "deployed"
    FAILED = "failed"


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    PENDING = "pending"


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    STALE = "stale"


# =============================================================================
# IPAM
# =============================================================================

class Network(Base):
    """
    IP network (subnet) table
    Networks may be nested through parent_network_id for hierarchical subnetting
    """
    __tablename__ = "ip_networks"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    # Addressing
    cidr = Column(String(43), unique=True, nullable=False, index=True,
                  comment="Network in CIDR notation (e.g., 10.0.0.0/24)")
    network_address = Column(String(39), nullable=False,
                             comment="Network address without prefix")
    prefix_length = Column(Integer, nullable=False)
    ip_version = Column(Integer, default=4, nullable=False, index=True,
                        comment="4 or 6")
    gateway = Column(String(39), nullable=True)
    dns_servers = Column(JSON, nullable=True,
                         comment="List of DNS server addresses")
    network_type = Column(String(20), default=NetworkType.PRIVATE.value, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    total_addresses = Column(AddressCount, default=0, nullable=False,
                             comment="Usable addresses (IPv4 excludes network and broadcast)")

    parent_network_id = Column(Integer, ForeignKey("ip_networks.id", ondelete="SET NULL"),
                               nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    parent = relationship("Network", remote_side=[id], backref="children")
    addresses = relationship("Address", back_populates="network",
                             cascade="all, delete-orphan")
    reservations = relationship("Reservation", back_populates="network",
                                cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_networks_active_type', 'is_active', 'network_type'),
    )

    def __repr__(self):
        return f"<Network(id={self.id}, cidr={self.cidr}, type={self.network_type})>"


class Address(Base):
    """
    IP address table - one row per tracked address of a network
    Status changes go through IPAMService.allocate()/release()
    """
    __tablename__ = "ip_addresses"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    network_id = Column(Integer, ForeignKey("ip_networks.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    ip_address = Column(String(39), nullable=False)

    status = Column(String(20), default=AddressStatus.AVAILABLE.value, nullable=False, index=True)

    # Allocation metadata
    hostname = Column(String(253), nullable=True, index=True)
    fqdn = Column(String(253), nullable=True)
    mac_address = Column(String(17), nullable=True)
    owner = Column(String(100), nullable=True,
                   comment="Owner tag (customer, team)")
    service = Column(String(100), nullable=True,
                     comment="Service tag (web, mail, wireguard)")
    description = Column(Text, nullable=True)
    allocated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    network = relationship("Network", back_populates="addresses")

    __table_args__ = (
        UniqueConstraint('network_id', 'ip_address', name='uq_address_network_ip'),
    )

    def __repr__(self):
        return f"<Address(id={self.id}, ip={self.ip_address}, status={self.status})>"


class Reservation(Base):
    """IP range reservation inside a network"""
    __tablename__ = "ip_reservations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    network_id = Column(Integer, ForeignKey("ip_networks.id", ondelete="CASCADE"),
                        nullable=False, index=True)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    start_ip = Column(String(39), nullable=False)
    end_ip = Column(String(39), nullable=False)
    reservation_type = Column(String(30), default=ReservationType.STATIC_RANGE.value, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    address_count = Column(AddressCount, default=0, nullable=False,
                           comment="end - start + 1, recomputed on every range change")

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    network = relationship("Network", back_populates="reservations")


# =============================================================================
# WireGuard mesh
# =============================================================================

class Hub(Base):
    """
    WireGuard hub - rendezvous point for one or more spokes
    """
    __tablename__ = "wireguard_hubs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    name = Column(String(100), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    hub_type = Column(String(20), default=HubType.WORKSTATION.value, nullable=False, index=True)

    # Where the hub lives
    host = Column(String(253), nullable=False,
                  comment="Remote host identifier used by the executor")
    endpoint = Column(String(253), nullable=False,
                      comment="Public host name or IP spokes dial")

    # Network
    network_cidr = Column(String(43), nullable=False)
    hub_ip = Column(String(39), nullable=False)
    listen_port = Column(Integer, default=51820, nullable=False)
    interface_name = Column(String(15), default="wg0", nullable=False)
    dns_servers = Column(JSON, nullable=True)

    # Keys
    public_key = Column(String(44), unique=True, nullable=False,
                        comment="WireGuard public key (Base64)")
    private_key_encrypted = Column(Text, nullable=False,
                                   comment="Encrypted private key")

    # State
    status = Column(String(20), default=EntityStatus.ACTIVE.value, nullable=False, index=True)
    deployment_status = Column(String(20), default=DeploymentStatus.PENDING.value, nullable=False)
    health_status = Column(String(20), default=HealthStatus.PENDING.value, nullable=False)
    last_error = Column(Text, nullable=True)

    keys_rotated_at = Column(DateTime, nullable=True)
    last_deployed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    spokes = relationship("Spoke", back_populates="hub", order_by="Spoke.id")

    __table_args__ = (
        Index('ix_hubs_status_deployment', 'status', 'deployment_status'),
    )

    def __repr__(self):
        return f"<Hub(id={self.id}, name={self.name}, type={self.hub_type}, status={self.status})>"

    @property
    def is_active(self) -> bool:
        return self.status == EntityStatus.ACTIVE.value

    @property
    def display_name(self) -> str:
        return f"{self.name} ({self.hub_type})"


class Spoke(Base):
    """
    WireGuard spoke - peer attached to exactly one hub
    """
    __tablename__ = "wireguard_spokes"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    hub_id = Column(Integer, ForeignKey("wireguard_hubs.id", ondelete="CASCADE"),
                    nullable=False, index=True)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    host = Column(String(253), nullable=True,
                  comment="Remote host; NULL means config is stored for download")

    allocated_ip = Column(String(39), nullable=False)
    interface_name = Column(String(15), default="wg0", nullable=False)
    dns_servers = Column(JSON, nullable=True)

    public_key = Column(String(44), unique=True, nullable=False)
    private_key_encrypted = Column(Text, nullable=False)

    status = Column(String(20), default=EntityStatus.ACTIVE.value, nullable=False, index=True)
    deployment_status = Column(String(20), default=DeploymentStatus.PENDING.value, nullable=False)
    last_error = Column(Text, nullable=True)

    # Stored config for hostless spokes
    current_config = Column(Text, nullable=True)
    config_checksum = Column(String(64), nullable=True)

    keys_rotated_at = Column(DateTime, nullable=True)
    last_deployed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    hub = relationship("Hub", back_populates="spokes")

    __table_args__ = (
        UniqueConstraint('hub_id', 'allocated_ip', name='uq_spoke_hub_ip'),
        UniqueConstraint('hub_id', 'name', name='uq_spoke_hub_name'),
    )

    def __repr__(self):
        return f"<Spoke(id={self.id}, name={self.name}, ip={self.allocated_ip}, status={self.status})>"

    @property
    def is_active(self) -> bool:
        return self.status == EntityStatus.ACTIVE.value

    @property
    def display_name(self) -> str:
        return f"{self.name} (hub: {self.hub.name})" if self.hub else self.name


class Connection(Base):
    """
    Live peer observation, upserted by the connection monitor
    Never a source of truth for deployment state
    """
    __tablename__ = "wireguard_connections"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    hub_id = Column(Integer, ForeignKey("wireguard_hubs.id", ondelete="CASCADE"),
                    nullable=False, index=True)
    spoke_id = Column(Integer, ForeignKey("wireguard_spokes.id", ondelete="SET NULL"),
                      nullable=True, index=True)
    peer_public_key = Column(String(44), nullable=False)

    endpoint = Column(String(64), nullable=True)
    last_handshake = Column(DateTime, nullable=True)
    bytes_received = Column(BigInteger, default=0, nullable=False)
    bytes_sent = Column(BigInteger, default=0, nullable=False)
    connection_status = Column(String(20), default=ConnectionStatus.STALE.value, nullable=False)
    last_seen = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('hub_id', 'peer_public_key', name='uq_connection_hub_peer'),
    )


class KeyBackup(Base):
    """Snapshot of a keypair taken before rotation"""
    __tablename__ = "wireguard_key_backups"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_type = Column(String(10), nullable=False, comment="hub or spoke")
    entity_id = Column(Integer, nullable=False, index=True)
    entity_name = Column(String(100), nullable=False)
    old_public_key = Column(String(44), nullable=False)
    old_private_key_encrypted = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class AuditLog(Base):
    """
    Audit Log table - records allocation, deployment and rotation events
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    event_type = Column(String(50), nullable=False, index=True,
                        comment="Event type: hub_created, deployment, key_rotation, etc.")
    event_action = Column(String(20), nullable=False,
                          comment="Action: create, update, delete")

    actor_type = Column(String(20), nullable=False,
                        comment="Who performed: admin, system")
    actor_id = Column(String(100), nullable=True)

    target_type = Column(String(50), nullable=True)
    target_id = Column(String(100), nullable=True)

    details = Column(Text, nullable=True,
                     comment="JSON-encoded additional details")
    status = Column(String(20), default="success", nullable=False,
                    comment="Outcome: success, failure")

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('ix_audit_event_created', 'event_type', 'created_at'),
    )
