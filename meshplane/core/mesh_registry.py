# meshplane/core/mesh_registry.py
"""
Mesh Registry - Hub and spoke lifecycle
"""

from typing import Optional, List
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
import logging

from meshplane.database.models import (
    Hub, Spoke, HubType, EntityStatus, DeploymentStatus, HealthStatus
)
from meshplane.config import settings
from .audit import log_event
from .exceptions import AllocationExhausted, EntityNotFound, InvalidAddress
from .ipam import IPAMService, ipam_service, parse_cidr, parse_ip
from .keys import KeyPairGenerator, key_generator

logger = logging.getLogger(__name__)


class MeshRegistry:
    """
    Registry for the WireGuard hub/spoke graph

    Responsibilities:
    1. Create hubs with their network and keys
    2. Create spokes with an allocated tunnel address and keys
    3. Lookups used by deployment, rotation, drift and monitoring
    4. Decommission spokes and hubs (soft delete)
    """

    def __init__(
        self,
        ipam: Optional[IPAMService] = None,
        keygen: Optional[KeyPairGenerator] = None,
    ):
        self.ipam = ipam or ipam_service
        self.keygen = keygen or key_generator

    # =========================================================================
    # Hubs
    # =========================================================================

    def create_hub(
        self,
        db: Session,
        name: str,
        host: str,
        endpoint: str,
        network_cidr: str,
        hub_type: str = HubType.WORKSTATION.value,
        hub_ip: Optional[str] = None,
        listen_port: Optional[int] = None,
        interface_name: str = "wg0",
        dns_servers: Optional[List[str]] = None,
        description: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> Hub:
        """
        Create a hub

        Args:
            db: Database session
            name: Unique hub name
            host: Remote host the hub configuration is deployed to
            endpoint: Public address spokes dial
            network_cidr: Tunnel network (e.g., "10.8.0.0/24")
            hub_type: workstation, logging, gateway or customer
            hub_ip: Hub tunnel address, defaults to the first host address

        Returns:
            Created Hub

        Raises:
            InvalidCidr: If network_cidr is malformed
            InvalidAddress: If hub_ip is outside the network, or is its
                network or broadcast address (IPv4)
            KeypairGenerationFailure: If keys could not be minted
            ValueError: If the hub type is unknown or the name is taken
        """
        if hub_type not in {t.value for t in HubType}:
            raise ValueError(f"Unknown hub type: {hub_type}")

        if self.get_hub_by_name(db, name):
            raise ValueError(f"Hub '{name}' already exists")

        net = parse_cidr(network_cidr)
        if hub_ip is None:
            hub_ip = self.ipam.first_free_address(str(net))
        elif not self.ipam.contains_ip(str(net), hub_ip):
            raise InvalidAddress(f"Hub IP {hub_ip} is not in network {net}")
        elif net.version == 4 and net.prefixlen <= 30 and \
                parse_ip(hub_ip) in (net.network_address, net.broadcast_address):
            raise InvalidAddress(f"Hub IP {hub_ip} is the network or broadcast address of {net}")

        keys = self.keygen.generate()

        hub = Hub(
            name=name,
            description=description,
            hub_type=hub_type,
            host=host,
            endpoint=endpoint,
            network_cidr=str(net),
            hub_ip=str(parse_ip(hub_ip)),
            listen_port=listen_port or settings.DEFAULT_LISTEN_PORT,
            interface_name=interface_name,
            dns_servers=dns_servers or [],
            public_key=keys.public_key,
            private_key_encrypted=keys.private_key_encrypted,
            status=EntityStatus.ACTIVE.value,
            deployment_status=DeploymentStatus.PENDING.value,
            health_status=HealthStatus.PENDING.value,
        )

        try:
            db.add(hub)
            db.commit()
            db.refresh(hub)
        except IntegrityError as e:
            db.rollback()
            logger.error(f"Database error creating hub {name}: {e}")
            raise ValueError(f"Hub '{name}' already exists") from e

        log_event(
            db,
            event_type="hub_created",
            event_action="create",
            actor_type="admin" if admin_id else "system",
            actor_id=admin_id,
            target_type="hub",
            target_id=hub.id,
            details={"network_cidr": hub.network_cidr, "hub_ip": hub.hub_ip},
        )

        logger.info(f"Hub created: {hub.name} ({hub.hub_type}) {hub.hub_ip} in {hub.network_cidr}")
        return hub

    def get_hub(self, db: Session, hub_id: int) -> Hub:
        hub = db.query(Hub).filter(Hub.id == hub_id).first()
        if not hub:
            raise EntityNotFound(f"Hub {hub_id} not found")
        return hub

    def get_hub_by_name(self, db: Session, name: str) -> Optional[Hub]:
        return db.query(Hub).filter(Hub.name == name).first()

    def list_hubs(
        self,
        db: Session,
        status: Optional[str] = None,
        hub_type: Optional[str] = None,
    ) -> List[Hub]:
        """Get hubs with optional filters"""
        query = db.query(Hub)
        if status:
            query = query.filter(Hub.status == status)
        if hub_type:
            query = query.filter(Hub.hub_type == hub_type)
        return query.order_by(Hub.id).all()

    # =========================================================================
    # Spokes
    # =========================================================================

    def allocate_spoke_ip(self, db: Session, hub: Hub) -> str:
        """
        Lowest free address of the hub network

        The hub address and every spoke row of the hub are excluded,
        decommissioned spokes included.

        Raises:
            AllocationExhausted: If the hub network is full
        """
        rows = db.query(Spoke.allocated_ip).filter(Spoke.hub_id == hub.id).all()
        taken = [hub.hub_ip] + [row[0] for row in rows]
        return self.ipam.first_free_address(hub.network_cidr, taken)

    def create_spoke(
        self,
        db: Session,
        hub: Hub,
        name: str,
        host: Optional[str] = None,
        interface_name: str = "wg0",
        dns_servers: Optional[List[str]] = None,
        description: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> Spoke:
        """
        Create a spoke attached to a hub

        Keys are minted before anything is written, so a key failure
        leaves no row behind.

        Raises:
            AllocationExhausted: If the hub network is full
            KeypairGenerationFailure: If keys could not be minted
            ValueError: If the hub is decommissioned or the name is taken
        """
        if hub.status == EntityStatus.DECOMMISSIONED.value:
            raise ValueError(f"Hub '{hub.name}' is decommissioned")

        if db.query(Spoke).filter(Spoke.hub_id == hub.id, Spoke.name == name).first():
            raise ValueError(f"Spoke '{name}' already exists on hub '{hub.name}'")

        keys = self.keygen.generate()

        for attempt in range(1, self.ipam.retry_attempts + 1):
            allocated_ip = self.allocate_spoke_ip(db, hub)
            spoke = Spoke(
                hub_id=hub.id,
                name=name,
                description=description,
                host=host,
                allocated_ip=allocated_ip,
                interface_name=interface_name,
                dns_servers=dns_servers or [],
                public_key=keys.public_key,
                private_key_encrypted=keys.private_key_encrypted,
                status=EntityStatus.ACTIVE.value,
                deployment_status=DeploymentStatus.PENDING.value,
            )
            try:
                db.add(spoke)
                db.commit()
                db.refresh(spoke)
            except IntegrityError:
                db.rollback()
                logger.warning(
                    f"Spoke IP {allocated_ip} on hub {hub.name} was taken concurrently "
                    f"(attempt {attempt}/{self.ipam.retry_attempts})"
                )
                continue

            log_event(
                db,
                event_type="spoke_created",
                event_action="create",
                actor_type="admin" if admin_id else "system",
                actor_id=admin_id,
                target_type="spoke",
                target_id=spoke.id,
                details={"hub_id": hub.id, "allocated_ip": allocated_ip},
            )
            logger.info(f"Spoke created: {spoke.name} -> {allocated_ip} on hub {hub.name}")
            return spoke

        raise AllocationExhausted(
            f"Could not allocate a spoke IP on hub {hub.name} after {self.ipam.retry_attempts} attempts"
        )

    def get_spoke(self, db: Session, spoke_id: int) -> Spoke:
        spoke = db.query(Spoke).filter(Spoke.id == spoke_id).first()
        if not spoke:
            raise EntityNotFound(f"Spoke {spoke_id} not found")
        return spoke

    def list_spokes(
        self,
        db: Session,
        hub: Optional[Hub] = None,
        status: Optional[str] = None,
    ) -> List[Spoke]:
        query = db.query(Spoke)
        if hub is not None:
            query = query.filter(Spoke.hub_id == hub.id)
        if status:
            query = query.filter(Spoke.status == status)
        return query.order_by(Spoke.id).all()

    def active_spokes(self, db: Session, hub: Hub) -> List[Spoke]:
        return self.list_spokes(db, hub=hub, status=EntityStatus.ACTIVE.value)

    def find_spoke_by_public_key(self, db: Session, hub: Hub, public_key: str) -> Optional[Spoke]:
        return db.query(Spoke).filter(
            Spoke.hub_id == hub.id,
            Spoke.public_key == public_key,
        ).first()

    # =========================================================================
    # Decommissioning
    # =========================================================================

    def decommission_spoke(self, db: Session, spoke: Spoke, admin_id: Optional[str] = None) -> Spoke:
        """Soft-remove a spoke; its address stays held by the row"""
        spoke.status = EntityStatus.DECOMMISSIONED.value
        db.commit()
        db.refresh(spoke)

        log_event(
            db,
            event_type="spoke_decommissioned",
            event_action="update",
            actor_type="admin" if admin_id else "system",
            actor_id=admin_id,
            target_type="spoke",
            target_id=spoke.id,
        )
        logger.info(f"Spoke decommissioned: {spoke.display_name}")
        return spoke

    def decommission_hub(self, db: Session, hub: Hub, admin_id: Optional[str] = None) -> Hub:
        """Soft-remove a hub together with all of its spokes"""
        for spoke in hub.spokes:
            spoke.status = EntityStatus.DECOMMISSIONED.value
        hub.status = EntityStatus.DECOMMISSIONED.value
        db.commit()
        db.refresh(hub)

        log_event(
            db,
            event_type="hub_decommissioned",
            event_action="update",
            actor_type="admin" if admin_id else "system",
            actor_id=admin_id,
            target_type="hub",
            target_id=hub.id,
            details={"spokes": len(hub.spokes)},
        )
        logger.info(f"Hub decommissioned: {hub.name} ({len(hub.spokes)} spokes)")
        return hub


# Singleton instance
mesh_registry = MeshRegistry()
