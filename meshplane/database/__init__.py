# meshplane/database/__init__.py
"""
Database modules
"""

from .session import get_db, init_db, db_manager, SessionLocal, engine
from .models import (
    Base,
    Network,
    Address,
    Reservation,
    Hub,
    Spoke,
    Connection,
    KeyBackup,
    AuditLog,
    AddressStatus,
    DeploymentStatus,
    EntityStatus,
    HealthStatus,
    HubType,
)

__all__ = [
    # Session
    "get_db",
    "init_db",
    "db_manager",
    "SessionLocal",
    "engine",
    # Models
    "Base",
    "Network",
    "Address",
    "Reservation",
    "Hub",
    "Spoke",
    "Connection",
    "KeyBackup",
    "AuditLog",
    # Enums
    "AddressStatus",
    "DeploymentStatus",
    "EntityStatus",
    "HealthStatus",
    "HubType",
]
