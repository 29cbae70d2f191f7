# meshplane/schemas/__init__.py
"""
Pydantic Schemas for the Meshplane API
Organized by domain: ipam, mesh
"""

from .base import BaseResponse, ErrorResponse, HealthResponse
from .ipam import (
    NetworkCreate,
    NetworkResponse,
    NetworkStats,
    AddressAllocate,
    AddressResponse,
    ReservationCreate,
    ReservationUpdate,
    ReservationResponse,
    NextIpResponse,
    ReverseZoneResponse,
)
from .mesh import (
    HubCreate,
    HubResponse,
    SpokeCreate,
    SpokeResponse,
    SpokeConfigResponse,
    RotationRequest,
    RotationResponse,
    DeploymentResultResponse,
    DeploymentStatusResponse,
    BulkResultResponse,
    SyncReportResponse,
    RepairResponse,
    ConnectionResponse,
    PeerObservationResponse,
)

__all__ = [
    # Base
    "BaseResponse",
    "ErrorResponse",
    "HealthResponse",
    # IPAM
    "NetworkCreate",
    "NetworkResponse",
    "NetworkStats",
    "AddressAllocate",
    "AddressResponse",
    "ReservationCreate",
    "ReservationUpdate",
    "ReservationResponse",
    "NextIpResponse",
    "ReverseZoneResponse",
    # Mesh
    "HubCreate",
    "HubResponse",
    "SpokeCreate",
    "SpokeResponse",
    "SpokeConfigResponse",
    "RotationRequest",
    "RotationResponse",
    "DeploymentResultResponse",
    "DeploymentStatusResponse",
    "BulkResultResponse",
    "SyncReportResponse",
    "RepairResponse",
    "ConnectionResponse",
    "PeerObservationResponse",
]
