# meshplane/schemas/mesh.py
"""
Hub, spoke and orchestration schemas
Private keys never appear in any response
"""

from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import Optional, List
from datetime import datetime
import ipaddress
import re

from meshplane.database.models import HubType

_INTERFACE_RE = re.compile(r"^[a-zA-Z0-9_=+.-]{1,15}$")


def _check_interface(v: str) -> str:
    if not _INTERFACE_RE.match(v):
        raise ValueError("Interface name must be 1-15 characters of [a-zA-Z0-9_=+.-]")
    return v


# === Request Schemas ===

class HubCreate(BaseModel):
    """Schema for creating a hub"""
    name: str = Field(..., min_length=1, max_length=100, examples=["hub-syd-01"])
    hub_type: HubType = HubType.WORKSTATION
    host: str = Field(..., min_length=1, max_length=253, description="SSH host the hub runs on")
    endpoint: str = Field(..., min_length=1, max_length=253, description="Public address spokes dial")
    network_cidr: str = Field(..., examples=["10.8.0.0/24"])
    hub_ip: Optional[str] = None
    listen_port: Optional[int] = Field(None, ge=1, le=65535)
    interface_name: str = "wg0"
    dns_servers: List[str] = Field(default_factory=list)
    description: Optional[str] = None

    @field_validator("network_cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        ipaddress.ip_network(v, strict=False)
        return v

    @field_validator("interface_name")
    @classmethod
    def validate_interface(cls, v: str) -> str:
        return _check_interface(v)


class SpokeCreate(BaseModel):
    """Schema for creating a spoke; omit host to store the config for download"""
    name: str = Field(..., min_length=1, max_length=100)
    host: Optional[str] = Field(None, max_length=253)
    interface_name: str = "wg0"
    dns_servers: List[str] = Field(default_factory=list)
    description: Optional[str] = None

    @field_validator("interface_name")
    @classmethod
    def validate_interface(cls, v: str) -> str:
        return _check_interface(v)


class RotationRequest(BaseModel):
    backup: bool = False


# === Response Schemas ===

class HubResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    hub_type: str
    host: str
    endpoint: str
    network_cidr: str
    hub_ip: str
    listen_port: int
    interface_name: str
    public_key: str
    status: str
    deployment_status: str
    health_status: str
    last_error: Optional[str] = None
    keys_rotated_at: Optional[datetime] = None
    last_deployed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SpokeResponse(BaseModel):
    id: int
    hub_id: int
    name: str
    description: Optional[str] = None
    host: Optional[str] = None
    allocated_ip: str
    interface_name: str
    public_key: str
    status: str
    deployment_status: str
    last_error: Optional[str] = None
    config_checksum: Optional[str] = None
    keys_rotated_at: Optional[datetime] = None
    last_deployed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SpokeConfigResponse(BaseModel):
    """Stored configuration of a hostless spoke"""
    spoke_id: int
    config: str
    checksum: str


class DeploymentResultResponse(BaseModel):
    entity_type: str
    entity_id: int
    entity_name: str
    success: bool
    config_path: Optional[str] = None
    checksum: Optional[str] = None
    stored_for_download: bool = False
    failed_step: Optional[str] = None
    error: Optional[str] = None


class EntityOutcome(BaseModel):
    entity_type: str
    entity_id: int
    entity_name: str
    reason: Optional[str] = None


class BulkResultResponse(BaseModel):
    success_count: int
    failure_count: int
    succeeded: List[EntityOutcome]
    failed: List[EntityOutcome]


class DeploymentStatusResponse(BaseModel):
    hub_id: int
    hub_name: str
    interface_status: str
    service_status: str
    peer_count: int
    last_handshake: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class RotationResponse(BaseModel):
    entity_type: str
    entity_id: int
    entity_name: str
    old_public_key: str
    new_public_key: str
    succeeded: List[EntityOutcome]
    failed: List[EntityOutcome]
    entity_deployed: bool
    entity_error: Optional[str] = None
    backup_path: Optional[str] = None


class DriftIssueResponse(BaseModel):
    entity_type: str
    entity_id: int
    entity_name: str
    issues: List[str]


class SyncReportResponse(BaseModel):
    in_sync: bool
    hubs_checked: int
    spokes_checked: int
    hubs: List[DriftIssueResponse]
    spokes: List[DriftIssueResponse]


class RepairResponse(BaseModel):
    report: SyncReportResponse
    redeploy: BulkResultResponse


class ConnectionResponse(BaseModel):
    id: int
    hub_id: int
    spoke_id: Optional[int] = None
    peer_public_key: str
    endpoint: Optional[str] = None
    last_handshake: Optional[datetime] = None
    bytes_received: int
    bytes_sent: int
    connection_status: str
    last_seen: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PeerObservationResponse(BaseModel):
    public_key: str
    peer_name: str
    spoke_id: Optional[int] = None
    endpoint: Optional[str] = None
    handshake_age: Optional[int] = None
    rx_bytes: int
    tx_bytes: int
    connection_status: str
