# meshplane/schemas/ipam.py
"""
IPAM-related Pydantic schemas
"""

from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import Optional, List
from datetime import datetime
import ipaddress

from meshplane.database.models import NetworkType, ReservationType


def _check_ip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    ipaddress.ip_address(value)
    return value


# === Request Schemas ===

class NetworkCreate(BaseModel):
    """Schema for creating a network or subnet"""
    cidr: str = Field(
        ...,
        description="Network in CIDR notation",
        examples=["10.0.0.0/24", "2001:db8::/32"]
    )
    name: str = Field(..., min_length=1, max_length=100)
    network_type: NetworkType = NetworkType.PRIVATE
    description: Optional[str] = None
    gateway: Optional[str] = None
    dns_servers: List[str] = Field(default_factory=list)
    parent_id: Optional[int] = Field(None, description="Parent network for a subnet")

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        ipaddress.ip_network(v, strict=False)
        return v

    @field_validator("gateway")
    @classmethod
    def validate_gateway(cls, v: Optional[str]) -> Optional[str]:
        return _check_ip(v)


class AddressAllocate(BaseModel):
    """
    Allocation request
    Leave ip_address empty to take the lowest free address
    """
    ip_address: Optional[str] = None
    hostname: Optional[str] = Field(None, max_length=253)
    fqdn: Optional[str] = Field(None, max_length=253)
    mac_address: Optional[str] = Field(None, max_length=17)
    owner: Optional[str] = Field(None, max_length=100)
    service: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None

    @field_validator("ip_address")
    @classmethod
    def validate_ip(cls, v: Optional[str]) -> Optional[str]:
        return _check_ip(v)


class ReservationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    start_ip: str
    end_ip: str
    reservation_type: ReservationType = ReservationType.STATIC_RANGE
    description: Optional[str] = None

    @field_validator("start_ip", "end_ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        return _check_ip(v)


class ReservationUpdate(BaseModel):
    """Partial reservation update"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    start_ip: Optional[str] = None
    end_ip: Optional[str] = None
    reservation_type: Optional[ReservationType] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("start_ip", "end_ip")
    @classmethod
    def validate_ip(cls, v: Optional[str]) -> Optional[str]:
        return _check_ip(v)


# === Response Schemas ===

class NetworkResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    cidr: str
    network_address: str
    prefix_length: int
    ip_version: int
    gateway: Optional[str] = None
    dns_servers: Optional[List[str]] = None
    network_type: str
    is_active: bool
    total_addresses: int
    parent_network_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NetworkStats(BaseModel):
    network: str
    total: int
    used: int
    reserved: int
    available: int
    utilization_percent: float


class AddressResponse(BaseModel):
    id: int
    network_id: int
    ip_address: str
    status: str
    hostname: Optional[str] = None
    fqdn: Optional[str] = None
    mac_address: Optional[str] = None
    owner: Optional[str] = None
    service: Optional[str] = None
    description: Optional[str] = None
    allocated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReservationResponse(BaseModel):
    id: int
    network_id: int
    name: str
    description: Optional[str] = None
    start_ip: str
    end_ip: str
    reservation_type: str
    is_active: bool
    address_count: int
    overlaps: List[int] = Field(default_factory=list, description="IDs of overlapping active reservations")

    model_config = ConfigDict(from_attributes=True)


class NextIpResponse(BaseModel):
    network: str
    ip_address: str


class ReverseZoneResponse(BaseModel):
    network: str
    zone: str
