# meshplane/api/v1/ipam.py
"""
IPAM API Endpoints
Networks, addresses and reservations
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from meshplane.database.session import get_db
from meshplane.database.models import Address, Reservation
from meshplane.schemas.base import BaseResponse
from meshplane.schemas.ipam import (
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
from meshplane.core.exceptions import EntityNotFound, InvalidCidr
from meshplane.core.ipam import ipam_service
from .deps import verify_admin_token

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_admin_token)])


def _reservation_response(db: Session, reservation: Reservation) -> ReservationResponse:
    overlaps = ipam_service.find_overlapping_reservations(
        db, reservation.network, reservation.start_ip, reservation.end_ip, exclude_id=reservation.id
    )
    response = ReservationResponse.model_validate(reservation)
    response.overlaps = [r.id for r in overlaps]
    return response


# === Networks ===

@router.post(
    "/networks",
    response_model=BaseResponse[NetworkResponse],
    status_code=201,
    summary="Create network",
    description="Create a network, or a subnet of an existing network when parent_id is set"
)
async def create_network(payload: NetworkCreate, db: Session = Depends(get_db)):
    fields = dict(
        network_type=payload.network_type.value,
        description=payload.description,
        gateway=payload.gateway,
        dns_servers=payload.dns_servers,
    )
    if payload.parent_id is not None:
        parent = ipam_service.get_network(db, payload.parent_id)
        network = ipam_service.create_subnet(db, parent, payload.cidr, payload.name, **fields)
    else:
        network = ipam_service.create_network(db, payload.cidr, payload.name, **fields)

    return BaseResponse(
        message=f"Network {network.cidr} created",
        data=NetworkResponse.model_validate(network)
    )


@router.get("/networks", response_model=List[NetworkResponse], summary="List networks")
async def list_networks(
    active_only: bool = Query(False),
    db: Session = Depends(get_db),
):
    return [NetworkResponse.model_validate(n) for n in ipam_service.list_networks(db, active_only)]


@router.get("/networks/{network_id}", response_model=NetworkResponse, summary="Get network")
async def get_network(network_id: int, db: Session = Depends(get_db)):
    return NetworkResponse.model_validate(ipam_service.get_network(db, network_id))


@router.get("/networks/{network_id}/stats", response_model=NetworkStats, summary="Network utilization")
async def get_network_stats(network_id: int, db: Session = Depends(get_db)):
    network = ipam_service.get_network(db, network_id)
    return NetworkStats(**ipam_service.get_network_stats(db, network))


@router.get("/networks/{network_id}/next-ip", response_model=NextIpResponse, summary="Next free address")
async def next_ip(network_id: int, db: Session = Depends(get_db)):
    network = ipam_service.get_network(db, network_id)
    return NextIpResponse(network=network.cidr, ip_address=ipam_service.next_available_ip(db, network))


@router.get("/networks/{network_id}/reverse-zone", response_model=ReverseZoneResponse, summary="IPv6 reverse zone")
async def reverse_zone(network_id: int, db: Session = Depends(get_db)):
    network = ipam_service.get_network(db, network_id)
    zone = ipam_service.reverse_zone(network)
    if zone is None:
        raise InvalidCidr(f"Reverse zones are only derived for IPv6 networks, {network.cidr} is IPv4")
    return ReverseZoneResponse(network=network.cidr, zone=zone)


# === Addresses ===

@router.get("/networks/{network_id}/addresses", response_model=List[AddressResponse], summary="List tracked addresses")
async def list_addresses(
    network_id: int,
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    network = ipam_service.get_network(db, network_id)
    query = db.query(Address).filter(Address.network_id == network.id)
    if status_filter:
        query = query.filter(Address.status == status_filter)
    return [AddressResponse.model_validate(a) for a in query.order_by(Address.id).all()]


@router.post(
    "/networks/{network_id}/allocate",
    response_model=BaseResponse[AddressResponse],
    summary="Allocate address",
    description="Allocate a specific address, or the lowest free one when ip_address is omitted"
)
async def allocate_address(network_id: int, payload: AddressAllocate, db: Session = Depends(get_db)):
    network = ipam_service.get_network(db, network_id)
    details = payload.model_dump(exclude={"ip_address"}, exclude_none=True)

    if payload.ip_address:
        address = ipam_service.get_address(db, network, payload.ip_address)
        if address is None:
            address = ipam_service.add_address(db, network, payload.ip_address)
        address = ipam_service.allocate(db, address, **details)
    else:
        address = ipam_service.allocate_next(db, network, **details)

    return BaseResponse(
        message=f"Allocated {address.ip_address}",
        data=AddressResponse.model_validate(address)
    )


@router.post(
    "/networks/{network_id}/addresses/{ip_address}/release",
    response_model=BaseResponse[AddressResponse],
    summary="Release address"
)
async def release_address(network_id: int, ip_address: str, db: Session = Depends(get_db)):
    network = ipam_service.get_network(db, network_id)
    address = ipam_service.get_address(db, network, ip_address)
    if address is None:
        raise EntityNotFound(f"Address {ip_address} is not tracked in {network.cidr}")

    address = ipam_service.release(db, address)
    return BaseResponse(
        message=f"Released {address.ip_address}",
        data=AddressResponse.model_validate(address)
    )


# === Reservations ===

@router.post(
    "/networks/{network_id}/reservations",
    response_model=BaseResponse[ReservationResponse],
    status_code=201,
    summary="Reserve address range"
)
async def create_reservation(network_id: int, payload: ReservationCreate, db: Session = Depends(get_db)):
    network = ipam_service.get_network(db, network_id)
    reservation = ipam_service.create_reservation(
        db,
        network,
        name=payload.name,
        start_ip=payload.start_ip,
        end_ip=payload.end_ip,
        reservation_type=payload.reservation_type.value,
        description=payload.description,
    )
    return BaseResponse(
        message=f"Reserved {reservation.address_count} addresses",
        data=_reservation_response(db, reservation)
    )


@router.get(
    "/networks/{network_id}/reservations",
    response_model=List[ReservationResponse],
    summary="List reservations"
)
async def list_reservations(network_id: int, db: Session = Depends(get_db)):
    network = ipam_service.get_network(db, network_id)
    return [_reservation_response(db, r) for r in network.reservations]


@router.patch(
    "/reservations/{reservation_id}",
    response_model=BaseResponse[ReservationResponse],
    summary="Update reservation"
)
async def update_reservation(reservation_id: int, payload: ReservationUpdate, db: Session = Depends(get_db)):
    reservation = db.query(Reservation).filter(Reservation.id == reservation_id).first()
    if not reservation:
        raise EntityNotFound(f"Reservation {reservation_id} not found")

    changes = payload.model_dump(exclude_unset=True)
    if "reservation_type" in changes and changes["reservation_type"] is not None:
        changes["reservation_type"] = changes["reservation_type"].value

    reservation = ipam_service.update_reservation(db, reservation, **changes)
    return BaseResponse(
        message="Reservation updated",
        data=_reservation_response(db, reservation)
    )
