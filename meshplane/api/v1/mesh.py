# meshplane/api/v1/mesh.py
"""
Mesh API Endpoints
Hubs, spokes, deployment, key rotation, drift and connections

Handlers that talk to remote hosts are plain functions; FastAPI runs them
in its threadpool so SSH round trips do not block the event loop.
"""

from dataclasses import asdict
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from meshplane.database.session import get_db
from meshplane.database.models import Connection
from meshplane.schemas.base import BaseResponse
from meshplane.schemas.mesh import (
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
from meshplane.core.deployment import BulkResult, DeploymentOrchestrator
from meshplane.core.drift import SyncDriftDetector, SyncReport
from meshplane.core.exceptions import EntityNotFound
from meshplane.core.mesh_registry import mesh_registry
from meshplane.core.monitor import ConnectionMonitor
from meshplane.core.rotation import KeyRotationCoordinator
from .deps import (
    verify_admin_token,
    get_deployer,
    get_rotator,
    get_drift_detector,
    get_monitor,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_admin_token)])


def _bulk_response(bulk: BulkResult) -> BulkResultResponse:
    return BulkResultResponse(
        success_count=bulk.success_count,
        failure_count=bulk.failure_count,
        succeeded=bulk.succeeded,
        failed=bulk.failed,
    )


def _report_response(report: SyncReport) -> SyncReportResponse:
    return SyncReportResponse(
        in_sync=report.in_sync,
        hubs_checked=report.hubs_checked,
        spokes_checked=report.spokes_checked,
        hubs=[asdict(i) for i in report.hubs],
        spokes=[asdict(i) for i in report.spokes],
    )


# === Hubs ===

@router.post("/hubs", response_model=BaseResponse[HubResponse], status_code=201, summary="Create hub")
async def create_hub(payload: HubCreate, db: Session = Depends(get_db)):
    hub = mesh_registry.create_hub(
        db,
        name=payload.name,
        host=payload.host,
        endpoint=payload.endpoint,
        network_cidr=payload.network_cidr,
        hub_type=payload.hub_type.value,
        hub_ip=payload.hub_ip,
        listen_port=payload.listen_port,
        interface_name=payload.interface_name,
        dns_servers=payload.dns_servers,
        description=payload.description,
        admin_id="admin",
    )
    return BaseResponse(message=f"Hub {hub.name} created", data=HubResponse.model_validate(hub))


@router.get("/hubs", response_model=List[HubResponse], summary="List hubs")
async def list_hubs(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    hub_type: Optional[str] = Query(None, description="Filter by hub type"),
    db: Session = Depends(get_db),
):
    hubs = mesh_registry.list_hubs(db, status=status_filter, hub_type=hub_type)
    return [HubResponse.model_validate(h) for h in hubs]


@router.get("/hubs/{hub_id}", response_model=HubResponse, summary="Get hub")
async def get_hub(hub_id: int, db: Session = Depends(get_db)):
    return HubResponse.model_validate(mesh_registry.get_hub(db, hub_id))


@router.delete("/hubs/{hub_id}", response_model=BaseResponse[HubResponse], summary="Decommission hub and its spokes")
async def decommission_hub(hub_id: int, db: Session = Depends(get_db)):
    hub = mesh_registry.decommission_hub(db, mesh_registry.get_hub(db, hub_id), admin_id="admin")
    return BaseResponse(message=f"Hub {hub.name} decommissioned", data=HubResponse.model_validate(hub))


@router.post("/hubs/{hub_id}/deploy", response_model=DeploymentResultResponse, summary="Deploy hub")
def deploy_hub(
    hub_id: int,
    db: Session = Depends(get_db),
    deployer: DeploymentOrchestrator = Depends(get_deployer),
):
    result = deployer.deploy(db, mesh_registry.get_hub(db, hub_id))
    return DeploymentResultResponse(**asdict(result))


@router.post("/hubs/{hub_id}/retry", response_model=HubResponse, summary="Reset a failed hub deployment to pending")
async def retry_hub(
    hub_id: int,
    db: Session = Depends(get_db),
    deployer: DeploymentOrchestrator = Depends(get_deployer),
):
    return HubResponse.model_validate(deployer.request_retry(db, mesh_registry.get_hub(db, hub_id)))


@router.get("/hubs/{hub_id}/status", response_model=DeploymentStatusResponse, summary="Live hub status")
def hub_status(
    hub_id: int,
    db: Session = Depends(get_db),
    deployer: DeploymentOrchestrator = Depends(get_deployer),
):
    status = deployer.get_deployment_status(mesh_registry.get_hub(db, hub_id))
    return DeploymentStatusResponse(**asdict(status))


@router.post("/hubs/{hub_id}/rotate", response_model=RotationResponse, summary="Rotate hub keys")
def rotate_hub(
    hub_id: int,
    payload: RotationRequest = RotationRequest(),
    db: Session = Depends(get_db),
    rotator: KeyRotationCoordinator = Depends(get_rotator),
):
    result = rotator.rotate(db, mesh_registry.get_hub(db, hub_id), backup=payload.backup)
    return RotationResponse(**asdict(result))


@router.get("/hubs/{hub_id}/connections", response_model=List[ConnectionResponse], summary="Recorded peer connections")
async def list_connections(hub_id: int, db: Session = Depends(get_db)):
    hub = mesh_registry.get_hub(db, hub_id)
    rows = db.query(Connection).filter(Connection.hub_id == hub.id).order_by(Connection.id).all()
    return [ConnectionResponse.model_validate(c) for c in rows]


@router.post("/hubs/{hub_id}/poll", response_model=List[PeerObservationResponse], summary="Poll hub peers now")
def poll_hub(
    hub_id: int,
    db: Session = Depends(get_db),
    monitor: ConnectionMonitor = Depends(get_monitor),
):
    observations = monitor.poll_hub(db, mesh_registry.get_hub(db, hub_id))
    return [PeerObservationResponse(**asdict(o)) for o in observations]


# === Spokes ===

@router.post(
    "/hubs/{hub_id}/spokes",
    response_model=BaseResponse[SpokeResponse],
    status_code=201,
    summary="Create spoke"
)
async def create_spoke(hub_id: int, payload: SpokeCreate, db: Session = Depends(get_db)):
    hub = mesh_registry.get_hub(db, hub_id)
    spoke = mesh_registry.create_spoke(
        db,
        hub,
        name=payload.name,
        host=payload.host,
        interface_name=payload.interface_name,
        dns_servers=payload.dns_servers,
        description=payload.description,
        admin_id="admin",
    )
    return BaseResponse(
        message=f"Spoke {spoke.name} created with {spoke.allocated_ip}",
        data=SpokeResponse.model_validate(spoke)
    )


@router.get("/hubs/{hub_id}/spokes", response_model=List[SpokeResponse], summary="List spokes of a hub")
async def list_spokes(
    hub_id: int,
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    hub = mesh_registry.get_hub(db, hub_id)
    return [SpokeResponse.model_validate(s) for s in mesh_registry.list_spokes(db, hub=hub, status=status_filter)]


@router.get("/spokes/{spoke_id}", response_model=SpokeResponse, summary="Get spoke")
async def get_spoke(spoke_id: int, db: Session = Depends(get_db)):
    return SpokeResponse.model_validate(mesh_registry.get_spoke(db, spoke_id))


@router.delete("/spokes/{spoke_id}", response_model=BaseResponse[SpokeResponse], summary="Decommission spoke")
async def decommission_spoke(spoke_id: int, db: Session = Depends(get_db)):
    spoke = mesh_registry.decommission_spoke(db, mesh_registry.get_spoke(db, spoke_id), admin_id="admin")
    return BaseResponse(message=f"Spoke {spoke.name} decommissioned", data=SpokeResponse.model_validate(spoke))


@router.get("/spokes/{spoke_id}/config", response_model=SpokeConfigResponse, summary="Download stored spoke config")
async def spoke_config(spoke_id: int, db: Session = Depends(get_db)):
    spoke = mesh_registry.get_spoke(db, spoke_id)
    if not spoke.current_config:
        raise EntityNotFound(f"Spoke {spoke.name} has no stored configuration")
    return SpokeConfigResponse(spoke_id=spoke.id, config=spoke.current_config, checksum=spoke.config_checksum)


@router.post("/spokes/{spoke_id}/deploy", response_model=DeploymentResultResponse, summary="Deploy spoke")
def deploy_spoke(
    spoke_id: int,
    db: Session = Depends(get_db),
    deployer: DeploymentOrchestrator = Depends(get_deployer),
):
    result = deployer.deploy(db, mesh_registry.get_spoke(db, spoke_id))
    return DeploymentResultResponse(**asdict(result))


@router.post("/spokes/{spoke_id}/retry", response_model=SpokeResponse, summary="Reset a failed spoke deployment to pending")
async def retry_spoke(
    spoke_id: int,
    db: Session = Depends(get_db),
    deployer: DeploymentOrchestrator = Depends(get_deployer),
):
    return SpokeResponse.model_validate(deployer.request_retry(db, mesh_registry.get_spoke(db, spoke_id)))


@router.post("/spokes/{spoke_id}/rotate", response_model=RotationResponse, summary="Rotate spoke keys")
def rotate_spoke(
    spoke_id: int,
    payload: RotationRequest = RotationRequest(),
    db: Session = Depends(get_db),
    rotator: KeyRotationCoordinator = Depends(get_rotator),
):
    result = rotator.rotate(db, mesh_registry.get_spoke(db, spoke_id), backup=payload.backup)
    return RotationResponse(**asdict(result))


# === Fleet ===

@router.get("/sync", response_model=SyncReportResponse, summary="Check configuration drift")
def check_sync(
    db: Session = Depends(get_db),
    detector: SyncDriftDetector = Depends(get_drift_detector),
):
    return _report_response(detector.check_fleet(db))


@router.post("/sync/repair", response_model=RepairResponse, summary="Redeploy out-of-sync entities")
def repair_sync(
    db: Session = Depends(get_db),
    detector: SyncDriftDetector = Depends(get_drift_detector),
):
    report, bulk = detector.repair(db)
    return RepairResponse(report=_report_response(report), redeploy=_bulk_response(bulk))
