# meshplane/core/deployment.py
"""
Deployment Orchestrator
Renders hub and spoke configurations and pushes them to their hosts
"""

import re
import shlex
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from meshplane.config import settings
from meshplane.database.models import Hub, Spoke, DeploymentStatus, HealthStatus
from .audit import log_event
from .config_renderer import ConfigRenderer, config_checksum
from .exceptions import MeshPlaneError
from .mesh_registry import MeshRegistry, mesh_registry
from .remote import FileUpload, RemoteExecutor, SshRemoteExecutor, StepPipeline

logger = logging.getLogger(__name__)

Entity = Union[Hub, Spoke]

_HANDSHAKE_RE = re.compile(r"latest handshake: (.+)")


def entity_type(entity: Entity) -> str:
    return "hub" if isinstance(entity, Hub) else "spoke"


@dataclass
class DeploymentResult:
    entity_type: str
    entity_id: int
    entity_name: str
    success: bool
    config_path: Optional[str] = None
    checksum: Optional[str] = None
    stored_for_download: bool = False
    failed_step: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BulkResult:
    """Per-entity outcome of a bulk operation"""
    succeeded: List[dict] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    def add_success(self, entity: Entity) -> None:
        self.succeeded.append({
            "entity_type": entity_type(entity),
            "entity_id": entity.id,
            "entity_name": entity.name,
        })

    def add_failure(self, entity: Entity, reason: str) -> None:
        self.failed.append({
            "entity_type": entity_type(entity),
            "entity_id": entity.id,
            "entity_name": entity.name,
            "reason": reason,
        })


@dataclass
class HubDeploymentStatus:
    """Live state of a hub interface as seen on its host"""
    hub_id: int
    hub_name: str
    interface_status: str = "unknown"
    service_status: str = "unknown"
    peer_count: int = 0
    last_handshake: Optional[str] = None
    errors: List[str] = field(default_factory=list)


class DeploymentOrchestrator:
    """
    Pushes rendered configuration to hubs and spokes

    Deployment state machine:
    - pending -> deployed on success
    - pending | deployed -> failed on a push error
    - failed -> pending through request_retry()

    The administrative `status` of an entity is never changed here.
    """

    def __init__(
        self,
        executor: Optional[RemoteExecutor] = None,
        registry: Optional[MeshRegistry] = None,
        renderer: Optional[ConfigRenderer] = None,
        config_dir: Optional[str] = None,
    ):
        self.executor = executor or SshRemoteExecutor()
        self.registry = registry or mesh_registry
        self.renderer = renderer or ConfigRenderer()
        self.config_dir = config_dir or settings.WG_CONFIG_DIR

    def render(self, db: Session, entity: Entity) -> str:
        """Render the current configuration of a hub or spoke"""
        if isinstance(entity, Hub):
            return self.renderer.render_hub(entity, self.registry.active_spokes(db, entity))
        return self.renderer.render_spoke(entity)

    def build_pipeline(self, interface_name: str, config: str) -> StepPipeline:
        """Named remote steps that install a configuration file and (re)start the interface"""
        path = self.renderer.config_path(interface_name, self.config_dir)
        directory = shlex.quote(self.config_dir)
        iface = shlex.quote(interface_name)
        unit = shlex.quote(f"wg-quick@{interface_name}")

        return StepPipeline([
            ("prepare_directory", f"mkdir -p {directory} && chmod 700 {directory}"),
            ("write_config", FileUpload(path, config, "600")),
            ("restrict_permissions", f"chmod 600 {shlex.quote(path)}"),
            ("restart_interface", f"wg-quick down {iface} 2>/dev/null || true; wg-quick up {iface}"),
            ("enable_service", f"systemctl enable {unit}"),
        ])

    def deploy(self, db: Session, entity: Entity) -> DeploymentResult:
        """
        Deploy a hub or spoke

        Args:
            db: Database session
            entity: Hub or Spoke

        Returns:
            DeploymentResult; failures are recorded on the entity, not raised
        """
        kind = entity_type(entity)
        logger.info(f"Starting deployment of {kind}: {entity.display_name}")

        result = DeploymentResult(
            entity_type=kind,
            entity_id=entity.id,
            entity_name=entity.name,
            success=False,
        )

        try:
            config = self.render(db, entity)
        except MeshPlaneError as e:
            result.failed_step = "render_config"
            result.error = f"render_config: {e}"
            return self._finish(db, entity, result)

        result.checksum = config_checksum(config)

        if isinstance(entity, Spoke) and not entity.host:
            entity.current_config = config
            entity.config_checksum = result.checksum
            result.stored_for_download = True
            result.success = True
            logger.info(f"Stored spoke configuration for download: {entity.name}")
            return self._finish(db, entity, result)

        result.config_path = self.renderer.config_path(entity.interface_name, self.config_dir)
        pipeline = self.build_pipeline(entity.interface_name, config)
        outcome = pipeline.run(self.executor, entity.host, as_root=True)

        result.success = outcome.success
        result.failed_step = outcome.failed_step
        result.error = outcome.error or None
        return self._finish(db, entity, result)

    def _finish(self, db: Session, entity: Entity, result: DeploymentResult) -> DeploymentResult:
        if result.success:
            entity.deployment_status = DeploymentStatus.DEPLOYED.value
            entity.last_deployed_at = datetime.utcnow()
            entity.last_error = None
            if isinstance(entity, Hub):
                entity.health_status = HealthStatus.HEALTHY.value
        else:
            entity.deployment_status = DeploymentStatus.FAILED.value
            entity.last_error = result.error
            if isinstance(entity, Hub):
                entity.health_status = HealthStatus.CRITICAL.value
        db.commit()

        log_event(
            db,
            event_type="deployment",
            event_action="update",
            target_type=result.entity_type,
            target_id=entity.id,
            status="success" if result.success else "failure",
            details={"checksum": result.checksum, "error": result.error},
        )

        if result.success:
            logger.info(f"Successfully deployed {result.entity_type}: {entity.name}")
        else:
            logger.error(f"Failed to deploy {result.entity_type} {entity.name}: {result.error}")
        return result

    def request_retry(self, db: Session, entity: Entity) -> Entity:
        """
        Move a failed entity back to pending

        Raises:
            ValueError: If the entity is not in the failed state
        """
        if entity.deployment_status != DeploymentStatus.FAILED.value:
            raise ValueError(
                f"{entity_type(entity).capitalize()} '{entity.name}' is {entity.deployment_status}, not failed"
            )
        entity.deployment_status = DeploymentStatus.PENDING.value
        db.commit()
        db.refresh(entity)
        logger.info(f"Retry requested for {entity_type(entity)}: {entity.name}")
        return entity

    def deploy_many(self, db: Session, entities: Iterable[Entity]) -> BulkResult:
        """Deploy hubs first, then spokes; one failure does not stop the rest"""
        ordered = sorted(entities, key=lambda e: 0 if isinstance(e, Hub) else 1)
        bulk = BulkResult()

        for entity in ordered:
            result = self.deploy(db, entity)
            if result.success:
                bulk.add_success(entity)
            else:
                bulk.add_failure(entity, result.error or "unknown error")

        logger.info(f"Bulk deployment: {bulk.success_count} succeeded, {bulk.failure_count} failed")
        return bulk

    def get_deployment_status(self, hub: Hub) -> HubDeploymentStatus:
        """
        Query the hub host for interface state, service state and peer count

        Probe failures are collected in `errors`, never raised.
        """
        status = HubDeploymentStatus(hub_id=hub.id, hub_name=hub.name)
        iface = shlex.quote(hub.interface_name)

        link = self.executor.execute(hub.host, f"ip link show {iface}")
        if link.success:
            status.interface_status = "up" if "UP" in link.output else "down"
        else:
            status.errors.append(f"Interface check failed: {link.error or link.output}")

        wg = self.executor.execute(hub.host, f"wg show {iface}", as_root=True)
        if wg.success:
            status.service_status = "active" if wg.output.strip() else "inactive"
            status.peer_count = wg.output.count("peer:")
            match = _HANDSHAKE_RE.search(wg.output)
            if match:
                status.last_handshake = match.group(1).strip()
        else:
            status.errors.append(f"WireGuard check failed: {wg.error or wg.output}")

        return status
