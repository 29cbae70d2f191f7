# meshplane/core/drift.py
"""
Configuration Drift Detection

Hubs are checked against their live host state. Spokes are checked
against their stored deployment flags only.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from meshplane.database.models import Hub, Spoke, DeploymentStatus, EntityStatus
from .deployment import BulkResult, DeploymentOrchestrator
from .exceptions import DriftDetected
from .mesh_registry import MeshRegistry, mesh_registry

logger = logging.getLogger(__name__)


@dataclass
class DriftIssue:
    entity_type: str
    entity_id: int
    entity_name: str
    issues: List[str] = field(default_factory=list)


@dataclass
class SyncReport:
    """Result of a fleet check; only out-of-sync entities are listed"""
    hubs_checked: int = 0
    spokes_checked: int = 0
    hubs: List[DriftIssue] = field(default_factory=list)
    spokes: List[DriftIssue] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.hubs and not self.spokes

    def raise_for_drift(self) -> None:
        if not self.in_sync:
            raise DriftDetected(
                f"{len(self.hubs)} hubs and {len(self.spokes)} spokes are out of sync",
                report=self,
            )


class SyncDriftDetector:
    """
    Compares registry state with deployed state

    Responsibilities:
    - Check hubs through live deployment status probes
    - Check spokes through their deployment flags
    - Redeploy out-of-sync entities on request
    """

    def __init__(self, deployer: DeploymentOrchestrator, registry: Optional[MeshRegistry] = None):
        self.deployer = deployer
        self.registry = registry or mesh_registry

    def check_hub(self, db: Session, hub: Hub) -> List[str]:
        """Issues found on a hub's host, empty when in sync"""
        issues: List[str] = []
        status = self.deployer.get_deployment_status(hub)

        if status.interface_status != "up":
            issues.append("Interface is down")

        if status.service_status != "active":
            issues.append("WireGuard service is not active")

        expected = len(self.registry.active_spokes(db, hub))
        if status.peer_count != expected:
            issues.append(f"Peer count mismatch (expected: {expected}, actual: {status.peer_count})")

        issues.extend(status.errors)
        return issues

    @staticmethod
    def check_spoke(spoke: Spoke) -> List[str]:
        """Issues recorded on a spoke; spokes without a host cannot be checked and count as in sync"""
        if not spoke.host:
            return []

        issues: List[str] = []
        if spoke.deployment_status != DeploymentStatus.DEPLOYED.value:
            issues.append("Deployment status is not deployed")
        if not spoke.last_deployed_at:
            issues.append("Never deployed")
        return issues

    def check_fleet(self, db: Session) -> SyncReport:
        """Check every active hub and spoke"""
        report = SyncReport()

        for hub in self.registry.list_hubs(db, status=EntityStatus.ACTIVE.value):
            report.hubs_checked += 1
            issues = self.check_hub(db, hub)
            if issues:
                report.hubs.append(DriftIssue("hub", hub.id, hub.name, issues))

        for spoke in self.registry.list_spokes(db, status=EntityStatus.ACTIVE.value):
            report.spokes_checked += 1
            issues = self.check_spoke(spoke)
            if issues:
                report.spokes.append(DriftIssue("spoke", spoke.id, spoke.name, issues))

        if report.in_sync:
            logger.info(f"All configurations are in sync ({report.hubs_checked} hubs, {report.spokes_checked} spokes)")
        else:
            logger.warning(
                f"Configurations out of sync: {len(report.hubs)} hubs, {len(report.spokes)} spokes"
            )
        return report

    def repair(self, db: Session) -> Tuple[SyncReport, BulkResult]:
        """Check the fleet and redeploy every flagged entity, hubs first"""
        report = self.check_fleet(db)

        entities = [self.registry.get_hub(db, issue.entity_id) for issue in report.hubs]
        entities.extend(self.registry.get_spoke(db, issue.entity_id) for issue in report.spokes)

        bulk = self.deployer.deploy_many(db, entities)
        return report, bulk
