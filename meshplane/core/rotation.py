# meshplane/core/rotation.py
"""
Key Rotation Coordinator

Rotation is best effort: new keys are committed before peers are
redeployed, and a failed redeploy leaves the mesh partially updated.
That state is reported through RotationPartialFailure, never rolled back.
"""

import json
import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from meshplane.config import settings
from meshplane.database.models import Hub, KeyBackup, EntityStatus
from .audit import log_event
from .deployment import BulkResult, DeploymentOrchestrator, Entity, entity_type
from .exceptions import KeypairGenerationFailure, RotationPartialFailure
from .keys import KeyPairGenerator, key_generator
from .mesh_registry import MeshRegistry, mesh_registry

logger = logging.getLogger(__name__)


@dataclass
class RotationResult:
    entity_type: str
    entity_id: int
    entity_name: str
    old_public_key: str
    new_public_key: str
    succeeded: List[dict] = field(default_factory=list)  # peers redeployed
    failed: List[dict] = field(default_factory=list)  # peers that could not be redeployed
    entity_deployed: bool = False
    entity_error: Optional[str] = None
    backup_path: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.entity_deployed and not self.failed


class KeyRotationCoordinator:
    """
    Replaces hub or spoke keys and redeploys every affected peer

    Responsibilities:
    1. Optional pre-rotation backup (database row and JSON file)
    2. Mint and store the new keypair
    3. Redeploy spokes before their hub
    4. Report per-peer outcomes
    """

    def __init__(
        self,
        deployer: DeploymentOrchestrator,
        registry: Optional[MeshRegistry] = None,
        keygen: Optional[KeyPairGenerator] = None,
        backup_dir: Optional[str] = None,
    ):
        self.deployer = deployer
        self.registry = registry or mesh_registry
        self.keygen = keygen or key_generator
        self.backup_dir = backup_dir if backup_dir is not None else settings.KEY_BACKUP_DIR

    def backup_keys(self, db: Session, entity: Entity) -> Optional[str]:
        """
        Snapshot the current keys of an entity

        Returns:
            Path of the JSON backup file, or None when no backup directory is configured
        """
        kind = entity_type(entity)
        now = datetime.utcnow()

        db.add(KeyBackup(
            entity_type=kind,
            entity_id=entity.id,
            entity_name=entity.name,
            old_public_key=entity.public_key,
            old_private_key_encrypted=entity.private_key_encrypted,
            created_at=now,
        ))
        db.commit()

        if not self.backup_dir:
            return None

        directory = Path(self.backup_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"wireguard-key-backup-{kind}-{entity.id}-{now.strftime('%Y-%m-%d-%H-%M-%S')}.json"

        payload = {
            "entity_type": kind,
            "entity_id": entity.id,
            "entity_name": entity.name,
            "old_public_key": entity.public_key,
            "old_private_key_encrypted": entity.private_key_encrypted,
            "backup_created_at": now.isoformat(),
        }
        path.write_text(json.dumps(payload, indent=2))
        os.chmod(path, 0o600)

        logger.info(f"Backed up keys for {kind} {entity.name} to {path}")
        return str(path)

    def rotate(self, db: Session, entity: Entity, backup: bool = False) -> RotationResult:
        """
        Rotate the keys of a hub or spoke

        Raises:
            KeypairGenerationFailure: Before any state change if keys cannot be minted
            RotationPartialFailure: If any peer could not be redeployed;
                the new keys stay in place
        """
        kind = entity_type(entity)
        keys = self.keygen.generate()

        result = RotationResult(
            entity_type=kind,
            entity_id=entity.id,
            entity_name=entity.name,
            old_public_key=entity.public_key,
            new_public_key=keys.public_key,
        )

        if backup:
            result.backup_path = self.backup_keys(db, entity)

        entity.public_key = keys.public_key
        entity.private_key_encrypted = keys.private_key_encrypted
        entity.keys_rotated_at = datetime.utcnow()
        db.commit()
        db.refresh(entity)

        logger.info(
            f"Rotated keys for {kind} {entity.name}: "
            f"{result.old_public_key[:20]}... -> {result.new_public_key[:20]}..."
        )

        if isinstance(entity, Hub):
            targets: List[Entity] = list(self.registry.active_spokes(db, entity)) + [entity]
        else:
            targets = [entity, entity.hub]

        for target in targets:
            deployment = self.deployer.deploy(db, target)

            if target is entity:
                result.entity_deployed = deployment.success
                result.entity_error = deployment.error
                continue

            record = {
                "entity_type": deployment.entity_type,
                "entity_id": deployment.entity_id,
                "entity_name": deployment.entity_name,
            }
            if deployment.success:
                result.succeeded.append(record)
            else:
                record["reason"] = deployment.error or "unknown error"
                result.failed.append(record)

        log_event(
            db,
            event_type="key_rotation",
            event_action="update",
            target_type=kind,
            target_id=entity.id,
            status="success" if result.success else "failure",
            details={
                "old_public_key": result.old_public_key,
                "new_public_key": result.new_public_key,
                "redeployed": len(result.succeeded),
                "failed": len(result.failed),
            },
        )

        if not result.success:
            peers = len(result.succeeded) + len(result.failed)
            message = f"Key rotation for {kind} '{entity.name}': {len(result.failed)} of {peers} peers failed to redeploy"
            if not result.entity_deployed:
                message += f", {kind} redeploy failed ({result.entity_error})"
            raise RotationPartialFailure(message, result=result)

        return result

    def rotate_many(self, db: Session, entities: Iterable[Entity], backup: bool = False) -> BulkResult:
        """Rotate several entities; a failure is recorded and the next entity is tried"""
        bulk = BulkResult()

        for entity in entities:
            try:
                self.rotate(db, entity, backup=backup)
            except (RotationPartialFailure, KeypairGenerationFailure) as e:
                logger.error(f"Key rotation failed for {entity_type(entity)} {entity.name}: {e}")
                bulk.add_failure(entity, str(e))
                continue
            bulk.add_success(entity)

        logger.info(f"Bulk rotation: {bulk.success_count} succeeded, {bulk.failure_count} failed")
        return bulk

    def select_due(
        self,
        db: Session,
        older_than_days: int,
        include_spokes: bool = True,
        now: Optional[datetime] = None,
    ) -> List[Entity]:
        """Active hubs (then spokes) whose keys were last set before the cutoff"""
        cutoff = (now or datetime.utcnow()) - timedelta(days=older_than_days)

        def is_due(entity: Entity) -> bool:
            return (entity.keys_rotated_at or entity.created_at) < cutoff

        due: List[Entity] = [
            hub for hub in self.registry.list_hubs(db, status=EntityStatus.ACTIVE.value)
            if is_due(hub)
        ]
        if include_spokes:
            due.extend(
                spoke for spoke in self.registry.list_spokes(db, status=EntityStatus.ACTIVE.value)
                if is_due(spoke)
            )
        return due
