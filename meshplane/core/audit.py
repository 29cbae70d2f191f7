# meshplane/core/audit.py
"""
Audit trail writer shared by the registry, deployment and rotation services
"""

import json
import logging
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from meshplane.config import settings
from meshplane.database.models import AuditLog

logger = logging.getLogger(__name__)


def log_event(
    db: Session,
    event_type: str,
    event_action: str,
    actor_type: str = "system",
    actor_id: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[Union[int, str]] = None,
    status: str = "success",
    details: Optional[dict] = None,
) -> None:
    """Log an audit event"""
    if not settings.ENABLE_AUDIT_LOG:
        return

    try:
        log = AuditLog(
            event_type=event_type,
            event_action=event_action,
            actor_type=actor_type,
            actor_id=actor_id,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            status=status,
            details=json.dumps(details) if details else None,
        )
        db.add(log)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create audit log: {e}")
