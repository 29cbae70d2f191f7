# meshplane/api/v1/deps.py
"""
Shared API dependencies: admin authentication and service wiring
"""

from fastapi import Depends, HTTPException, Header, status
from functools import lru_cache
import logging

from meshplane.config import settings
from meshplane.core.deployment import DeploymentOrchestrator
from meshplane.core.drift import SyncDriftDetector
from meshplane.core.monitor import ConnectionMonitor
from meshplane.core.remote import RemoteExecutor, SshRemoteExecutor
from meshplane.core.rotation import KeyRotationCoordinator

logger = logging.getLogger(__name__)


# === Authentication Dependency ===

async def verify_admin_token(x_admin_token: str = Header(..., alias="X-Admin-Token")):
    """Verify admin authentication token"""
    if x_admin_token != settings.ADMIN_SECRET:
        logger.warning("Invalid admin token attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "Invalid or missing admin token",
                "error_code": "UNAUTHORIZED"
            },
            headers={"WWW-Authenticate": "Bearer"}
        )
    return True


# === Services ===

@lru_cache()
def get_executor() -> RemoteExecutor:
    """SSH executor shared by all requests"""
    return SshRemoteExecutor()


def get_deployer(executor: RemoteExecutor = Depends(get_executor)) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(executor=executor)


def get_rotator(deployer: DeploymentOrchestrator = Depends(get_deployer)) -> KeyRotationCoordinator:
    return KeyRotationCoordinator(deployer=deployer)


def get_drift_detector(deployer: DeploymentOrchestrator = Depends(get_deployer)) -> SyncDriftDetector:
    return SyncDriftDetector(deployer=deployer)


def get_monitor(executor: RemoteExecutor = Depends(get_executor)) -> ConnectionMonitor:
    return ConnectionMonitor(executor=executor, log_connections=True)
