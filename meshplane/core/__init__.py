# meshplane/core/__init__.py
"""
Core business logic modules
"""

from .ipam import ipam_service, IPAMService
from .keys import key_generator, KeyPair, KeyPairGenerator, KeyVault
from .mesh_registry import mesh_registry, MeshRegistry
from .remote import FileUpload, RemoteExecutor, RemoteResult, SshRemoteExecutor, StepPipeline
from .config_renderer import ConfigRenderer
from .deployment import DeploymentOrchestrator, DeploymentResult, BulkResult, HubDeploymentStatus
from .rotation import KeyRotationCoordinator, RotationResult
from .drift import SyncDriftDetector, SyncReport, DriftIssue
from .monitor import ConnectionMonitor, PeerObservation, format_bytes

__all__ = [
    # IPAM
    "ipam_service",
    "IPAMService",
    # Keys
    "key_generator",
    "KeyPair",
    "KeyPairGenerator",
    "KeyVault",
    # Registry
    "mesh_registry",
    "MeshRegistry",
    # Remote execution
    "FileUpload",
    "RemoteExecutor",
    "RemoteResult",
    "SshRemoteExecutor",
    "StepPipeline",
    # Deployment
    "ConfigRenderer",
    "DeploymentOrchestrator",
    "DeploymentResult",
    "BulkResult",
    "HubDeploymentStatus",
    # Rotation
    "KeyRotationCoordinator",
    "RotationResult",
    # Drift
    "SyncDriftDetector",
    "SyncReport",
    "DriftIssue",
    # Monitoring
    "ConnectionMonitor",
    "PeerObservation",
    "format_bytes",
]
