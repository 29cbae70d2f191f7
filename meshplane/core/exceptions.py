# meshplane/core/exceptions.py
"""
Error taxonomy for the allocation and mesh orchestration engine
"""

from typing import Optional


class MeshPlaneError(Exception):
    """Base class for all engine errors"""

    error_code = "MESHPLANE_ERROR"


class AllocationExhausted(MeshPlaneError):
    """No free address left in a network or hub CIDR"""

    error_code = "ALLOCATION_EXHAUSTED"


class InvalidCidr(MeshPlaneError):
    """Malformed network specification"""

    error_code = "INVALID_CIDR"


class InvalidAddress(MeshPlaneError):
    """Malformed IP address, or an address outside its network"""

    error_code = "INVALID_ADDRESS"


class AddressStateError(MeshPlaneError):
    """Address status does not allow the requested transition"""

    error_code = "ADDRESS_STATE_CONFLICT"


class EntityNotFound(MeshPlaneError):
    """Requested registry entity does not exist"""

    error_code = "NOT_FOUND"


class KeypairGenerationFailure(MeshPlaneError):
    """The key agreement primitive or the encryption boundary failed"""

    error_code = "KEYPAIR_GENERATION_FAILED"


class RemoteExecutionFailure(MeshPlaneError):
    """A command on a remote host failed or timed out"""

    error_code = "REMOTE_EXECUTION_FAILED"

    def __init__(
        self,
        message: str,
        host: Optional[str] = None,
        command: Optional[str] = None,
        output: str = "",
        error: str = "",
    ):
        super().__init__(message)
        self.host = host
        self.command = command
        self.output = output
        self.error = error


class DriftDetected(MeshPlaneError):
    """
    Informational: the remote state diverges from the registry.
    Only raised on request (SyncReport.raise_for_drift).
    """

    error_code = "DRIFT_DETECTED"

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class RotationPartialFailure(MeshPlaneError):
    """
    Keys were replaced but not every peer could be redeployed.
    The mesh is left inconsistent; `result` lists what succeeded and failed.
    """

    error_code = "ROTATION_PARTIAL_FAILURE"

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result
