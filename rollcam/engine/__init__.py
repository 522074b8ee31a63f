"""
External engine management: provisioning, process supervision and the
control-plane client.
"""

from rollcam.engine.control import ControlPlaneClient, ControlRequest, ControlResponse, REQUEST_TYPES
from rollcam.engine.provisioner import BundleProvisioner
from rollcam.engine.supervisor import ProcessHandle, ProcessSupervisor

__all__ = [
    "BundleProvisioner",
    "ProcessSupervisor",
    "ProcessHandle",
    "ControlPlaneClient",
    "ControlRequest",
    "ControlResponse",
    "REQUEST_TYPES",
]
