__version__ = "0.1.0"

from rollcam.core import (
    CaptureSource,
    RecordingConfiguration,
    Resolution,
    Session,
    SessionState,
)
from rollcam.backends import DirectCaptureBackend, ManagedEngineBackend, create_backend
from rollcam.config import Settings
from rollcam.errors import RollcamError
from rollcam.logging import get_logger, get_rollcam_logger, setup_logging

"""
Foundations of Rollcam:
    RecordingConfiguration is an immutable description of one recording.
    Session tracks one recording attempt through its states.
    DirectCaptureBackend records by running the capture tool directly.
    ManagedEngineBackend provisions, launches and commands the capture engine.
    create_backend builds either backend by name.
"""

__all__ = [
    "CaptureSource",
    "RecordingConfiguration",
    "Resolution",
    "Session",
    "SessionState",
    "DirectCaptureBackend",
    "ManagedEngineBackend",
    "create_backend",
    "Settings",
    "RollcamError",
    "get_logger",
    "get_rollcam_logger",
    "setup_logging",
]
