"""
Core Rollcam data model and session state machine.
"""

from rollcam.core.models import (
    CaptureSource,
    EngineInstallation,
    RecordingConfiguration,
    Resolution,
    SourceKind,
    HD_1080P,
    QHD_2K,
    UHD_4K,
    PRESETS,
)
from rollcam.core.session import Session, SessionState, StatusEvent, StatusListener

__all__ = [
    "CaptureSource",
    "EngineInstallation",
    "RecordingConfiguration",
    "Resolution",
    "SourceKind",
    "HD_1080P",
    "QHD_2K",
    "UHD_4K",
    "PRESETS",
    "Session",
    "SessionState",
    "StatusEvent",
    "StatusListener",
]
