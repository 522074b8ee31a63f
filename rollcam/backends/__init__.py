"""
Recording backends.

    direct  - runs the command-line capture tool itself
    managed - provisions, launches and commands the external engine
"""

from typing import Optional

from rollcam.backends.base import RecordingBackend
from rollcam.backends.direct import DirectCaptureBackend, build_capture_command, classify_line
from rollcam.backends.managed import ManagedEngineBackend
from rollcam.config import Settings

BACKENDS = {
    DirectCaptureBackend.name: DirectCaptureBackend,
    ManagedEngineBackend.name: ManagedEngineBackend,
}


def create_backend(kind: str, settings: Optional[Settings] = None) -> RecordingBackend:
    """
    Build a backend by name with its default collaborators.

    Raises:
        ValueError: Unknown backend name
    """
    settings = settings or Settings()
    if kind == DirectCaptureBackend.name:
        return DirectCaptureBackend(
            settings.capture,
            graceful_timeout=settings.engine.graceful_timeout,
            force_timeout=settings.engine.force_timeout,
        )
    if kind == ManagedEngineBackend.name:
        return ManagedEngineBackend(settings.engine)
    raise ValueError(f"Unknown backend {kind!r} (choose from {', '.join(sorted(BACKENDS))})")


__all__ = [
    "RecordingBackend",
    "DirectCaptureBackend",
    "ManagedEngineBackend",
    "BACKENDS",
    "create_backend",
    "build_capture_command",
    "classify_line",
]
