"""
Source catalog.

Supplies the capture sources and audio devices a configuration can name.
Enumerating live windows and devices is left to richer implementations;
StaticSourceCatalog returns the fixed set every platform has.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from rollcam.config import CaptureSettings
from rollcam.core.models import CaptureSource
from rollcam.platform import Platform


class SourceCatalog(ABC):
    """Lookup service for capture-source descriptors."""

    @abstractmethod
    def video_sources(self) -> List[CaptureSource]:
        pass

    @abstractmethod
    def audio_sources(self) -> List[CaptureSource]:
        pass

    def find(self, identifier: str) -> Optional[CaptureSource]:
        """First video or audio source with this identifier or name."""
        for source in self.video_sources() + self.audio_sources():
            if identifier in (source.identifier, source.name):
                return source
        return None


class StaticSourceCatalog(SourceCatalog):
    """Full screen plus the configured system-audio and microphone devices."""

    def __init__(self, settings: Optional[CaptureSettings] = None, platform: Optional[Platform] = None):
        self.settings = settings or CaptureSettings()
        self.platform = platform or Platform.detect()

    def video_sources(self) -> List[CaptureSource]:
        return [CaptureSource.full_screen()]

    def audio_sources(self) -> List[CaptureSource]:
        devices = self.settings.audio_devices(self.platform)
        return [
            CaptureSource.audio_device(f"System Audio ({devices['system']})", devices["system"]),
            CaptureSource.audio_device("Microphone", devices["microphone"]),
        ]
