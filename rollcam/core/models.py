"""
Data model for recording sessions.

RecordingConfiguration is an immutable snapshot: use ``replace()`` (or
``dataclasses.replace``) to derive a changed copy.
"""

import dataclasses
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

FILENAME_PREFIX = "ScreenRecording_"
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


class SourceKind(Enum):
    """What a capture source points at."""
    FULL_SCREEN = "full-screen"
    WINDOW = "window"
    AUDIO_DEVICE = "audio-device"


@dataclass(frozen=True, eq=False)
class CaptureSource:
    """
    A capture source descriptor as supplied by a SourceCatalog.

    Two sources are the same source when identifier and kind match; the
    display name is free text.
    """
    name: str
    identifier: str
    kind: SourceKind

    def __eq__(self, other):
        if not isinstance(other, CaptureSource):
            return NotImplemented
        return self.identifier == other.identifier and self.kind == other.kind

    def __hash__(self):
        return hash((self.identifier, self.kind))

    def __str__(self):
        return self.name

    @classmethod
    def full_screen(cls) -> "CaptureSource":
        return cls("Full Screen", "desktop", SourceKind.FULL_SCREEN)

    @classmethod
    def window(cls, title: str) -> "CaptureSource":
        return cls(title, title, SourceKind.WINDOW)

    @classmethod
    def audio_device(cls, name: str, identifier: Optional[str] = None) -> "CaptureSource":
        return cls(name, identifier or name, SourceKind.AUDIO_DEVICE)


@dataclass(frozen=True, eq=False)
class Resolution:
    """Named resolution preset; equality is by dimensions only."""
    name: str
    width: int
    height: int

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Resolution must be positive, got {self.width}x{self.height}")

    def __eq__(self, other):
        if not isinstance(other, Resolution):
            return NotImplemented
        return self.width == other.width and self.height == other.height

    def __hash__(self):
        return hash((self.width, self.height))

    @property
    def dimensions(self) -> str:
        """``WIDTHxHEIGHT`` form used on command lines."""
        return f"{self.width}x{self.height}"

    def __str__(self):
        return f"{self.name} ({self.dimensions})"

    @classmethod
    def parse(cls, text: str) -> "Resolution":
        """
        Parse a preset name (``1080p``, ``2k``, ``4k``) or ``WxH``.

        Raises:
            ValueError: If the text is neither
        """
        key = text.strip().lower()
        for preset in PRESETS:
            if preset.name.lower() == key:
                return preset

        match = re.fullmatch(r"(\d+)\s*[x×]\s*(\d+)", key)
        if not match:
            raise ValueError(f"Unknown resolution: {text!r}")

        width, height = int(match.group(1)), int(match.group(2))
        for preset in PRESETS:
            if (preset.width, preset.height) == (width, height):
                return preset
        return cls(f"{width}x{height}", width, height)


HD_1080P = Resolution("1080p", 1920, 1080)
QHD_2K = Resolution("2K", 2560, 1440)
UHD_4K = Resolution("4K", 3840, 2160)

PRESETS = (HD_1080P, QHD_2K, UHD_4K)


def _default_output_dir() -> Path:
    return Path.home() / "ScreenRecordings"


@dataclass(frozen=True)
class RecordingConfiguration:
    """
    Everything a backend needs to produce one recording.

    Example:
        config = RecordingConfiguration.default().replace(
            resolution=UHD_4K,
            record_microphone=True,
        )
    """
    video_source: Optional[CaptureSource] = None
    audio_source: Optional[CaptureSource] = None
    resolution: Resolution = HD_1080P
    output_directory: Path = field(default_factory=_default_output_dir)
    record_system_audio: bool = True
    record_microphone: bool = False
    separate_audio_track: bool = False
    output_format: str = "mp4"

    def __post_init__(self):
        # Accept plain strings for the directory but always store a Path
        if not isinstance(self.output_directory, Path):
            object.__setattr__(self, "output_directory", Path(self.output_directory))
        fmt = self.output_format.lstrip(".").lower()
        if not fmt or os.sep in fmt or "/" in fmt:
            raise ValueError(f"Invalid output format: {self.output_format!r}")
        object.__setattr__(self, "output_format", fmt)

    @classmethod
    def default(cls) -> "RecordingConfiguration":
        return cls(video_source=CaptureSource.full_screen())

    def replace(self, **changes) -> "RecordingConfiguration":
        """Return a copy with the given fields changed."""
        return dataclasses.replace(self, **changes)

    @property
    def has_audio(self) -> bool:
        return self.record_system_audio or self.record_microphone

    def file_stem(self, when: Optional[datetime] = None) -> str:
        """Timestamped base name, e.g. ``ScreenRecording_2024-01-31_09-15-00``."""
        when = when or datetime.now()
        return FILENAME_PREFIX + when.strftime(TIMESTAMP_FORMAT)

    def video_output_file(self, when: Optional[datetime] = None, suffix: str = "") -> Path:
        """Full path of the video artifact."""
        return self.output_directory / f"{self.file_stem(when)}{suffix}.{self.output_format}"

    def audio_output_file(self, when: Optional[datetime] = None, suffix: str = "") -> Path:
        """Full path of the separate audio artifact."""
        return self.output_directory / f"{self.file_stem(when)}{suffix}_audio.aac"


@dataclass
class EngineInstallation:
    """
    A provisioned engine on disk.

    ``ready`` is a live filesystem probe on every access; nothing about the
    binary is cached.
    """
    root: Path
    binary: Path
    host: str
    port: int

    @property
    def ready(self) -> bool:
        return self.binary.is_file() and os.access(self.binary, os.X_OK)

    @property
    def binary_dir(self) -> Path:
        return self.binary.parent

    @property
    def config_dir(self) -> Path:
        return self.root / "config" / "obs-studio"
