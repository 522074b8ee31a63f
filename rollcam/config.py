"""
Runtime settings.

Defaults match a stock portable OBS Studio bundle driven over obs-websocket
on localhost. Any field can be overridden from the environment:

    ROLLCAM_INSTALL_DIR=/opt/rollcam/obs-studio
    ROLLCAM_CONTROL_PORT=4456
    ROLLCAM_FFMPEG=/usr/local/bin/ffmpeg

Example:
    settings = Settings.from_env()
    provisioner = BundleProvisioner(settings.engine)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from rollcam import __version__
from rollcam.platform import Platform

DEFAULT_DOWNLOAD_URL = (
    "https://github.com/obsproject/obs-studio/releases/download/"
    "31.0.4/OBS-Studio-31.0.4-Windows.zip"
)

ENV_PREFIX = "ROLLCAM_"


def _default_install_dir() -> Path:
    return Path.home() / ".rollcam" / "obs-studio"


@dataclass
class EngineSettings:
    """Where the engine comes from, where it lives, and how to talk to it."""

    download_url: str = DEFAULT_DOWNLOAD_URL
    install_dir: Path = field(default_factory=_default_install_dir)
    binary_relpath: str = "bin/64bit/obs64.exe"
    process_names: List[str] = field(default_factory=lambda: ["obs64.exe", "obs32.exe"])
    launch_args: List[str] = field(
        default_factory=lambda: ["--portable", "--minimize-to-tray", "--disable-shutdown-check"]
    )
    control_host: str = "localhost"
    control_port: int = 4455
    control_password: str = ""
    rpc_version: int = 1
    user_agent: str = f"Rollcam/{__version__}"
    scene_collection: str = "Rollcam"
    canvas_width: int = 1920
    canvas_height: int = 1080

    # Timeouts (seconds)
    connect_timeout: float = 300.0
    read_timeout: float = 600.0
    ready_timeout: float = 30.0
    handshake_timeout: float = 5.0
    request_timeout: float = 5.0
    graceful_timeout: float = 10.0
    force_timeout: float = 5.0

    @property
    def control_uri(self) -> str:
        return f"ws://{self.control_host}:{self.control_port}"


@dataclass
class CaptureSettings:
    """Encoder and device choices for the direct capture tool."""

    ffmpeg_binary: str = "ffmpeg"
    framerate: int = 30
    video_codec: str = "libx264"
    preset: str = "fast"
    crf: int = 23
    pixel_format: str = "yuv420p"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    audio_sample_rate: int = 44100
    audio_channels: int = 2
    system_audio_device: Optional[str] = None
    microphone_device: Optional[str] = None
    screen_device: Optional[str] = None

    def screen(self, platform: Platform) -> str:
        """Resolve the screen-grab input name for a platform."""
        if self.screen_device:
            return self.screen_device
        if platform.is_windows:
            return "desktop"
        if platform.is_macos:
            return "Capture screen 0"
        return os.environ.get("DISPLAY") or ":0.0"

    def audio_devices(self, platform: Platform) -> Dict[str, str]:
        """Resolve system-audio/microphone device names for a platform."""
        if platform.is_windows:
            defaults = {"system": "Stereo Mix", "microphone": "Microphone"}
        elif platform.is_macos:
            defaults = {"system": "0", "microphone": "1"}
        else:
            defaults = {"system": "default", "microphone": "default"}

        return {
            "system": self.system_audio_device or defaults["system"],
            "microphone": self.microphone_device or defaults["microphone"],
        }


# Environment variable name -> (settings section, field name)
_ENV_FIELDS = {
    "DOWNLOAD_URL": ("engine", "download_url"),
    "INSTALL_DIR": ("engine", "install_dir"),
    "BINARY": ("engine", "binary_relpath"),
    "CONTROL_HOST": ("engine", "control_host"),
    "CONTROL_PORT": ("engine", "control_port"),
    "CONTROL_PASSWORD": ("engine", "control_password"),
    "READY_TIMEOUT": ("engine", "ready_timeout"),
    "REQUEST_TIMEOUT": ("engine", "request_timeout"),
    "FFMPEG": ("capture", "ffmpeg_binary"),
    "FRAMERATE": ("capture", "framerate"),
    "SYSTEM_AUDIO_DEVICE": ("capture", "system_audio_device"),
    "MICROPHONE_DEVICE": ("capture", "microphone_device"),
    "SCREEN_DEVICE": ("capture", "screen_device"),
}


@dataclass
class Settings:
    """All Rollcam settings."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    capture: CaptureSettings = field(default_factory=CaptureSettings)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """
        Build settings from defaults plus ROLLCAM_* environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            Settings instance

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        environ = os.environ if environ is None else environ
        settings = cls()

        for suffix, (section, name) in _ENV_FIELDS.items():
            raw = environ.get(ENV_PREFIX + suffix)
            if raw is None or raw == "":
                continue
            target = getattr(settings, section)
            setattr(target, name, _coerce(target, name, suffix, raw))

        return settings


def _coerce(target, name: str, suffix: str, raw: str):
    """Convert an environment string to the type of the dataclass field."""
    current = getattr(target, name)
    if isinstance(current, Path) or name == "install_dir":
        return Path(raw).expanduser()
    if isinstance(current, bool):
        return raw.lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}{suffix} must be an integer, got {raw!r}")
    if isinstance(current, float):
        try:
            return float(raw)
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}{suffix} must be a number, got {raw!r}")
    return raw


__all__ = [
    "Settings",
    "EngineSettings",
    "CaptureSettings",
    "DEFAULT_DOWNLOAD_URL",
]
