"""
Platform detection.

Decides which executable names to look for and which capture devices the
direct backend asks for.
"""

import platform as platform_module
from dataclasses import dataclass


@dataclass
class Platform:
    """Platform information (OS family, architecture)."""

    system: str
    arch: str

    @property
    def is_windows(self) -> bool:
        return self.system == "Windows"

    @property
    def is_linux(self) -> bool:
        return self.system == "Linux"

    @property
    def is_macos(self) -> bool:
        return self.system == "Darwin"

    @classmethod
    def detect(cls) -> "Platform":
        """
        Detect the local platform.

        Returns:
            Platform information
        """
        return cls(
            system=platform_module.system(),
            arch=platform_module.machine(),
        )

    def __str__(self):
        return f"{self.system}/{self.arch}"
