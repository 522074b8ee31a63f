"""
Error taxonomy for Rollcam.

Every failure that reaches a caller is one of these. Each carries a short
``kind`` (stable, machine-friendly) and a ``status`` (the terminal status
string shown to users).
"""

from typing import Optional


class RollcamError(Exception):
    """Base class for all Rollcam errors."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def status(self) -> str:
        """Terminal status string for display."""
        return self.message

    def __str__(self):
        return self.message


class ProvisioningError(RollcamError):
    """Engine bundle could not be installed."""

    kind = "provisioning"
    stage = "install"

    @property
    def status(self) -> str:
        return f"Failed to install engine ({self.stage}): {self.message}"


class DownloadError(ProvisioningError):
    """Archive download failed (network, HTTP status, deadline)."""

    stage = "download"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExtractionError(ProvisioningError):
    """Archive was corrupt or contained an unsafe entry."""

    stage = "extract"

    def __init__(self, message: str, entry: Optional[str] = None):
        super().__init__(message)
        self.entry = entry


class LaunchError(RollcamError):
    """Engine process failed to start or never became ready."""

    kind = "launch"


class ProtocolError(RollcamError):
    """Control-channel handshake, framing, or connection failure."""

    kind = "protocol"


class CommandError(RollcamError):
    """Command rejected locally (wrong state) or by the engine."""

    kind = "command"

    def __init__(
        self,
        message: str,
        request_type: Optional[str] = None,
        code: Optional[int] = None,
    ):
        super().__init__(message)
        self.request_type = request_type
        self.code = code


class InvalidTransitionError(CommandError):
    """Session state machine has no such edge."""

    def __init__(self, from_state, to_state):
        super().__init__(f"Cannot go from {from_state.value} to {to_state.value}")
        self.from_state = from_state
        self.to_state = to_state


class AlreadyActiveError(RollcamError):
    """Start requested while a session is already active."""

    kind = "already-active"
