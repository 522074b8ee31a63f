"""
Transport layer for OS interaction.

Provides abstraction for:
- Running short commands (process-table queries, kills)
- Spawning long-running child processes
"""

from rollcam.transport.base import Transport
from rollcam.transport.local import LocalTransport

__all__ = ["Transport", "LocalTransport"]
