"""
Base transport interface.

Every OS-level command Rollcam issues (process-table queries, stray
instance kills) and every child process it spawns goes through a
Transport, so tests can stand in for the operating system.
"""

import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple, Union


class Transport(ABC):
    """
    Abstract base class for command running and process spawning.

    Implementations:
    - LocalTransport: Run commands on this machine
    """

    @abstractmethod
    def run_command(self, args: List[str], timeout: Optional[float] = None) -> Tuple[str, int]:
        """
        Run a command from list of arguments (no shell) and wait for it.

        Args:
            args: Command and arguments as list
            timeout: Seconds to wait before giving up

        Returns:
            Tuple of (output, exit_code)

        Raises:
            OSError: If the command cannot be executed at all
            subprocess.TimeoutExpired: If the timeout elapses

        Example:
            output, code = transport.run_command(["pgrep", "-x", "obs"])
        """
        pass

    @abstractmethod
    def spawn(
        self,
        args: List[str],
        cwd: Optional[Union[str, Path]] = None,
        interactive: bool = False,
        capture_output: bool = False,
    ) -> subprocess.Popen:
        """
        Start a long-running child process without waiting for it.

        Args:
            args: Command and arguments as list
            cwd: Working directory for the child
            interactive: Open a text pipe to the child's stdin
            capture_output: Merge stdout/stderr into one text pipe

        Returns:
            The Popen-compatible process object

        Raises:
            OSError: If the process cannot be started
        """
        pass

    def close(self) -> None:
        """Release transport resources (no-op by default)."""
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - closes transport."""
        self.close()
