"""
Local transport - run commands on local machine.
"""

import subprocess
from pathlib import Path
from typing import List, Optional, Tuple, Union

from rollcam.transport.base import Transport


class LocalTransport(Transport):
    """
    Local transport for running commands on the local machine.

    Uses subprocess for command execution.
    """

    def run_command(self, args: List[str], timeout: Optional[float] = None) -> Tuple[str, int]:
        """
        Run command from list of arguments (no shell).

        Args:
            args: Command and arguments as list
            timeout: Seconds to wait before giving up

        Returns:
            Tuple of (output, exit_code)
        """
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.stdout + result.stderr, result.returncode

    def spawn(
        self,
        args: List[str],
        cwd: Optional[Union[str, Path]] = None,
        interactive: bool = False,
        capture_output: bool = False,
    ) -> subprocess.Popen:
        """
        Start a child process.

        Output is either merged into one text pipe (capture_output) or
        discarded, so an unread pipe can never stall the child.
        """
        return subprocess.Popen(
            args,
            cwd=str(cwd) if cwd is not None else None,
            stdin=subprocess.PIPE if interactive else subprocess.DEVNULL,
            stdout=subprocess.PIPE if capture_output else subprocess.DEVNULL,
            stderr=subprocess.STDOUT if capture_output else subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
