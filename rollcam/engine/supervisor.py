"""
Engine process supervision.

Spawns the engine, probes its control port, answers liveness questions and
terminates it. All OS interaction goes through a Transport, so the process
table can be faked in tests.
"""

import shutil
import socket
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from rollcam.config import EngineSettings
from rollcam.core.models import EngineInstallation
from rollcam.errors import LaunchError
from rollcam.logging import get_rollcam_logger
from rollcam.platform import Platform
from rollcam.transport import LocalTransport, Transport

logger = get_rollcam_logger(__name__)

# Artifacts under config/obs-studio that trigger crash/safe-mode dialogs
CRASH_ARTIFACTS = ("crashes", "profiler_data", "safe_mode")

POLL_INTERVAL = 1.0


@dataclass
class ProcessHandle:
    """A spawned engine process and the name it shows in the process table."""
    process: subprocess.Popen
    executable_name: str
    started_at: float = field(default_factory=time.monotonic)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.poll() is None


def terminate_process(
    process: subprocess.Popen,
    graceful_timeout: float,
    force_timeout: float,
) -> Optional[int]:
    """
    Ask a process to exit, escalating to a kill if it does not.

    Returns:
        Exit code, or None if it survived the kill deadline too
    """
    if process.poll() is not None:
        return process.returncode

    process.terminate()
    try:
        return process.wait(timeout=graceful_timeout)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s ignored terminate after %.0fs, killing", process.pid, graceful_timeout)

    process.kill()
    try:
        return process.wait(timeout=force_timeout)
    except subprocess.TimeoutExpired:
        logger.error("Process %s still alive after kill", process.pid)
        return None


def port_open(host: str, port: int, timeout: float = 1.0) -> bool:
    """Plain TCP connect check."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class ProcessSupervisor:
    """
    Lifecycle of the engine's OS process.

    Example:
        supervisor = ProcessSupervisor(settings.engine)
        supervisor.kill_stray_instances()
        handle = supervisor.launch(installation)
        if not supervisor.await_ready(handle, timeout=30):
            supervisor.shutdown(handle)
    """

    def __init__(
        self,
        settings: EngineSettings,
        transport: Optional[Transport] = None,
        platform: Optional[Platform] = None,
    ):
        self.settings = settings
        self.transport = transport or LocalTransport()
        self.platform = platform or Platform.detect()

    @property
    def process_names(self) -> List[str]:
        return list(self.settings.process_names)

    def kill_stray_instances(self, settle: float = POLL_INTERVAL) -> int:
        """
        Best-effort kill of every process named like the engine.

        Failures mean "nothing to kill" and are only logged.

        Returns:
            How many kill commands reported success
        """
        killed = 0
        for name in self.process_names:
            if self.platform.is_windows:
                args = ["taskkill", "/F", "/IM", name]
            else:
                args = ["pkill", "-x", name]
            try:
                _, code = self.transport.run_command(args, timeout=5)
            except (OSError, subprocess.SubprocessError) as e:
                logger.debug("Stray-instance kill for %s failed: %s", name, e)
                continue
            if code == 0:
                killed += 1
                logger.info("Terminated stray %s", name)

        if killed and settle > 0:
            time.sleep(settle)
        if not killed:
            logger.debug("No stray engine processes found")
        return killed

    def clear_crash_artifacts(self, installation: EngineInstallation) -> None:
        """Remove crash-recovery data and lock files (failures are logged only)."""
        config_dir = installation.config_dir
        if not config_dir.is_dir():
            return

        for name in CRASH_ARTIFACTS:
            path = config_dir / name
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                elif path.exists():
                    path.unlink()
            except OSError as e:
                logger.warning("Could not remove %s: %s", path, e)

        for lock in _walk_locks(config_dir, depth=2):
            try:
                lock.unlink()
            except OSError as e:
                logger.warning("Could not remove lock %s: %s", lock, e)

    def launch(self, installation: EngineInstallation) -> ProcessHandle:
        """
        Start the engine in the background from its binary directory.

        Raises:
            LaunchError: If the binary is missing or the process cannot start
        """
        if not installation.ready:
            raise LaunchError(f"Engine is not installed at {installation.root}")

        self.clear_crash_artifacts(installation)

        args = [str(installation.binary), *self.settings.launch_args]
        logger.step("Starting engine")
        logger.debug("Engine command: %s", " ".join(args))
        try:
            process = self.transport.spawn(args, cwd=installation.binary_dir)
        except OSError as e:
            raise LaunchError(f"Failed to start engine: {e}") from e

        if process.poll() is not None:
            raise LaunchError(f"Engine exited immediately with code {process.returncode}")

        logger.info("Engine started (pid %s)", process.pid)
        return ProcessHandle(process=process, executable_name=installation.binary.name)

    def await_ready(
        self,
        handle: Optional[ProcessHandle],
        timeout: float,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> bool:
        """
        Poll the control port once per second until it accepts or timeout elapses.

        The process is left alone on timeout; the caller decides what to do.

        Returns:
            True once a TCP connect succeeds, False on timeout or early exit
        """
        host = host or self.settings.control_host
        port = port or self.settings.control_port
        deadline = time.monotonic() + timeout
        attempt = 0

        logger.info("Waiting for control channel on %s:%s (timeout %.0fs)", host, port, timeout)
        while True:
            attempt += 1
            remaining = deadline - time.monotonic()
            if port_open(host, port, timeout=max(0.1, min(POLL_INTERVAL, remaining))):
                logger.info("Control channel accepting after %d probe(s)", attempt)
                return True

            if handle is not None and not handle.alive:
                logger.error("Engine exited with code %s before becoming ready", handle.process.returncode)
                return False

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Control channel not accepting after %.0fs", timeout)
                return False
            time.sleep(min(POLL_INTERVAL, remaining))

    def is_running(self, handle: Optional[ProcessHandle] = None) -> bool:
        """
        Is an engine process alive?

        Prefers the process table, which also sees engines started by an
        earlier run; falls back to the handle when the query is unavailable.
        """
        try:
            return self._process_table_has_engine()
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Process table query unavailable: %s", e)
            return handle is not None and handle.alive

    def _process_table_has_engine(self) -> bool:
        for name in self.process_names:
            if self.platform.is_windows:
                output, _ = self.transport.run_command(
                    ["tasklist", "/FI", f"IMAGENAME eq {name}"], timeout=5
                )
                if name.lower() in output.lower():
                    return True
            else:
                _, code = self.transport.run_command(["pgrep", "-x", name], timeout=5)
                if code == 0:
                    return True
        return False

    def shutdown(self, handle: Optional[ProcessHandle]) -> None:
        """
        Terminate gracefully, then forcibly. No-op for an exited handle.
        """
        if handle is None or not handle.alive:
            return

        logger.step("Stopping engine")
        code = terminate_process(
            handle.process,
            graceful_timeout=self.settings.graceful_timeout,
            force_timeout=self.settings.force_timeout,
        )
        logger.info("Engine shutdown completed (exit code %s)", code)


def _walk_locks(directory: Path, depth: int):
    """Yield ``*.lock`` files at most ``depth`` levels below directory."""
    try:
        entries = list(directory.iterdir())
    except OSError:
        return
    for entry in entries:
        if entry.is_dir():
            if depth > 1:
                yield from _walk_locks(entry, depth - 1)
        elif entry.name.endswith(".lock"):
            yield entry
