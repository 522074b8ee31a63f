"""
Unit tests for ProcessSupervisor.

The process table is faked through a Transport; readiness probing uses real
sockets on localhost.
"""

import os
import socket
import subprocess
import sys
import time

import pytest

from rollcam.config import EngineSettings
from rollcam.core.models import EngineInstallation
from rollcam.engine.supervisor import ProcessHandle, ProcessSupervisor, port_open, terminate_process
from rollcam.errors import LaunchError
from rollcam.platform import Platform
from rollcam.transport import LocalTransport, Transport

LINUX = Platform("Linux", "x86_64")
WINDOWS = Platform("Windows", "AMD64")


class FakeProcess:
    """Popen stand-in with scripted exit behavior."""

    def __init__(self, pid=4242, exit_on_terminate=True, returncode=None):
        self.pid = pid
        self.returncode = returncode
        self.exit_on_terminate = exit_on_terminate
        self.terminated = False
        self.killed = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        if self.exit_on_terminate:
            self.returncode = 0

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        if self.returncode is None:
            raise subprocess.TimeoutExpired("engine", timeout)
        return self.returncode


class FakeTransport(Transport):
    """Records commands and answers them from a table."""

    def __init__(self, codes=None, error=None, process=None):
        self.codes = codes or {}
        self.error = error
        self.process = process or FakeProcess()
        self.commands = []
        self.spawned = []

    def run_command(self, args, timeout=None):
        self.commands.append(args)
        if self.error is not None:
            raise self.error
        return "", self.codes.get(args[0], 1)

    def spawn(self, args, cwd=None, interactive=False, capture_output=False):
        self.spawned.append((args, cwd))
        return self.process


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def installation(tmp_path):
    binary = tmp_path / "bin" / "64bit" / "obs64.exe"
    binary.parent.mkdir(parents=True)
    binary.write_text("engine")
    os.chmod(binary, 0o755)
    return EngineInstallation(root=tmp_path, binary=binary, host="127.0.0.1", port=4455)


class TestKillStrayInstances:
    """Unit tests for best-effort stray-instance cleanup."""

    def test_uses_pkill_on_posix(self):
        """Test pkill -x for each executable name."""
        transport = FakeTransport(codes={"pkill": 0})
        supervisor = ProcessSupervisor(EngineSettings(), transport=transport, platform=LINUX)

        killed = supervisor.kill_stray_instances(settle=0)

        assert killed == 2
        assert transport.commands == [["pkill", "-x", "obs64.exe"], ["pkill", "-x", "obs32.exe"]]

    def test_uses_taskkill_on_windows(self):
        """Test taskkill /F /IM on Windows."""
        transport = FakeTransport()
        supervisor = ProcessSupervisor(EngineSettings(), transport=transport, platform=WINDOWS)

        supervisor.kill_stray_instances(settle=0)

        assert transport.commands[0] == ["taskkill", "/F", "/IM", "obs64.exe"]

    def test_failures_swallowed(self):
        """Test that a missing kill tool is treated as nothing to kill."""
        transport = FakeTransport(error=FileNotFoundError("pkill"))
        supervisor = ProcessSupervisor(EngineSettings(), transport=transport, platform=LINUX)

        assert supervisor.kill_stray_instances(settle=0) == 0


class TestLaunch:
    """Unit tests for starting the engine."""

    def test_launch(self, installation):
        """Test spawning from the binary directory with launch args."""
        transport = FakeTransport()
        supervisor = ProcessSupervisor(EngineSettings(), transport=transport, platform=LINUX)

        handle = supervisor.launch(installation)

        args, cwd = transport.spawned[0]
        assert args[0] == str(installation.binary)
        assert "--portable" in args
        assert cwd == installation.binary_dir
        assert handle.pid == 4242
        assert handle.executable_name == "obs64.exe"

    def test_launch_not_installed(self, tmp_path):
        """Test LaunchError when the binary is missing."""
        missing = EngineInstallation(tmp_path, tmp_path / "nope.exe", "localhost", 4455)
        supervisor = ProcessSupervisor(EngineSettings(), transport=FakeTransport(), platform=LINUX)

        with pytest.raises(LaunchError):
            supervisor.launch(missing)

    def test_launch_spawn_failure(self, installation):
        """Test LaunchError when the OS refuses to start the process."""

        class BrokenTransport(FakeTransport):
            def spawn(self, args, cwd=None, interactive=False, capture_output=False):
                raise PermissionError("denied")

        supervisor = ProcessSupervisor(EngineSettings(), transport=BrokenTransport(), platform=LINUX)

        with pytest.raises(LaunchError):
            supervisor.launch(installation)

    def test_launch_immediate_exit(self, installation):
        """Test LaunchError when the process dies at once."""
        transport = FakeTransport(process=FakeProcess(returncode=3))
        supervisor = ProcessSupervisor(EngineSettings(), transport=transport, platform=LINUX)

        with pytest.raises(LaunchError, match="code 3"):
            supervisor.launch(installation)

    def test_clears_crash_artifacts(self, installation):
        """Test crash-recovery data and locks are removed before launch."""
        config_dir = installation.config_dir
        (config_dir / "crashes").mkdir(parents=True)
        (config_dir / "crashes" / "crash.txt").write_text("dump")
        (config_dir / "basic").mkdir()
        (config_dir / "basic" / "scene.lock").write_text("")
        (config_dir / "basic" / "deep").mkdir()
        (config_dir / "basic" / "deep" / "too-deep.lock").write_text("")
        (config_dir / "global.ini").write_text("[General]")

        supervisor = ProcessSupervisor(EngineSettings(), transport=FakeTransport(), platform=LINUX)
        supervisor.launch(installation)

        assert not (config_dir / "crashes").exists()
        assert not (config_dir / "basic" / "scene.lock").exists()
        assert (config_dir / "basic" / "deep" / "too-deep.lock").exists()
        assert (config_dir / "global.ini").exists()


class TestAwaitReady:
    """Unit tests for the readiness probe."""

    def test_ready_when_port_accepts(self):
        """Test success once something listens."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]

            supervisor = ProcessSupervisor(EngineSettings(), transport=FakeTransport(), platform=LINUX)
            assert supervisor.await_ready(None, timeout=3, host="127.0.0.1", port=port) is True

    def test_timeout_returns_false(self):
        """Test that a closed port yields False within the deadline."""
        port = free_port()
        process = FakeProcess()
        handle = ProcessHandle(process=process, executable_name="obs64.exe")
        supervisor = ProcessSupervisor(EngineSettings(), transport=FakeTransport(), platform=LINUX)

        started = time.monotonic()
        ready = supervisor.await_ready(handle, timeout=2, host="127.0.0.1", port=port)
        elapsed = time.monotonic() - started

        assert ready is False
        assert elapsed < 2 + 1.5
        # Process is left for the caller to deal with
        assert not process.terminated

    def test_early_exit_returns_false(self):
        """Test giving up as soon as the process has died."""
        handle = ProcessHandle(process=FakeProcess(returncode=1), executable_name="obs64.exe")
        supervisor = ProcessSupervisor(EngineSettings(), transport=FakeTransport(), platform=LINUX)

        started = time.monotonic()
        assert supervisor.await_ready(handle, timeout=30, host="127.0.0.1", port=free_port()) is False
        assert time.monotonic() - started < 5

    def test_port_open(self):
        """Test the raw TCP probe."""
        assert port_open("127.0.0.1", free_port(), timeout=0.5) is False


class TestIsRunning:
    """Unit tests for liveness checks."""

    def test_process_table_hit(self):
        """Test pgrep success means running."""
        supervisor = ProcessSupervisor(
            EngineSettings(), transport=FakeTransport(codes={"pgrep": 0}), platform=LINUX
        )
        assert supervisor.is_running() is True

    def test_process_table_miss(self):
        """Test pgrep failure means not running even with a stale handle."""
        supervisor = ProcessSupervisor(EngineSettings(), transport=FakeTransport(), platform=LINUX)
        handle = ProcessHandle(process=FakeProcess(), executable_name="obs64.exe")
        assert supervisor.is_running(handle) is False

    def test_falls_back_to_handle(self):
        """Test handle liveness when the query tool is unavailable."""
        transport = FakeTransport(error=FileNotFoundError("pgrep"))
        supervisor = ProcessSupervisor(EngineSettings(), transport=transport, platform=LINUX)

        assert supervisor.is_running(ProcessHandle(FakeProcess(), "obs64.exe")) is True
        assert supervisor.is_running(ProcessHandle(FakeProcess(returncode=0), "obs64.exe")) is False
        assert supervisor.is_running(None) is False


class TestShutdown:
    """Unit tests for graceful-then-forced termination."""

    def test_graceful(self):
        """Test terminate is enough for a cooperative process."""
        process = FakeProcess()
        supervisor = ProcessSupervisor(EngineSettings(), transport=FakeTransport(), platform=LINUX)
        supervisor.shutdown(ProcessHandle(process, "obs64.exe"))

        assert process.terminated
        assert not process.killed

    def test_escalates_to_kill(self):
        """Test kill after the graceful deadline."""
        process = FakeProcess(exit_on_terminate=False)
        assert terminate_process(process, graceful_timeout=0.1, force_timeout=0.1) == -9
        assert process.killed

    def test_idempotent(self):
        """Test that a second shutdown is a no-op."""
        process = FakeProcess()
        handle = ProcessHandle(process, "obs64.exe")
        supervisor = ProcessSupervisor(EngineSettings(), transport=FakeTransport(), platform=LINUX)

        supervisor.shutdown(handle)
        process.terminated = False
        supervisor.shutdown(handle)
        supervisor.shutdown(None)

        assert not process.terminated

    def test_real_process(self):
        """Test terminating a real child process."""
        transport = LocalTransport()
        process = transport.spawn([sys.executable, "-c", "import time; time.sleep(60)"])
        handle = ProcessHandle(process, "python")
        supervisor = ProcessSupervisor(
            EngineSettings(graceful_timeout=5, force_timeout=5), transport=transport
        )

        supervisor.shutdown(handle)

        assert not handle.alive
        supervisor.shutdown(handle)
