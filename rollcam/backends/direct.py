"""
Direct capture backend - one ffmpeg process per recording segment.

There is no control channel: the capture tool is started with a complete
argument vector, stopped by writing ``q`` to its stdin, and watched by
reading its merged stdout/stderr line by line.

Pause is simulated. Pausing stops the process (finalizing the current
file) and resuming starts a new one with the same configuration, so a
paused recording yields one file per segment (``..._part2.mp4``, ...).
"""

import re
import subprocess
import threading
from concurrent.futures import Future
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from rollcam.backends.base import RecordingBackend
from rollcam.config import CaptureSettings
from rollcam.core.models import CaptureSource, RecordingConfiguration, SourceKind
from rollcam.core.session import SessionState
from rollcam.engine.supervisor import terminate_process
from rollcam.errors import LaunchError
from rollcam.logging import get_rollcam_logger
from rollcam.platform import Platform
from rollcam.transport import LocalTransport, Transport

logger = get_rollcam_logger(__name__)

ERROR_KEYWORDS = ("error", "failed", "invalid", "could not open", "no such file")

# Containers that support moving the index to the front of the file
FASTSTART_FORMATS = ("mp4", "mov", "m4v")

X_WINDOW_ID = re.compile(r"^(0x[0-9a-fA-F]+|\d+)$")


class LineKind(Enum):
    PROGRESS = "progress"
    ERROR = "error"
    OTHER = "other"


def classify_line(line: str) -> Tuple[LineKind, str]:
    """
    Classify one line of capture-tool output.

    Returns:
        (kind, status text) - progress lines become ``Recording - <time>``
    """
    text = line.strip()
    lowered = text.lower()
    if any(keyword in lowered for keyword in ERROR_KEYWORDS):
        return LineKind.ERROR, text
    if "time=" in text:
        return LineKind.PROGRESS, f"Recording - {_extract_time(text)}"
    if "frame=" in text:
        return LineKind.PROGRESS, f"Recording - {text}"
    return LineKind.OTHER, text


def _extract_time(line: str) -> str:
    start = line.index("time=") + len("time=")
    end = line.find(" ", start)
    return line[start:] if end == -1 else line[start:end]


def _video_input_args(
    config: RecordingConfiguration,
    settings: CaptureSettings,
    platform: Platform,
) -> List[str]:
    source = config.video_source
    window = source is not None and source.kind == SourceKind.WINDOW
    rate = ["-framerate", str(settings.framerate)]
    screen = settings.screen(platform)

    if platform.is_windows:
        target = f"title={source.identifier}" if window else screen
        return ["-f", "gdigrab", *rate, "-i", target]

    if platform.is_macos:
        if window:
            logger.warning("Window capture is not supported on macOS; capturing the screen")
        return ["-f", "avfoundation", *rate, "-capture_cursor", "1", "-i", f"{screen}:none"]

    args = ["-f", "x11grab", *rate]
    if window:
        if not X_WINDOW_ID.match(source.identifier):
            raise LaunchError(f"x11grab needs a numeric window id, got {source.identifier!r}")
        args += ["-window_id", source.identifier]
    return args + ["-i", screen]


def _audio_input_args(device: str, platform: Platform) -> List[str]:
    if platform.is_windows:
        return ["-f", "dshow", "-i", f"audio={device}"]
    if platform.is_macos:
        return ["-f", "avfoundation", "-i", f":{device}"]
    return ["-f", "pulse", "-i", device]


def build_capture_command(
    config: RecordingConfiguration,
    settings: CaptureSettings,
    platform: Platform,
    video_path: Path,
    audio_path: Optional[Path] = None,
) -> List[str]:
    """
    Build the ffmpeg argument vector for one recording segment.

    Input 0 is always video. System audio and microphone follow as inputs
    1 and 2; when both are present they are mixed into one stream. An
    ``audio_path`` adds a second, audio-only output when
    ``separate_audio_track`` is set.
    """
    devices = settings.audio_devices(platform)
    if config.audio_source is not None:
        devices["microphone"] = config.audio_source.identifier

    audio_devices: List[str] = []
    if config.record_system_audio:
        audio_devices.append(devices["system"])
    if config.record_microphone:
        audio_devices.append(devices["microphone"])

    command = [settings.ffmpeg_binary, "-hide_banner", "-y"]
    command += _video_input_args(config, settings, platform)
    for device in audio_devices:
        command += _audio_input_args(device, platform)

    separate = audio_path is not None and config.separate_audio_track and bool(audio_devices)

    audio_maps: List[str] = []
    if len(audio_devices) == 2:
        graph = "[1:a][2:a]amix=inputs=2:duration=longest"
        if separate:
            command += ["-filter_complex", f"{graph},asplit=2[aout][aout2]"]
            audio_maps = ["[aout]", "[aout2]"]
        else:
            command += ["-filter_complex", f"{graph}[aout]"]
            audio_maps = ["[aout]"]
    elif audio_devices:
        audio_maps = ["1:a", "1:a"] if separate else ["1:a"]

    audio_encoding = [
        "-c:a", settings.audio_codec,
        "-b:a", settings.audio_bitrate,
        "-ar", str(settings.audio_sample_rate),
        "-ac", str(settings.audio_channels),
    ]

    command += ["-map", "0:v"]
    if audio_maps:
        command += ["-map", audio_maps[0]]
    else:
        command += ["-an"]

    command += [
        "-c:v", settings.video_codec,
        "-preset", settings.preset,
        "-crf", str(settings.crf),
        "-pix_fmt", settings.pixel_format,
        "-s", config.resolution.dimensions,
        "-r", str(settings.framerate),
    ]
    if audio_maps:
        command += audio_encoding
    if config.output_format in FASTSTART_FORMATS:
        command += ["-movflags", "+faststart"]
    command.append(str(video_path))

    if separate:
        command += ["-map", audio_maps[1], "-vn", *audio_encoding, str(audio_path)]

    return command


class DirectCaptureBackend(RecordingBackend):
    """
    Records by running the capture tool directly.

    Example:
        backend = DirectCaptureBackend()
        backend.start(RecordingConfiguration.default())
        ...
        backend.stop()   # waits until the file is finalized
    """

    name = "direct"

    def __init__(
        self,
        settings: Optional[CaptureSettings] = None,
        transport: Optional[Transport] = None,
        platform: Optional[Platform] = None,
        graceful_timeout: float = 10.0,
        force_timeout: float = 5.0,
    ):
        super().__init__()
        self.settings = settings or CaptureSettings()
        self.transport = transport or LocalTransport()
        self.platform = platform or Platform.detect()
        self.graceful_timeout = graceful_timeout
        self.force_timeout = force_timeout

        self._lock = threading.RLock()
        self._process: Optional[subprocess.Popen] = None
        self._exit_future: Optional[Future] = None
        self._generation = 0
        self._segment = 0
        self._stop_requested = False
        self._pausing = False
        self._pause_noted = False

        self.outputs: List[Path] = []
        self.last_command: List[str] = []

    def is_available(self) -> bool:
        """Check that the capture tool runs at all."""
        try:
            _, code = self.transport.run_command([self.settings.ffmpeg_binary, "-version"], timeout=10)
        except (OSError, subprocess.SubprocessError):
            return False
        return code == 0

    def initialize(self) -> None:
        """Nothing to provision: IDLE goes straight to READY."""
        if self.session.state == SessionState.IDLE:
            self.session.transition(SessionState.READY, "Ready")

    def start(self, configuration: RecordingConfiguration) -> str:
        session_id = self.session.begin(configuration)
        if self.session.state == SessionState.IDLE:
            self.session.transition(SessionState.READY, "Ready")

        self._segment = 1
        self.outputs = []
        # Held until RECORDING so an instant exit is judged against that state
        with self._lock:
            try:
                self._spawn(configuration)
            except LaunchError as e:
                self.session.fail(e.status)
                raise
            self.session.transition(SessionState.RECORDING, "Recording started...")
        return session_id

    def _spawn(self, configuration: RecordingConfiguration) -> None:
        try:
            configuration.output_directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LaunchError(f"Cannot create output directory {configuration.output_directory}: {e}") from e

        configuration = self._resolve_window(configuration)
        suffix = f"_part{self._segment}" if self._segment > 1 else ""
        now = datetime.now()
        video_path = configuration.video_output_file(now, suffix)
        audio_path = configuration.audio_output_file(now, suffix) if configuration.separate_audio_track else None

        command = build_capture_command(configuration, self.settings, self.platform, video_path, audio_path)
        logger.info("Capture command: %s", " ".join(command))

        try:
            process = self.transport.spawn(
                command,
                cwd=configuration.output_directory,
                interactive=True,
                capture_output=True,
            )
        except OSError as e:
            raise LaunchError(f"Failed to start {self.settings.ffmpeg_binary}: {e}") from e

        with self._lock:
            self._generation += 1
            generation = self._generation
            self._process = process
            self._exit_future = Future()
            self._stop_requested = False
            self._pausing = False

        self.last_command = command
        self.outputs.append(video_path)
        if audio_path is not None and configuration.has_audio:
            self.outputs.append(audio_path)

        threading.Thread(
            target=self._monitor,
            args=(process, generation),
            name=f"rollcam-capture-{generation}",
            daemon=True,
        ).start()

    def _resolve_window(self, configuration: RecordingConfiguration) -> RecordingConfiguration:
        """
        Turn a window title into an X window id on Linux.

        Raises:
            LaunchError: If the lookup tool is missing or no window matches
        """
        source = configuration.video_source
        if not self.platform.is_linux or source is None or source.kind != SourceKind.WINDOW:
            return configuration
        if X_WINDOW_ID.match(source.identifier):
            return configuration

        try:
            output, code = self.transport.run_command(
                ["xdotool", "search", "--name", source.identifier], timeout=5
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise LaunchError(f"Cannot look up window {source.identifier!r}: {e}") from e

        ids = [line.strip() for line in output.splitlines() if line.strip().isdigit()]
        if code != 0 or not ids:
            raise LaunchError(f"No window titled {source.identifier!r}")

        logger.debug("Window %r is X window %s", source.identifier, ids[0])
        return configuration.replace(
            video_source=CaptureSource(source.name, ids[0], SourceKind.WINDOW)
        )

    def _monitor(self, process: subprocess.Popen, generation: int) -> None:
        errors: List[str] = []
        try:
            for line in process.stdout:
                if not line.strip():
                    continue
                logger.debug("capture: %s", line.rstrip())
                kind, text = classify_line(line)
                if kind == LineKind.ERROR:
                    errors.append(text)
                    self.session.update_status(f"Error: {text}")
                elif kind == LineKind.PROGRESS:
                    self.session.update_status(text)
        except (OSError, ValueError) as e:
            errors.append(f"Error reading capture output: {e}")
        finally:
            code = process.wait()
            self._on_exit(generation, code, errors)

    def _on_exit(self, generation: int, code: int, errors: List[str]) -> None:
        logger.info("Capture process exited with code %s", code)
        with self._lock:
            if generation != self._generation:
                return
            future = self._exit_future
            try:
                if errors:
                    self.session.fail("Recording failed: " + "\n".join(errors))
                elif self._pausing:
                    pass
                elif self._stop_requested:
                    self.session.transition(SessionState.IDLE, "Recording completed")
                elif self.session.state == SessionState.RECORDING:
                    if code != 0:
                        self.session.fail(f"Capture process exited unexpectedly with code {code}")
                    else:
                        self.session.transition(SessionState.STOPPING, "Capture process ended")
                        self.session.transition(SessionState.IDLE, "Recording completed")
            finally:
                if future is not None and not future.done():
                    future.set_result(code)

    def _send_quit(self, process: subprocess.Popen) -> None:
        """Ask the capture tool to finish its file; terminate if stdin is gone."""
        try:
            process.stdin.write("q\n")
            process.stdin.flush()
            process.stdin.close()
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Could not send quit to capture process (%s); terminating", e)
            threading.Thread(
                target=terminate_process,
                args=(process, self.graceful_timeout, self.force_timeout),
                name="rollcam-capture-terminate",
                daemon=True,
            ).start()

    def request_stop(self) -> Future:
        """
        Begin stopping and return a Future resolved once the process exits.

        Waiting on the Future with a timeout lets a caller observe that the
        session is still STOPPING without abandoning finalization.
        """
        with self._lock:
            state = self.session.state
            if state == SessionState.PAUSED:
                # No process is running between segments
                done: Future = Future()
                self.session.transition(SessionState.STOPPING, "Stopping recording...")
                self.session.transition(SessionState.IDLE, "Recording stopped")
                done.set_result(None)
                return done

            self.session.require(SessionState.RECORDING, action="stop")
            self._stop_requested = True
            process = self._process
            future = self._exit_future
            self.session.transition(SessionState.STOPPING, "Stopping recording...")

        self._send_quit(process)
        return future

    def stop(self) -> Optional[int]:
        """
        Stop and wait, without a timeout, for the output to be finalized.

        Returns:
            Capture process exit code (None if stopped while paused)
        """
        return self.request_stop().result()

    def toggle_pause(self) -> SessionState:
        state = self.session.state
        if state == SessionState.RECORDING:
            return self._pause()
        if state == SessionState.PAUSED:
            return self._resume()
        self.session.require(SessionState.RECORDING, SessionState.PAUSED, action="toggle pause")
        return state

    def _pause(self) -> SessionState:
        if not self._pause_noted:
            logger.limitation(
                "Pausing stops the capture process; resuming starts a new one.\n"
                "Each resumed segment is written to its own file (_partN).",
                title="simulated pause",
            )
            self._pause_noted = True

        with self._lock:
            self._pausing = True
            process = self._process
            future = self._exit_future

        self.session.update_status("Pausing...")
        self._send_quit(process)
        future.result()

        with self._lock:
            self._pausing = False
        if self.session.state == SessionState.RECORDING:
            self.session.transition(SessionState.PAUSED, "Paused")
        return self.session.state

    def _resume(self) -> SessionState:
        self._segment += 1
        with self._lock:
            try:
                self._spawn(self.session.configuration)
            except LaunchError as e:
                self.session.fail(e.status)
                raise
            self.session.transition(SessionState.RECORDING, "Recording resumed")
        return self.session.state

    def shutdown(self) -> None:
        state = self.session.state
        if state in (SessionState.RECORDING, SessionState.PAUSED):
            self.stop()
        elif state == SessionState.STOPPING and self._exit_future is not None:
            self._exit_future.result()
        elif state == SessionState.READY:
            self.session.transition(SessionState.IDLE, "Idle")

        process = self._process
        if process is not None and process.poll() is None:
            terminate_process(process, self.graceful_timeout, self.force_timeout)
