"""
Managed engine backend - drives a provisioned engine over its control channel.

Composes three independently constructed components:

    BundleProvisioner  -> engine on disk
    ProcessSupervisor  -> engine process
    ControlPlaneClient -> commands to the running engine

Each can be replaced by a fake in tests.
"""

import threading
from typing import Any, Dict, List, Optional, Tuple

from rollcam.backends.base import RecordingBackend
from rollcam.config import EngineSettings
from rollcam.core.models import RecordingConfiguration, SourceKind
from rollcam.core.session import SessionState
from rollcam.engine.bootstrap import SCENE_NAME
from rollcam.engine.control import ControlPlaneClient
from rollcam.engine.provisioner import BundleProvisioner
from rollcam.engine.supervisor import ProcessHandle, ProcessSupervisor
from rollcam.errors import CommandError, LaunchError, ProtocolError, RollcamError
from rollcam.logging import get_rollcam_logger

logger = get_rollcam_logger(__name__)


def setup_requests(configuration: RecordingConfiguration) -> List[Tuple[str, Dict[str, Any]]]:
    """
    Requests that configure the engine for one recording, in send order.

    StartRecord is not included.
    """
    width = configuration.resolution.width
    height = configuration.resolution.height
    requests = [
        ("SetRecordDirectory", {"recordDirectory": str(configuration.output_directory.absolute())}),
        ("SetRecordSettings", {"rec_format": configuration.output_format}),
        ("SetVideoSettings", {
            "baseWidth": width,
            "baseHeight": height,
            "outputWidth": width,
            "outputHeight": height,
        }),
    ]

    video = configuration.video_source
    if video is not None:
        # The bootstrap scene collection holds the full-screen capture
        scene = SCENE_NAME if video.kind == SourceKind.FULL_SCREEN else video.name
        requests.append(("SetCurrentProgramScene", {"sceneName": scene}))

    audio = configuration.audio_source
    if audio is not None:
        requests.append(("SetInputSettings", {"inputName": audio.name, "inputSettings": {}}))

    return requests


class ManagedEngineBackend(RecordingBackend):
    """
    Records through the external engine.

    Example:
        with ManagedEngineBackend() as backend:
            backend.initialize()          # install, launch, connect
            backend.start(config)
            backend.toggle_pause()
            backend.stop()
    """

    name = "managed"

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        provisioner: Optional[BundleProvisioner] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        client: Optional[ControlPlaneClient] = None,
    ):
        super().__init__()
        self.settings = settings or EngineSettings()
        self.provisioner = provisioner or BundleProvisioner(self.settings)
        self.supervisor = supervisor or ProcessSupervisor(self.settings)
        self.client = client or ControlPlaneClient(
            rpc_version=self.settings.rpc_version,
            password=self.settings.control_password,
            handshake_timeout=self.settings.handshake_timeout,
            request_timeout=self.settings.request_timeout,
        )
        self.client.on_disconnect = self._on_disconnect
        self.client.on_event = self._on_event

        self.handle: Optional[ProcessHandle] = None
        self.last_output_path: Optional[str] = None
        self._shutting_down = threading.Event()

    def initialize(self) -> None:
        """
        Install if missing, then launch the engine and connect to it.

        Raises:
            ProvisioningError: Install failed; launch was never attempted
            LaunchError: Engine did not start or its control port never opened
            ProtocolError: Handshake failed
        """
        state = self.session.state
        if state == SessionState.READY and self.client.connected:
            return
        self.session.require(SessionState.IDLE, action="initialize")

        self._shutting_down.clear()
        self.session.transition(SessionState.INITIALIZING, "Initializing engine...")
        try:
            self._bring_up()
        except RollcamError as e:
            self.session.fail(e.status)
            raise
        except Exception as e:
            logger.exception("Engine bring-up failed")
            error = LaunchError(f"Unexpected failure bringing up engine: {e}")
            self.session.fail(error.status)
            raise error from e
        self.session.transition(SessionState.READY, "Engine ready")

    def _bring_up(self) -> None:
        if self.provisioner.is_installed():
            installation = self.provisioner.installation()
        else:
            self.session.update_status("Installing engine...")
            installation = self.provisioner.install()

        self.session.update_status("Launching engine...")
        self.supervisor.kill_stray_instances()
        self.handle = self.supervisor.launch(installation)

        timeout = self.settings.ready_timeout
        if not self.supervisor.await_ready(self.handle, timeout, installation.host, installation.port):
            raise LaunchError(f"Control channel did not open on port {installation.port} within {timeout:.0f}s")

        self.session.update_status("Connecting to engine...")
        self.client.connect(installation.host, installation.port)

    def start(self, configuration: RecordingConfiguration) -> str:
        session_id = self.session.begin(configuration)
        try:
            if self.session.state == SessionState.IDLE:
                self.initialize()
            self._apply_settings(configuration)
            self.client.send("StartRecord")
        except RollcamError as e:
            if self.session.state != SessionState.ERROR:
                self.session.fail(e.status)
            raise
        except Exception as e:
            logger.exception("Start failed")
            error = CommandError(f"Unexpected failure starting recording: {e}", request_type="StartRecord")
            self.session.fail(error.status)
            raise error from e

        self.session.transition(SessionState.RECORDING, "Recording started...")
        return session_id

    def _apply_settings(self, configuration: RecordingConfiguration) -> None:
        """
        Send the setup requests. A setting the engine refuses is reported and
        skipped; the recording still starts with the engine's current value.
        """
        for request_type, payload in setup_requests(configuration):
            try:
                self.client.send(request_type, payload)
            except CommandError as e:
                logger.warning("%s", e)
                self.session.update_status(f"Skipped {request_type}: {e}")

    def stop(self) -> Optional[str]:
        """
        Stop recording; the engine stays up and the backend returns to READY.

        Returns:
            The output path reported by the engine, if any
        """
        self.session.require(SessionState.RECORDING, SessionState.PAUSED, action="stop")
        self.session.transition(SessionState.STOPPING, "Stopping recording...")
        try:
            response = self.client.send("StopRecord")
        except RollcamError as e:
            self.session.fail(e.status)
            raise

        self.last_output_path = response.data.get("outputPath") if response is not None else None
        self.session.transition(SessionState.IDLE, "Recording stopped")
        if self.client.connected:
            self.session.transition(SessionState.READY, "Engine ready")
        return self.last_output_path

    def toggle_pause(self) -> SessionState:
        self.session.require(SessionState.RECORDING, SessionState.PAUSED, action="toggle pause")
        if self.session.state == SessionState.RECORDING:
            request_type, target, message = "PauseRecord", SessionState.PAUSED, "Paused"
        else:
            request_type, target, message = "ResumeRecord", SessionState.RECORDING, "Recording resumed"

        try:
            self.client.send(request_type)
        except ProtocolError as e:
            self.session.fail(e.status)
            raise

        self.session.transition(target, message)
        return target

    def _on_disconnect(self, reason: str) -> None:
        if self._shutting_down.is_set():
            return
        if self.session.state not in (SessionState.IDLE, SessionState.ERROR):
            self.session.fail(f"Lost connection to engine: {reason}")

    def _on_event(self, event_type: str, data: Dict[str, Any]) -> None:
        if event_type == "RecordStateChanged":
            output_state = data.get("outputState", "")
            logger.info("Engine record state: %s", output_state)
            if data.get("outputPath"):
                self.last_output_path = data["outputPath"]

    def shutdown(self) -> None:
        if self.session.state in (SessionState.RECORDING, SessionState.PAUSED):
            try:
                self.stop()
            except RollcamError as e:
                logger.warning("Stop during shutdown failed: %s", e)

        self._shutting_down.set()
        self.supervisor.shutdown(self.handle)
        self.handle = None
        self.client.close()

        if self.session.state == SessionState.READY:
            self.session.transition(SessionState.IDLE, "Idle")

    def remove_installation(self) -> bool:
        """
        Shut the engine down, then delete its installation.

        Returns:
            Whether the installation directory is gone
        """
        self.shutdown()
        return self.provisioner.uninstall()
