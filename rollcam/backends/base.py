"""
Base recording backend interface.

All backends (DirectCaptureBackend, ManagedEngineBackend) implement this
interface and own exactly one Session.
"""

from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from rollcam.core.models import RecordingConfiguration
from rollcam.core.session import Session, SessionState, StatusListener


class RecordingBackend(ABC):
    """
    Abstract base class for recording strategies.

    Operations are plain blocking calls usable from any thread. ``submit``
    runs one on the backend's own single worker thread instead, so the
    caller is never blocked and operations stay in submission order.

    Example:
        backend = DirectCaptureBackend()
        backend.add_listener(lambda event: print(event.state, event.message))
        future = backend.submit(backend.start, config)
        session_id = future.result()
    """

    name = "base"

    def __init__(self):
        self.session = Session()
        self._worker = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"rollcam-{self.name}",
        )

    @property
    def state(self) -> SessionState:
        return self.session.state

    def add_listener(self, listener: StatusListener) -> None:
        self.session.add_listener(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        self.session.remove_listener(listener)

    def submit(self, operation: Callable[..., Any], *args, **kwargs) -> Future:
        """Run a backend operation on the backend's worker thread."""
        return self._worker.submit(operation, *args, **kwargs)

    @abstractmethod
    def initialize(self) -> None:
        """
        Bring the backend to READY.

        Raises:
            RollcamError subclass describing the failed step
        """
        pass

    @abstractmethod
    def start(self, configuration: RecordingConfiguration) -> str:
        """
        Start recording with a configuration snapshot.

        Returns:
            The new session identifier

        Raises:
            AlreadyActiveError: If a session is already active
        """
        pass

    @abstractmethod
    def stop(self) -> Any:
        """
        Stop the active recording.

        Raises:
            CommandError: If nothing is recording
        """
        pass

    @abstractmethod
    def toggle_pause(self) -> SessionState:
        """
        Pause a recording or resume a paused one.

        Returns:
            The state after the toggle

        Raises:
            CommandError: If the session is neither recording nor paused
        """
        pass

    @abstractmethod
    def shutdown(self) -> None:
        """
        Stop any active session and release everything. Idempotent.
        """
        pass

    def reset(self) -> None:
        """Explicit recovery from ERROR back to IDLE."""
        self.session.reset()

    def close(self) -> None:
        """Shut down and stop the worker thread."""
        try:
            self.shutdown()
        finally:
            self._worker.shutdown(wait=False)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - shuts the backend down."""
        self.close()
