"""
Session state machine.

    IDLE -> INITIALIZING -> READY -> RECORDING <-> PAUSED
                                        |            |
                                        +-> STOPPING <+ -> IDLE

ERROR is reachable from every state and only left through reset().

A Session belongs to exactly one backend. Check-and-set happens under a
short-held lock, so a second concurrent start fails immediately instead of
queueing behind the first.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from rollcam.core.models import RecordingConfiguration
from rollcam.errors import AlreadyActiveError, CommandError, InvalidTransitionError
from rollcam.logging import get_logger

logger = get_logger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPING = "stopping"
    ERROR = "error"


TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.INITIALIZING, SessionState.READY, SessionState.ERROR}),
    SessionState.INITIALIZING: frozenset({SessionState.READY, SessionState.ERROR}),
    SessionState.READY: frozenset({SessionState.RECORDING, SessionState.IDLE, SessionState.ERROR}),
    SessionState.RECORDING: frozenset({SessionState.PAUSED, SessionState.STOPPING, SessionState.ERROR}),
    SessionState.PAUSED: frozenset({SessionState.RECORDING, SessionState.STOPPING, SessionState.ERROR}),
    SessionState.STOPPING: frozenset({SessionState.IDLE, SessionState.ERROR}),
    SessionState.ERROR: frozenset({SessionState.IDLE}),
}

# States in which a start request must be refused
ACTIVE_STATES = frozenset({
    SessionState.INITIALIZING,
    SessionState.RECORDING,
    SessionState.PAUSED,
    SessionState.STOPPING,
})


@dataclass(frozen=True)
class StatusEvent:
    """One notification delivered to status listeners."""
    session_id: Optional[str]
    state: SessionState
    previous: SessionState
    message: str
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_transition(self) -> bool:
        return self.state != self.previous


StatusListener = Callable[[StatusEvent], None]


class Session:
    """
    Lifecycle of one recording attempt.

    The identifier is regenerated by every begin(); the configuration
    snapshot is whatever begin() was given.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._listeners: List[StatusListener] = []
        self._starting = False

        self.id: Optional[str] = None
        self.configuration: Optional[RecordingConfiguration] = None
        self.state = SessionState.IDLE
        self.status = "Idle"
        self.last_error: Optional[str] = None

        self.created_at = datetime.now()
        self.started_at: Optional[datetime] = None
        self.state_changed_at = self.created_at
        self.ended_at: Optional[datetime] = None

    def add_listener(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._starting or self.state in ACTIVE_STATES

    def begin(self, configuration: RecordingConfiguration) -> str:
        """
        Claim the session for a new start.

        Returns:
            The new session identifier

        Raises:
            AlreadyActiveError: If a start is in flight or a recording is active
            CommandError: If the session is in ERROR and needs reset()
        """
        with self._lock:
            if self._starting or self.state in ACTIVE_STATES:
                raise AlreadyActiveError(
                    f"Session {self.id} is already {self.state.value}"
                )
            if self.state == SessionState.ERROR:
                raise CommandError(
                    f"Session is in error ({self.last_error}); reset before starting again"
                )

            self._starting = True
            self.id = uuid.uuid4().hex
            self.configuration = configuration
            self.started_at = datetime.now()
            self.ended_at = None
            self.last_error = None
            return self.id

    def require(self, *states: SessionState, action: str) -> None:
        """
        Fail with CommandError unless the session is in one of ``states``.

        Used before any I/O so a rejected command never touches the engine.
        """
        with self._lock:
            if self.state not in states:
                allowed = ", ".join(s.value for s in states)
                raise CommandError(
                    f"Cannot {action} while {self.state.value} (needs {allowed})",
                    request_type=action,
                )

    def transition(self, target: SessionState, message: Optional[str] = None) -> SessionState:
        """
        Move to ``target`` and notify listeners.

        Returns:
            The previous state

        Raises:
            InvalidTransitionError: If the edge does not exist
        """
        with self._lock:
            previous = self.state
            if target not in TRANSITIONS[previous]:
                raise InvalidTransitionError(previous, target)

            self.state = target
            self.state_changed_at = datetime.now()
            if target in (SessionState.RECORDING, SessionState.ERROR, SessionState.IDLE):
                self._starting = False
            if target == SessionState.IDLE and previous in (SessionState.STOPPING, SessionState.ERROR):
                self.ended_at = self.state_changed_at

            self.status = message or target.value.capitalize()
            self._notify(previous)
            return previous

    def fail(self, message: str) -> None:
        """Enter ERROR with a diagnostic message (allowed from every state)."""
        with self._lock:
            self.last_error = message
            if self.state == SessionState.ERROR:
                self.status = message
                self._notify(SessionState.ERROR)
                return
            self.transition(SessionState.ERROR, message)

    def reset(self) -> None:
        """Explicit recovery from ERROR back to IDLE."""
        with self._lock:
            if self.state == SessionState.IDLE:
                return
            if self.state != SessionState.ERROR:
                raise InvalidTransitionError(self.state, SessionState.IDLE)
            self.last_error = None
            self.transition(SessionState.IDLE, "Idle")

    def update_status(self, message: str) -> None:
        """Publish a progress message without changing state."""
        with self._lock:
            self.status = message
            self._notify(self.state)

    def _notify(self, previous: SessionState) -> None:
        event = StatusEvent(
            session_id=self.id,
            state=self.state,
            previous=previous,
            message=self.status,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Status listener %r failed", listener)

    def snapshot(self) -> Dict[str, object]:
        """Plain-dict view for display and logging."""
        with self._lock:
            return {
                "id": self.id,
                "state": self.state.value,
                "status": self.status,
                "last_error": self.last_error,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            }

    def __repr__(self):
        return f"Session(id={self.id!r}, state={self.state.value})"
