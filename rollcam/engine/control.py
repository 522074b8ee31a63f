"""
Control-plane client for the engine's websocket RPC (obs-websocket v5).

Envelope: ``{"op": <int>, "d": {...}}``

    op 0  hello          server -> client
    op 1  identify       client -> server
    op 2  identify-ack   server -> client
    op 5  event          server -> client
    op 6  request        client -> server
    op 7  response       server -> client

Responses are matched to requests by ``requestId``. A request the engine
rejects becomes a CommandError instead of passing silently.
"""

import base64
import hashlib
import itertools
import json
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect

from rollcam.errors import CommandError, ProtocolError
from rollcam.logging import get_logger

logger = get_logger(__name__)

OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_EVENT = 5
OP_REQUEST = 6
OP_RESPONSE = 7

REQUEST_TYPES = frozenset({
    "StartRecord",
    "StopRecord",
    "PauseRecord",
    "ResumeRecord",
    "SetRecordDirectory",
    "SetRecordSettings",
    "SetVideoSettings",
    "SetCurrentProgramScene",
    "SetInputSettings",
})


@dataclass
class ControlRequest:
    """One op-6 request."""
    request_type: str
    request_id: str
    payload: Optional[Dict[str, Any]] = None
    opcode: int = OP_REQUEST

    def to_envelope(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "requestType": self.request_type,
            "requestId": self.request_id,
        }
        if self.payload is not None:
            d["requestData"] = self.payload
        return {"op": self.opcode, "d": d}


@dataclass
class ControlResponse:
    """One op-7 response."""
    request_type: str
    request_id: str
    ok: bool
    code: Optional[int] = None
    comment: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, d: Dict[str, Any]) -> "ControlResponse":
        status = d.get("requestStatus") or {}
        return cls(
            request_type=d.get("requestType", ""),
            request_id=str(d.get("requestId", "")),
            ok=bool(status.get("result", False)),
            code=status.get("code"),
            comment=status.get("comment"),
            data=d.get("responseData") or {},
        )


def auth_string(password: str, salt: str, challenge: str) -> str:
    """obs-websocket authentication response for a hello challenge."""
    secret = base64.b64encode(hashlib.sha256((password + salt).encode()).digest()).decode()
    return base64.b64encode(hashlib.sha256((secret + challenge).encode()).digest()).decode()


class ControlPlaneClient:
    """
    Persistent connection to the engine's control channel.

    Example:
        client = ControlPlaneClient(rpc_version=1)
        client.connect("localhost", 4455)
        client.send("SetRecordDirectory", {"recordDirectory": "/tmp/out"})
        client.send("StartRecord")
        client.close()
    """

    def __init__(
        self,
        rpc_version: int = 1,
        password: str = "",
        handshake_timeout: float = 5.0,
        request_timeout: float = 5.0,
        connector: Callable[..., Any] = ws_connect,
    ):
        self.rpc_version = rpc_version
        self.password = password
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self._connector = connector

        self._ws = None
        self._stack: Optional[ExitStack] = None
        self._reader: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self._counter = itertools.count(1)
        self._closing = False
        self._connected = threading.Event()

        self.negotiated_rpc_version: Optional[int] = None
        self.on_disconnect: Optional[Callable[[str], None]] = None
        self.on_event: Optional[Callable[[str, Dict[str, Any]], None]] = None

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def next_request_id(self) -> str:
        with self._lock:
            return f"req-{next(self._counter)}"

    def connect(self, host: str, port: int) -> "ControlPlaneClient":
        """
        Open the connection and complete the identify handshake.

        Raises:
            ProtocolError: Connect failure, handshake timeout, or disconnect before ack
        """
        if self.connected:
            return self

        uri = f"ws://{host}:{port}"
        logger.info("Connecting to control channel %s", uri)
        stack = ExitStack()
        try:
            ws = stack.enter_context(self._connector(uri, open_timeout=self.handshake_timeout))
        except (OSError, TimeoutError, WebSocketException) as e:
            raise ProtocolError(f"Could not connect to {uri}: {e}") from e

        try:
            self._identify(ws)
        except Exception:
            stack.close()
            raise

        self._stack = stack
        self._ws = ws
        self._closing = False
        self._connected.set()
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"rollcam-control-{port}",
            daemon=True,
        )
        self._reader.start()
        logger.info("Control channel identified (rpc version %s)", self.negotiated_rpc_version)
        return self

    def _identify(self, ws) -> None:
        deadline = time.monotonic() + self.handshake_timeout
        identify: Dict[str, Any] = {"rpcVersion": self.rpc_version}

        if self.password:
            # The challenge arrives in hello, so wait for it before identifying
            hello = self._receive_op(ws, OP_HELLO, deadline)
            auth = hello.get("authentication")
            if auth:
                identify["authentication"] = auth_string(
                    self.password, auth["salt"], auth["challenge"]
                )

        ws.send(json.dumps({"op": OP_IDENTIFY, "d": identify}))
        ack = self._receive_op(ws, OP_IDENTIFIED, deadline)
        self.negotiated_rpc_version = ack.get("negotiatedRpcVersion", self.rpc_version)

    def _receive_op(self, ws, opcode: int, deadline: float) -> Dict[str, Any]:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProtocolError(f"Timed out waiting for op {opcode} during handshake")
            try:
                raw = ws.recv(timeout=remaining)
            except TimeoutError:
                raise ProtocolError(f"Timed out waiting for op {opcode} during handshake")
            except ConnectionClosed as e:
                raise ProtocolError(f"Connection closed during handshake: {e}") from e

            op, d = self._decode(raw)
            if op == opcode:
                return d
            logger.debug("Ignoring op %s while waiting for op %s", op, opcode)

    @staticmethod
    def _decode(raw) -> tuple:
        try:
            message = json.loads(raw)
            return int(message["op"]), message.get("d") or {}
        except (ValueError, KeyError, TypeError) as e:
            raise ProtocolError(f"Malformed message: {raw!r}") from e

    def send(
        self,
        request_type: str,
        payload: Optional[Dict[str, Any]] = None,
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[ControlResponse]:
        """
        Issue a request.

        Args:
            request_type: One of REQUEST_TYPES
            payload: requestData object
            wait: Wait for and check the matching response
            timeout: Response timeout (default: request_timeout)

        Returns:
            The response when waiting, otherwise None

        Raises:
            CommandError: Unknown request type (no I/O done) or engine rejected it
            ProtocolError: Not connected, connection dropped, or no response in time
        """
        if request_type not in REQUEST_TYPES:
            raise CommandError(f"Unknown request type: {request_type}", request_type=request_type)
        ws = self._ws
        if ws is None or not self.connected:
            raise ProtocolError(f"Not connected; cannot send {request_type}")

        request = ControlRequest(request_type, self.next_request_id(), payload)
        future: Optional[Future] = None
        if wait:
            future = Future()
            with self._lock:
                self._pending[request.request_id] = future

        logger.info("→ %s (%s)", request_type, request.request_id)
        try:
            ws.send(json.dumps(request.to_envelope()))
        except (ConnectionClosed, OSError) as e:
            self._forget(request.request_id)
            raise ProtocolError(f"Connection lost sending {request_type}: {e}") from e

        if future is None:
            return None

        wait_for = self.request_timeout if timeout is None else timeout
        try:
            response = future.result(timeout=wait_for)
        except FutureTimeout:
            self._forget(request.request_id)
            raise ProtocolError(f"No response to {request_type} within {wait_for:.0f}s")

        if not response.ok:
            raise CommandError(
                f"{request_type} rejected by engine: "
                f"{response.comment or 'no comment'} (code {response.code})",
                request_type=request_type,
                code=response.code,
            )
        return response

    def _forget(self, request_id: str) -> None:
        with self._lock:
            self._pending.pop(request_id, None)

    def _read_loop(self) -> None:
        ws = self._ws
        reason = "connection closed"
        try:
            for raw in ws:
                try:
                    op, d = self._decode(raw)
                except ProtocolError as e:
                    logger.warning("%s", e)
                    continue
                self._dispatch(op, d)
        except ConnectionClosed as e:
            reason = f"connection lost: {e}"
        except Exception as e:
            reason = f"reader failed: {e}"
            logger.exception("Control channel reader failed")
        finally:
            self._connected.clear()
            # Callers woken by _fail_pending must already see the disconnect
            try:
                if not self._closing:
                    logger.warning("Control channel %s", reason)
                    if self.on_disconnect is not None:
                        self.on_disconnect(reason)
            finally:
                self._fail_pending(reason)

    def _dispatch(self, op: int, d: Dict[str, Any]) -> None:
        if op == OP_RESPONSE:
            response = ControlResponse.from_payload(d)
            with self._lock:
                future = self._pending.pop(response.request_id, None)
            if future is None:
                logger.debug("Unmatched response %s (%s)", response.request_id, response.request_type)
                return
            logger.debug("← %s ok=%s", response.request_type, response.ok)
            future.set_result(response)
        elif op == OP_EVENT:
            event_type = d.get("eventType", "")
            logger.debug("Event %s", event_type)
            if self.on_event is not None:
                self.on_event(event_type, d.get("eventData") or {})
        else:
            logger.debug("Ignoring op %s", op)

    def _fail_pending(self, reason: str) -> None:
        with self._lock:
            pending, self._pending = self._pending, {}
        for request_id, future in pending.items():
            if not future.done():
                future.set_exception(ProtocolError(f"{reason} (awaiting {request_id})"))

    def close(self) -> None:
        """Close the connection. Safe to call repeatedly."""
        self._closing = True
        stack, self._stack = self._stack, None
        self._ws = None
        if stack is not None:
            try:
                stack.close()
            except (OSError, WebSocketException) as e:
                logger.debug("Error closing control channel: %s", e)
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=2.0)
        self._reader = None
        self._connected.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
