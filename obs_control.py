# obs_control.py
# Client for the OBS WebSocket (v5) control protocol
# Dependencies: websockets

"""
Drive a running OBS Studio instance over its WebSocket control server.

Every exchange is strictly ordered and never pipelined::

    client                         server
      | --- connect ws://host:port --> |
      | <------------- Hello (op 0) -- |
      | -- Identify (op 1) ----------> |
      | <-------- Identified (op 2) -- |
      | -- Request (op 6) -----------> |
      | <--- RequestResponse (op 7) -- |

Requests are refused locally until Identified has arrived. One client
instance is one connection: open it, send the requests of a single
exchange, close it. Connections are never shared between start and stop.

Response correlation
--------------------
By default (``verify_correlation=True``) the client skips Event frames and
only accepts a RequestResponse whose ``requestId`` equals the id it sent;
a response carrying another id raises ``ProtocolUnexpectedMessage``.

With ``verify_correlation=False`` the client runs in *unverified-correlation*
mode: the first frame that carries a ``requestStatus`` field is taken as the
answer and treated as success, whatever its id or result. This is how
SnapRecorder 1.x clients behaved and is only safe when nothing else is
talking on the connection. Prefer the default.
"""

import base64
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect

from recording_errors import ProtocolTimeout, ProtocolUnexpectedMessage

logger = logging.getLogger(__name__)

OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_EVENT = 5
OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7

RPC_VERSION = 1
DEFAULT_TIMEOUT = 5.0
MAX_SKIPPED_FRAMES = 32


def compute_auth(password, salt, challenge):
    """Authentication string for Identify, as the v5 protocol defines it"""
    secret = base64.b64encode(hashlib.sha256((password + salt).encode('utf-8')).digest())
    digest = hashlib.sha256(secret + challenge.encode('utf-8')).digest()
    return base64.b64encode(digest).decode('ascii')


@dataclass
class ControlResponse:
    request_type: str
    request_id: str
    ok: bool
    code: int = 0
    comment: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


class ObsControlClient:
    """One control connection to OBS; use as a context manager"""

    def __init__(self, host='localhost', port=4455, password=None, timeout=DEFAULT_TIMEOUT,
                 verify_correlation=True, connect=ws_connect, max_skipped_frames=MAX_SKIPPED_FRAMES):
        self.host = host
        self.port = int(port)
        self.password = password
        self.timeout = timeout
        self.verify_correlation = verify_correlation
        self.max_skipped_frames = max_skipped_frames
        self._connect = connect

        self.socket = None
        self.identified = False
        self.pending_request_id: Optional[str] = None

    @property
    def url(self):
        return f"ws://{self.host}:{self.port}"

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    def open(self):
        """Connect and complete the Hello/Identify/Identified handshake"""
        try:
            self.socket = self._connect(self.url, open_timeout=self.timeout, close_timeout=self.timeout)
        except TimeoutError as e:
            raise ProtocolTimeout(f"Timed out connecting to {self.url}") from e
        except OSError as e:
            raise ProtocolTimeout(f"Control server at {self.url} unreachable: {e}") from e
        except WebSocketException as e:
            raise ProtocolUnexpectedMessage(f"WebSocket handshake with {self.url} failed: {e}") from e

        try:
            self._handshake()
        except BaseException:
            self.close()
            raise

    def _handshake(self):
        hello = self._recv_frame()
        if hello.get('op') != OP_HELLO:
            raise ProtocolUnexpectedMessage(f"Expected Hello, got op {hello.get('op')}")
        hello_data = hello.get('d') or {}
        logger.debug("Hello from OBS WebSocket %s", hello_data.get('obsWebSocketVersion', '?'))

        identify = {'rpcVersion': RPC_VERSION, 'eventSubscriptions': 0}
        auth = hello_data.get('authentication')
        if auth:
            if not self.password:
                raise ProtocolUnexpectedMessage("Control server requires a password but none is configured")
            identify['authentication'] = compute_auth(self.password, auth['salt'], auth['challenge'])
        self._send_frame(OP_IDENTIFY, identify)

        identified = self._recv_frame()
        if identified.get('op') != OP_IDENTIFIED:
            raise ProtocolUnexpectedMessage(f"Expected Identified, got op {identified.get('op')}")
        self.identified = True
        logger.debug("Identified (rpc %s)", (identified.get('d') or {}).get('negotiatedRpcVersion'))

    def close(self):
        self.identified = False
        self.pending_request_id = None
        if self.socket is not None:
            try:
                self.socket.close()
            except (OSError, WebSocketException) as e:
                logger.debug("Error closing control connection: %s", e)
            self.socket = None

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def request(self, request_type, data=None):
        """Send one Request and wait for its RequestResponse"""
        if not self.identified:
            raise ProtocolUnexpectedMessage(f"Cannot send {request_type} before Identified")

        request_id = uuid.uuid4().hex
        payload = {'requestType': request_type, 'requestId': request_id}
        if data:
            payload['requestData'] = data
        self.pending_request_id = request_id
        self._send_frame(OP_REQUEST, payload)
        try:
            if self.verify_correlation:
                return self._await_response(request_type, request_id)
            return self._await_any_status(request_type, request_id)
        finally:
            self.pending_request_id = None

    def _await_response(self, request_type, request_id):
        for _ in range(self.max_skipped_frames):
            frame = self._recv_frame()
            op = frame.get('op')
            body = frame.get('d') or {}
            if op == OP_REQUEST_RESPONSE:
                if body.get('requestId') != request_id:
                    raise ProtocolUnexpectedMessage(
                        f"Response for request {body.get('requestId')!r} while waiting for {request_id!r}"
                    )
                return self._to_response(request_type, request_id, body)
            logger.debug("Skipping op %s while waiting for %s", op, request_type)
        raise ProtocolUnexpectedMessage(f"No response to {request_type} within {self.max_skipped_frames} frames")

    def _await_any_status(self, request_type, request_id):
        # unverified-correlation mode, see module docstring
        for _ in range(self.max_skipped_frames):
            body = self._recv_frame().get('d') or {}
            if 'requestStatus' in body:
                response = self._to_response(request_type, request_id, body)
                response.ok = True
                return response
        raise ProtocolUnexpectedMessage(f"No response to {request_type} within {self.max_skipped_frames} frames")

    @staticmethod
    def _to_response(request_type, request_id, body):
        status = body.get('requestStatus') or {}
        return ControlResponse(
            request_type=request_type,
            request_id=request_id,
            ok=bool(status.get('result')),
            code=int(status.get('code') or 0),
            comment=status.get('comment') or "",
            data=body.get('responseData') or {},
        )

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------
    def _send_frame(self, op, data):
        message = json.dumps({'op': op, 'd': data})
        try:
            self.socket.send(message)
        except ConnectionClosed as e:
            raise ProtocolUnexpectedMessage(f"Connection closed while sending op {op}: {e}") from e
        except (OSError, WebSocketException) as e:
            raise ProtocolTimeout(f"Could not send op {op}: {e}") from e

    def _recv_frame(self):
        started = time.monotonic()
        try:
            message = self.socket.recv(timeout=self.timeout)
        except TimeoutError as e:
            raise ProtocolTimeout(f"No frame from {self.url} within {self.timeout}s") from e
        except ConnectionClosed as e:
            raise ProtocolUnexpectedMessage(f"Connection closed by server: {e}") from e
        except (OSError, WebSocketException) as e:
            raise ProtocolTimeout(f"Receive from {self.url} failed: {e}") from e
        logger.debug("Frame after %.2fs: %s", time.monotonic() - started, message)

        if not isinstance(message, str):
            raise ProtocolUnexpectedMessage("Expected a text frame")
        try:
            frame = json.loads(message)
        except json.JSONDecodeError as e:
            raise ProtocolUnexpectedMessage(f"Frame is not JSON: {message[:80]!r}") from e
        if not isinstance(frame, dict):
            raise ProtocolUnexpectedMessage(f"Frame is not an object: {message[:80]!r}")
        return frame
