"""Pytest fixtures for the recording tests"""

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from recording_types import RecordingConfig  # noqa: E402


# mss layout: index 0 is the virtual desktop, then each monitor
SINGLE_MONITOR = [
    {'left': 0, 'top': 0, 'width': 1920, 'height': 1080},
    {'left': 0, 'top': 0, 'width': 1920, 'height': 1080},
]
DUAL_MONITORS = [
    {'left': -1280, 'top': 0, 'width': 3200, 'height': 1080},
    {'left': 0, 'top': 0, 'width': 1920, 'height': 1080},
    {'left': -1280, 'top': 0, 'width': 1280, 'height': 1024},
]


@pytest.fixture
def single_monitor():
    return [dict(m) for m in SINGLE_MONITOR]


@pytest.fixture
def dual_monitors():
    return [dict(m) for m in DUAL_MONITORS]


@pytest.fixture
def make_config(tmp_path):
    """Factory for configs that save into a temp folder"""
    def _make(**overrides):
        overrides.setdefault('folder_path', str(tmp_path / "videos"))
        return RecordingConfig(**overrides)
    return _make


class FakeResolver:
    """Stands in for AudioDeviceResolver with fixed answers"""

    def __init__(self, system="", mic=""):
        self.system = system
        self.mic = mic
        self.list_calls = 0

    def list_devices(self):
        self.list_calls += 1
        return []

    def resolve_output(self, selected='auto', devices=None):
        return selected if selected != 'auto' else self.system

    def resolve_input(self, selected='auto', devices=None):
        return selected if selected != 'auto' else self.mic


@pytest.fixture
def fake_resolver():
    return FakeResolver


class FakeSocket:
    """Scripted WebSocket connection.

    ``replies`` maps a sent op code to the frames the server answers with.
    Hello is queued on connect, like a real server.
    """

    def __init__(self, hello=None, replies=None):
        self.sent = []
        self.closed = False
        self.queue = [hello if hello is not None else {'op': 0, 'd': {'obsWebSocketVersion': '5.4.2', 'rpcVersion': 1}}]
        self.replies = replies or {}

    def send(self, message):
        frame = json.loads(message)
        self.sent.append(frame)
        reply = self.replies.get(frame['op'])
        if callable(reply):
            reply = reply(frame)
        if reply is None:
            return
        self.queue.extend(reply if isinstance(reply, list) else [reply])

    def recv(self, timeout=None):
        if not self.queue:
            raise TimeoutError("no frame")
        frame = self.queue.pop(0)
        return frame if isinstance(frame, (str, bytes)) else json.dumps(frame)

    def close(self):
        self.closed = True


def identified_reply(frame):
    return {'op': 2, 'd': {'negotiatedRpcVersion': 1}}


def matching_response(result=True, code=100, data=None):
    """Reply factory answering each Request with its own id"""
    def reply(frame):
        body = {
            'requestType': frame['d']['requestType'],
            'requestId': frame['d']['requestId'],
            'requestStatus': {'result': result, 'code': code},
        }
        if data:
            body['responseData'] = data
        return {'op': 7, 'd': body}
    return reply


@pytest.fixture
def fake_socket():
    return FakeSocket
