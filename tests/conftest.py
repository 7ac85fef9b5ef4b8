import asyncio
import json

import pytest

import teleop_signaling


class FakeSink:
    """Stands in for the robot's data channel."""

    def __init__(self, is_open=True):
        self.is_open = is_open
        self.sent = []

    def send(self, text):
        self.sent.append(json.loads(text))

    def commands(self):
        return [(m["control"]["left"], m["control"]["right"]) for m in self.sent]


class FakeGamepad:
    """Mimics the parts of pygame.joystick.Joystick the sampler reads."""

    def __init__(self, instance_id=0, axes=(0.0, 0.0)):
        self.instance_id = instance_id
        self.axes = list(axes)

    def get_instance_id(self):
        return self.instance_id

    def get_name(self):
        return f"Fake Pad {self.instance_id}"

    def get_numaxes(self):
        return len(self.axes)

    def get_axis(self, index):
        return self.axes[index]


class FakeWebSocket:
    """Yields `frames`, then raises `error` or ends.

    With `hold=True` the stream stays open after the last frame until
    release() is called. `send_error` is raised by every send().
    """

    def __init__(self, frames=(), error=None, hold=False, send_error=None):
        self.frames = list(frames)
        self.error = error
        self.send_error = send_error
        self.sent = []
        self.closed = False
        self._hold = asyncio.Event() if hold else None

    def release(self):
        if self._hold is not None:
            self._hold.set()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        if self._hold is not None:
            await self._hold.wait()
        if self.error is not None:
            raise self.error

    async def send(self, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def make_gamepad():
    return FakeGamepad


@pytest.fixture
def make_websocket():
    return FakeWebSocket


@pytest.fixture
def connect_to(monkeypatch):
    """Make websockets.connect return `ws`, or raise it if it is an exception.

    The returned list records every url a connection was attempted to.
    """
    attempts = []

    def install(ws):
        async def fake_connect(url, **kwargs):
            attempts.append(url)
            if isinstance(ws, Exception):
                raise ws
            return ws
        monkeypatch.setattr(teleop_signaling.websockets, "connect", fake_connect, raising=False)
        return ws

    install.attempts = attempts
    return install
