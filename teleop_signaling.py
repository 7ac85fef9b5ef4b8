"""teleop_signaling.py - websocket signaling channel for the teleop client.

Carries one JSON object per text frame between the operator console and the
robot's endpoint:

    {"type": "offer",     "description": <sdp>}                  robot -> console
    {"type": "answer",    "description": <sdp>}                  console -> robot
    {"type": "candidate", "candidate": <ice>, "mid": <mid|null>} both ways

Extra fields are ignored. Binary frames and anything that does not parse
into one of these shapes are dropped. There is no reconnection: a transport
error ends the session.
"""

import asyncio
import json
from dataclasses import dataclass

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException


def log(msg):
    print(f"[signaling] {msg}", flush=True)


class TransportError(Exception):
    """The signaling websocket could not be opened or dropped with an error."""


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Offer:
    sdp: str


@dataclass(frozen=True)
class Answer:
    sdp: str


@dataclass(frozen=True)
class Candidate:
    candidate: str
    mid: str | None = None


def encode_message(message) -> str:
    if isinstance(message, Offer):
        obj = {"type": "offer", "description": message.sdp}
    elif isinstance(message, Answer):
        obj = {"type": "answer", "description": message.sdp}
    elif isinstance(message, Candidate):
        obj = {"type": "candidate", "candidate": message.candidate, "mid": message.mid}
    else:
        raise TypeError(f"Not a signaling message: {message!r}")
    return json.dumps(obj)


def parse_message(text):
    """Decode one text frame, or return None if it is not a signaling message."""
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    kind = data.get("type")
    if kind in ("offer", "answer"):
        sdp = data.get("description")
        if not isinstance(sdp, str):
            return None
        return Offer(sdp) if kind == "offer" else Answer(sdp)

    if kind == "candidate":
        candidate = data.get("candidate")
        mid = data.get("mid")
        if not isinstance(candidate, str):
            return None
        if mid is not None and not isinstance(mid, str):
            return None
        return Candidate(candidate, mid)

    return None


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
class SignalingChannel:
    """One websocket connection to the signaling address.

    Outbound messages go through a queue drained by a single writer task, so
    send() may be called from plain (non-async) callbacks and frames still
    leave in call order.
    """

    def __init__(self, url):
        self.url = url
        self.ws = None
        self._outbox = asyncio.Queue()
        self._writer = None
        self._writer_stopped = False

    async def connect(self):
        try:
            self.ws = await websockets.connect(self.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"Cannot connect to {self.url}: {e}") from e
        log(f"Connected to {self.url}")
        self._writer = asyncio.ensure_future(self._write_loop())
        return self

    def send(self, message):
        if self.ws is None:
            raise TransportError("Signaling channel is not connected")
        if self._writer_stopped:
            raise TransportError("Signaling channel can no longer send")
        self._outbox.put_nowait(encode_message(message))

    async def messages(self):
        """Yield inbound messages in arrival order until the peer closes."""
        try:
            async for frame in self.ws:
                if not isinstance(frame, str):
                    continue
                message = parse_message(frame)
                if message is None:
                    log(f"Dropping malformed message: {frame[:80]!r}")
                    continue
                yield message
        except ConnectionClosedError as e:
            raise TransportError(f"Connection lost: {e}") from e

    async def close(self):
        if self._writer is not None:
            self._writer.cancel()
            self._writer = None
        if self.ws is not None:
            await self.ws.close()
            log("Connection closed")

    async def _write_loop(self):
        while True:
            text = await self._outbox.get()
            try:
                await self.ws.send(text)
            except ConnectionClosed:
                log("Connection closed, dropping outbound messages")
                self._writer_stopped = True
                return
            except Exception as e:
                log(f"Send failed, dropping outbound messages: {e}")
                self._writer_stopped = True
                return
