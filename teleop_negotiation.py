"""teleop_negotiation.py - answerer-side WebRTC negotiation for one session.

The robot always sends the offer; the console only answers. A session is
created for each signaling connection and is fed two kinds of input:

  - signaling messages from the transport, via handle_message()
  - peer events (LocalCandidate, IceStateChange, ...), via handle_peer_event()

Peer-connection work is delegated to an adapter (see teleop_peer.py):

    await peer.add_local_media()
    await peer.set_remote_description(sdp)
    sdp = await peer.create_answer()
    await peer.set_local_description(sdp)
    await peer.add_ice_candidate(candidate, mid)
    peer.close()

Every await may interleave with other events, so handlers re-check that the
session is still live before touching negotiation state.
"""

import enum
from collections import deque
from dataclasses import dataclass
from typing import Any

from teleop_signaling import Answer, Candidate, Offer


def log(msg):
    print(f"[negotiation] {msg}", flush=True)


class NegotiationState(enum.Enum):
    IDLE = "idle"
    AWAITING_REMOTE_OFFER = "awaiting-remote-offer"
    ANSWERING = "answering"
    CONNECTED = "connected"
    FAILED = "failed"


class NegotiationError(Exception):
    """Applying a description or candidate failed."""


# ---------------------------------------------------------------------------
# Peer events
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class LocalCandidate:
    candidate: str | None  # None marks the end of gathering
    mid: str | None = None


@dataclass(frozen=True)
class IceStateChange:
    state: str


@dataclass(frozen=True)
class GatheringStateChange:
    state: str


@dataclass(frozen=True)
class SignalingStateChange:
    state: str


@dataclass(frozen=True)
class DataChannelReceived:
    channel: Any


@dataclass(frozen=True)
class TrackReceived:
    kind: str
    output: Any = None


ICE_CONNECTED_STATES = ("connected", "completed")
MAX_PENDING_CANDIDATES = 64


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
class NegotiationSession:
    """Drives offer/answer/candidate exchange for a single peer connection.

    `send` takes a signaling message and must not block. The optional hooks
    are called with the failure reason, the received data channel, the
    TrackReceived event and the new NegotiationState respectively.
    """

    def __init__(self, peer, send, on_failure=None, on_data_channel=None,
                 on_track=None, on_state_change=None):
        self.peer = peer
        self.send = send
        self.on_failure = on_failure
        self.on_data_channel = on_data_channel
        self.on_track = on_track
        self.on_state_change = on_state_change

        self.state = NegotiationState.IDLE
        self.pending_remote_candidates = deque()
        self.remote_description_applied = False
        self.pending_local_candidates = deque()
        self.answer_sent = False
        self.closed = False

    @property
    def live(self):
        return not self.closed and self.state is not NegotiationState.FAILED

    async def start(self):
        """Attach local media, then wait for the robot's offer."""
        try:
            await self.peer.add_local_media()
        except Exception as e:
            log(f"Local media unavailable, continuing without it: {e}")
        if self.live and self.state is NegotiationState.IDLE:
            self._set_state(NegotiationState.AWAITING_REMOTE_OFFER)

    async def handle_message(self, message):
        if not self.live:
            return
        if isinstance(message, Offer):
            await self._handle_offer(message)
        elif isinstance(message, Candidate):
            await self._handle_remote_candidate(message)
        elif isinstance(message, Answer):
            log("Ignoring answer: this side never sends offers")

    def handle_peer_event(self, event):
        if self.closed:
            return

        if isinstance(event, LocalCandidate):
            if self.state is NegotiationState.FAILED or not event.candidate:
                return
            candidate = Candidate(event.candidate, event.mid)
            if self.answer_sent:
                self.send(candidate)
            else:
                # The robot cannot apply candidates before it has our answer.
                self.pending_local_candidates.append(candidate)

        elif isinstance(event, IceStateChange):
            log(f"Connection state: {event.state}")
            if event.state == "failed":
                self._fail("ICE connection failed")
            elif (event.state in ICE_CONNECTED_STATES
                  and self.state is NegotiationState.ANSWERING):
                self._set_state(NegotiationState.CONNECTED)

        elif isinstance(event, GatheringStateChange):
            log(f"Gathering state: {event.state}")

        elif isinstance(event, SignalingStateChange):
            log(f"Signaling state: {event.state}")

        elif isinstance(event, DataChannelReceived):
            log("Received data channel")
            if self.on_data_channel:
                self.on_data_channel(event.channel)

        elif isinstance(event, TrackReceived):
            log(f"Received track ({event.kind})")
            if self.on_track:
                self.on_track(event)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.pending_remote_candidates.clear()
        self.pending_local_candidates.clear()
        self.peer.close()
        log(f"Session closed in state {self.state.value}")

    # -- handlers --

    async def _handle_offer(self, offer):
        if self.state is not NegotiationState.AWAITING_REMOTE_OFFER:
            log(f"Ignoring offer in state {self.state.value}")
            return

        self._set_state(NegotiationState.ANSWERING)
        try:
            await self.peer.set_remote_description(offer.sdp)
            if not self.live:
                return
            await self._flush_candidates()
            if not self.live:
                return
            answer = await self.peer.create_answer()
            if not self.live:
                return
            await self.peer.set_local_description(answer)
            if not self.live:
                return
        except Exception as e:
            self._fail(f"Negotiation failed: {e}")
            return

        self.send(Answer(answer))
        self.answer_sent = True
        log(f"Sent answer ({len(answer)} bytes)")
        while self.pending_local_candidates:
            self.send(self.pending_local_candidates.popleft())

    async def _flush_candidates(self):
        # The flag is raised only once the queue is empty, so candidates that
        # arrive mid-flush are appended and keep their arrival order.
        while self.pending_remote_candidates:
            candidate = self.pending_remote_candidates.popleft()
            await self._add_candidate(candidate)
            if not self.live:
                return
        self.remote_description_applied = True

    async def _handle_remote_candidate(self, candidate):
        if not self.remote_description_applied:
            if len(self.pending_remote_candidates) >= MAX_PENDING_CANDIDATES:
                log(f"Dropping remote candidate: {MAX_PENDING_CANDIDATES} already queued")
                return
            self.pending_remote_candidates.append(candidate)
            return
        try:
            await self._add_candidate(candidate)
        except Exception as e:
            self._fail(f"Adding remote candidate failed: {e}")

    async def _add_candidate(self, candidate):
        if not candidate.candidate:
            return
        await self.peer.add_ice_candidate(candidate.candidate, candidate.mid)

    def _set_state(self, state):
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    def _fail(self, reason):
        if not self.live:
            return
        log(f"ERROR: {reason}")
        self.pending_local_candidates.clear()
        self._set_state(NegotiationState.FAILED)
        if self.on_failure:
            self.on_failure(reason)
