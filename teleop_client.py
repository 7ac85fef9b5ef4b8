#!/usr/bin/env python3
"""teleop_client.py - WebRTC teleoperation client.

Connects to the robot's signaling websocket, answers its WebRTC offer with a
GStreamer webrtcbin peer, shows the robot's video in a pygame window and
drives it over the data channel the robot opens:

    {"control": {"left": -100..100, "right": -100..100}}

Arrow keys and the first gamepad (axes 0/1) are mixed into the command.
There is no reconnection: if the robot is offline or the connection fails,
the window says so and a restart is required.

Requirements:
    pip install websockets pygame
    GStreamer 1.x Python bindings (PyGObject) with: gst-plugins-base,
      gst-plugins-good, gst-plugins-bad (webrtcbin), opus

Usage:
    python3 teleop_client.py --url ws://10.9.0.205:8888/
    TELEOP_SEND_AUDIO=0 python3 teleop_client.py       # no microphone
    python3 teleop_client.py --stun-server ""          # host candidates only
"""

import argparse
import asyncio
import os
import signal
import sys

from teleop_console import OperatorConsole
from teleop_control import ControlAggregator
from teleop_negotiation import NegotiationError, NegotiationSession, NegotiationState
from teleop_signaling import SignalingChannel, TransportError

DEFAULT_URL = "ws://127.0.0.1:8888/"
DEFAULT_STUN_SERVER = "stun://stun.l.google.com:19302"
DEFAULT_SAMPLE_HZ = 10.0

OFFLINE_NOTICE = "Telebot is offline."
FAILED_NOTICE = "Connection failed."


def log(msg):
    print(f"[teleop] {msg}", flush=True)


class TeleopClient:
    """Runs one signaling session alongside the operator window.

    `peer_factory` builds the peer connection for a session and is called as
    peer_factory(loop, stun_server=..., send_audio=...). It defaults to the
    GStreamer webrtcbin adapter.
    """

    def __init__(self, args, peer_factory=None):
        self.args = args
        self.peer_factory = peer_factory
        self.controls = ControlAggregator(sample_period=1.0 / args.sample_hz)
        self.console = OperatorConsole(self.controls)
        self.session = None

    def notify(self, text):
        log(text)
        self.console.set_status(text)

    async def run(self):
        log("=== Teleop Client ===")
        log(f"Signaling:  {self.args.url}")
        log(f"Send audio: {'on' if self.args.send_audio else 'off'}")
        log(f"STUN:       {self.args.stun_server or 'none'}")

        from teleop_peer import Gst

        Gst.init(None)
        self.console.open()

        glib_task = asyncio.ensure_future(self._glib_pump())
        session_task = asyncio.ensure_future(self._run_session())
        try:
            await self.console.run()  # closing the window ends the client
        finally:
            session_task.cancel()
            glib_task.cancel()
            self.cleanup()

    async def _glib_pump(self):
        """Iterate the GLib main context from asyncio at ~200Hz."""
        from teleop_peer import GLib

        ctx = GLib.MainContext.default()
        while True:
            while ctx.pending():
                ctx.iteration(False)
            await asyncio.sleep(0.005)

    async def _run_session(self):
        channel = SignalingChannel(self.args.url)
        try:
            await channel.connect()
        except TransportError as e:
            log(str(e))
            self.notify(OFFLINE_NOTICE)
            return

        try:
            peer = self._make_peer(
                asyncio.get_running_loop(),
                stun_server=self.args.stun_server,
                send_audio=self.args.send_audio,
            )
        except NegotiationError as e:
            log(f"Peer connection failed to start: {e}")
            self.notify(FAILED_NOTICE)
            await channel.close()
            return

        def send(message):
            # Peer events arrive as loop callbacks; a dead writer must not raise there.
            try:
                channel.send(message)
            except TransportError as e:
                log(f"Dropping outbound {type(message).__name__}: {e}")

        session = NegotiationSession(
            peer,
            send,
            on_failure=self._on_failure,
            on_data_channel=self.controls.set_sink,
            on_track=self._on_track,
            on_state_change=self._on_state_change,
        )
        peer.handler = session.handle_peer_event
        self.session = session

        try:
            await session.start()
            async for message in channel.messages():
                await session.handle_message(message)
            log("Signaling connection closed by robot")
        except TransportError as e:
            log(str(e))
            self.notify(OFFLINE_NOTICE)
        finally:
            session.close()
            self.session = None
            self.controls.clear_sink()
            await channel.close()

    def _make_peer(self, loop, **kwargs):
        if self.peer_factory is None:
            from teleop_peer import GstPeerConnection
            self.peer_factory = GstPeerConnection
        return self.peer_factory(loop, **kwargs)

    def _on_state_change(self, state):
        if state is NegotiationState.AWAITING_REMOTE_OFFER:
            self.notify("Waiting for robot...")
        elif state is NegotiationState.CONNECTED:
            self.notify("Connected")

    def _on_failure(self, reason):
        self.controls.clear_sink()
        self.notify(FAILED_NOTICE)

    def _on_track(self, event):
        if event.kind == "video":
            self.console.attach_video(event.output)

    def cleanup(self):
        if self.session:
            self.session.close()
            self.session = None
        self.console.close()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="WebRTC teleoperation client")
    ap.add_argument("--url", default=None,
                    help=f"Signaling websocket (default: env TELEOP_URL or {DEFAULT_URL})")
    ap.add_argument("--send-audio", dest="send_audio", action="store_true", default=None,
                    help="Capture and send microphone audio (default: env TELEOP_SEND_AUDIO or on)")
    ap.add_argument("--no-send-audio", dest="send_audio", action="store_false",
                    help="Do not send microphone audio")
    ap.add_argument("--stun-server", default=None,
                    help=f"STUN server, empty to disable "
                         f"(default: env TELEOP_STUN_SERVER or {DEFAULT_STUN_SERVER})")
    ap.add_argument("--sample-hz", type=float, default=DEFAULT_SAMPLE_HZ,
                    help=f"Gamepad sampling rate (default: {DEFAULT_SAMPLE_HZ:g})")
    args = ap.parse_args(argv)

    if args.url is None:
        args.url = os.environ.get("TELEOP_URL", DEFAULT_URL)
    if args.send_audio is None:
        args.send_audio = os.environ.get("TELEOP_SEND_AUDIO", "1") not in ("0", "false", "no")
    if args.stun_server is None:
        args.stun_server = os.environ.get("TELEOP_STUN_SERVER", DEFAULT_STUN_SERVER)
    if args.sample_hz <= 0:
        ap.error("--sample-hz must be positive")
    return args


def main():
    args = parse_args()
    client = TeleopClient(args)

    def on_signal(sig, _frame):
        log("Shutting down.")
        client.cleanup()
        sys.exit(0)

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        client.cleanup()
        log("Shutting down.")


if __name__ == "__main__":
    main()
