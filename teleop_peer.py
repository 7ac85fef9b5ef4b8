"""teleop_peer.py - GStreamer webrtcbin peer connection for the teleop client.

Wraps a webrtcbin pipeline behind the small async interface that
NegotiationSession drives (set/create descriptions, add candidates) and
turns webrtcbin signals into negotiation peer events.

webrtcbin fires its signals and promise callbacks on GStreamer streaming
threads. Nothing is handed to the session from those threads: every event
and promise reply is marshalled onto the asyncio loop with
call_soon_threadsafe, so negotiation and control stay single-threaded.

Incoming media:
  video -> decodebin ! videoconvert ! RGBx appsink   (pulled by the console)
  audio -> decodebin ! audioconvert ! autoaudiosink
Outgoing media (optional):
  autoaudiosrc -> Opus -> RTP payload 97 -> webrtcbin
"""

import sys

try:
    import gi
    gi.require_version("Gst", "1.0")
    gi.require_version("GstSdp", "1.0")
    gi.require_version("GstWebRTC", "1.0")
    from gi.repository import Gst, GstSdp, GstWebRTC, GLib
except (ImportError, ValueError) as e:
    print(f"GStreamer Python bindings required: {e}", file=sys.stderr)
    sys.exit(1)

from teleop_negotiation import (
    DataChannelReceived,
    GatheringStateChange,
    IceStateChange,
    LocalCandidate,
    NegotiationError,
    SignalingStateChange,
    TrackReceived,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
AUDIO_PAYLOAD = 97

LOCAL_AUDIO_BRANCH = (
    'autoaudiosrc ! audioconvert ! audioresample ! '
    'queue max-size-buffers=3 leaky=downstream ! '
    'opusenc ! rtpopuspay ! '
    f'application/x-rtp,media=audio,encoding-name=OPUS,payload={AUDIO_PAYLOAD}'
)
VIDEO_BRANCH = (
    'queue max-size-buffers=3 leaky=downstream ! videoconvert ! '
    'video/x-raw,format=RGBx ! '
    'appsink name=frames emit-signals=false max-buffers=1 drop=true sync=false'
)
AUDIO_BRANCH = 'queue ! audioconvert ! audioresample ! autoaudiosink'


def log(msg):
    print(f"[peer] {msg}", flush=True)


class PeerConnectionError(NegotiationError):
    """webrtcbin rejected a description or returned an unusable reply."""


def media_mids(sdp):
    """Return the a=mid value of each media section, in m-line order."""
    return [sdp.get_media(i).get_attribute_val("mid") for i in range(sdp.medias_len())]


def parse_sdp(text):
    res, sdp = GstSdp.SDPMessage.new_from_text(text)
    if res != GstSdp.SDPResult.OK:
        raise PeerConnectionError("Unparseable SDP")
    return sdp


# ---------------------------------------------------------------------------
# Data channel and video output
# ---------------------------------------------------------------------------
class DataChannel:
    """Transmission sink over a remote-created GstWebRTC data channel."""

    def __init__(self, channel):
        self.channel = channel
        self.label = channel.get_property("label")
        channel.connect("on-open", self._on_open)
        channel.connect("on-close", self._on_close)
        channel.connect("on-message-string", self._on_message_string)
        channel.connect("on-message-data", self._on_message_data)

    @property
    def is_open(self):
        state = self.channel.get_property("ready-state")
        return state == GstWebRTC.WebRTCDataChannelState.OPEN

    def send(self, text):
        self.channel.emit("send-string", text)

    def _on_open(self, channel):
        log(f"Data channel '{self.label}' open")

    def _on_close(self, channel):
        log(f"Data channel '{self.label}' closed")

    def _on_message_string(self, channel, text):
        log(f"Message received: {text}")

    def _on_message_data(self, channel, data):
        if data is None:
            return
        log(f"Message received: {data.get_size()} bytes")


class VideoOutput:
    """Decoded remote video, pulled frame by frame by the console."""

    def __init__(self, appsink):
        self.appsink = appsink

    def pull_frame(self):
        """Return (width, height, rgbx_bytes) for the newest frame, or None."""
        sample = self.appsink.emit("try-pull-sample", 0)
        if sample is None:
            return None
        caps = sample.get_caps().get_structure(0)
        buf = sample.get_buffer()
        data = buf.extract_dup(0, buf.get_size())
        return caps.get_value("width"), caps.get_value("height"), data


# ---------------------------------------------------------------------------
# Peer connection
# ---------------------------------------------------------------------------
class GstPeerConnection:
    """Answerer-side peer connection backed by a webrtcbin pipeline.

    Events are delivered by calling `handler(event)` on the asyncio loop;
    set `handler` before the robot's offer can arrive.
    """

    def __init__(self, loop, stun_server=None, send_audio=True):
        self.loop = loop
        self.send_audio = send_audio
        self.handler = None
        self.remote_mids = []
        self.closed = False

        self.pipeline = Gst.Pipeline.new("teleop")
        self.webrtcbin = Gst.ElementFactory.make("webrtcbin", "webrtc")
        if self.webrtcbin is None:
            raise PeerConnectionError("webrtcbin element not available (gst-plugins-bad)")
        self.webrtcbin.set_property("bundle-policy", GstWebRTC.WebRTCBundlePolicy.MAX_BUNDLE)
        if stun_server:
            self.webrtcbin.set_property("stun-server", stun_server)
        self.pipeline.add(self.webrtcbin)

        self.webrtcbin.connect("on-ice-candidate", self._on_ice_candidate)
        self.webrtcbin.connect("notify::ice-connection-state", self._on_ice_connection_state)
        self.webrtcbin.connect("notify::ice-gathering-state", self._on_ice_gathering_state)
        self.webrtcbin.connect("notify::signaling-state", self._on_signaling_state)
        self.webrtcbin.connect("on-data-channel", self._on_data_channel)
        self.webrtcbin.connect("pad-added", self._on_pad_added)

        bus = self.pipeline.get_bus()
        bus.add_signal_watch()
        bus.connect("message::error", self._on_bus_error)
        bus.connect("message::eos", self._on_bus_eos)

        self.pipeline.set_state(Gst.State.PLAYING)
        log(f"Pipeline started (stun: {stun_server or 'none'})")

    async def add_local_media(self):
        if not self.send_audio:
            return
        try:
            audio = Gst.parse_bin_from_description(LOCAL_AUDIO_BRANCH, True)
        except GLib.Error as e:
            raise PeerConnectionError(f"Local audio: {e.message}") from e
        self.pipeline.add(audio)
        if not audio.link(self.webrtcbin):
            raise PeerConnectionError("Could not link local audio to webrtcbin")
        audio.sync_state_with_parent()
        log("Local audio attached")

    async def set_remote_description(self, sdp_text):
        sdp = parse_sdp(sdp_text)
        self.remote_mids = media_mids(sdp)
        offer = GstWebRTC.WebRTCSessionDescription.new(GstWebRTC.WebRTCSDPType.OFFER, sdp)
        await self._call("set-remote-description", offer)
        log("Set remote description (offer)")

    async def create_answer(self):
        answer = await self._call("create-answer", None, key="answer")
        return answer.sdp.as_text()

    async def set_local_description(self, sdp_text):
        answer = GstWebRTC.WebRTCSessionDescription.new(
            GstWebRTC.WebRTCSDPType.ANSWER, parse_sdp(sdp_text)
        )
        await self._call("set-local-description", answer)
        log("Set local description (answer)")

    async def add_ice_candidate(self, candidate, mid):
        if candidate.startswith("a="):
            candidate = candidate[2:]
        index = self.remote_mids.index(mid) if mid in self.remote_mids else 0
        self.webrtcbin.emit("add-ice-candidate", index, candidate)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.handler = None
        self.pipeline.get_bus().remove_signal_watch()
        self.pipeline.set_state(Gst.State.NULL)
        log("Pipeline stopped")

    # -- promise plumbing --

    async def _call(self, signal, *args, key=None):
        """Emit a promise-taking webrtcbin action signal and await its reply."""
        future = self.loop.create_future()

        def on_reply(promise):
            result, error = None, None
            reply = promise.get_reply()
            if reply is not None and reply.has_field("error"):
                error = reply.get_value("error")
            elif key is not None:
                if reply is not None and reply.has_field(key):
                    result = reply.get_value(key)
                else:
                    error = f"{signal} returned no '{key}'"
            self.loop.call_soon_threadsafe(_settle, future, result, error)

        promise = Gst.Promise.new_with_change_func(on_reply)
        self.webrtcbin.emit(signal, *args, promise)
        return await future

    def _post(self, event):
        if self.closed or self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self._deliver, event)

    def _deliver(self, event):
        if self.handler is not None:
            self.handler(event)

    # -- webrtcbin callbacks (GStreamer threads) --

    def _on_ice_candidate(self, webrtcbin, mline_index, candidate):
        mid = self.remote_mids[mline_index] if mline_index < len(self.remote_mids) else None
        self._post(LocalCandidate(candidate, mid))

    def _on_ice_connection_state(self, webrtcbin, pspec):
        state = webrtcbin.get_property("ice-connection-state")
        self._post(IceStateChange(state.value_nick))

    def _on_ice_gathering_state(self, webrtcbin, pspec):
        state = webrtcbin.get_property("ice-gathering-state")
        self._post(GatheringStateChange(state.value_nick))
        if state == GstWebRTC.WebRTCICEGatheringState.COMPLETE:
            self._post(LocalCandidate(None))

    def _on_signaling_state(self, webrtcbin, pspec):
        state = webrtcbin.get_property("signaling-state")
        self._post(SignalingStateChange(state.value_nick))

    def _on_data_channel(self, webrtcbin, channel):
        # Wrap here so on-open is connected before it can fire.
        self._post(DataChannelReceived(DataChannel(channel)))

    def _on_pad_added(self, webrtcbin, pad):
        if pad.direction != Gst.PadDirection.SRC:
            return
        decodebin = Gst.ElementFactory.make("decodebin")
        decodebin.connect("pad-added", self._on_decoded_pad)
        self.pipeline.add(decodebin)
        decodebin.sync_state_with_parent()
        pad.link(decodebin.get_static_pad("sink"))

    def _on_decoded_pad(self, decodebin, pad):
        caps = pad.get_current_caps()
        if caps is None:
            caps = pad.query_caps(None)
        name = caps.get_structure(0).get_name()

        if name.startswith("video"):
            branch = Gst.parse_bin_from_description(VIDEO_BRANCH, True)
            event = TrackReceived("video", VideoOutput(branch.get_by_name("frames")))
        elif name.startswith("audio"):
            branch = Gst.parse_bin_from_description(AUDIO_BRANCH, True)
            event = TrackReceived("audio")
        else:
            log(f"Ignoring decoded stream: {name}")
            return

        self.pipeline.add(branch)
        branch.sync_state_with_parent()
        pad.link(branch.get_static_pad("sink"))
        self._post(event)

    def _on_bus_error(self, bus, msg):
        err, debug = msg.parse_error()
        log(f"Pipeline error: {err.message}")
        if debug:
            log(f"  debug: {debug}")

    def _on_bus_eos(self, bus, msg):
        log("Pipeline EOS")


def _settle(future, result, error):
    if future.done():
        return
    if error is not None:
        message = error.message if isinstance(error, GLib.Error) else str(error)
        future.set_exception(PeerConnectionError(message))
    else:
        future.set_result(result)
