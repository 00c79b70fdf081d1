"""
GStreamer webrtcbin implementations of Transport and Recorder.

webrtcbin calls back on its own streaming threads; everything that reaches
the session controller is handed over with ``loop.call_soon_threadsafe``.
"""
import asyncio
import collections
import logging
import threading

import gi
gi.require_version("Gst", "1.0")
gi.require_version("GstSdp", "1.0")
gi.require_version("GstWebRTC", "1.0")
from gi.repository import GLib, Gst, GstSdp, GstWebRTC

from callrelay.client.events import ConnectionStateChanged, LocalCandidate, NegotiationNeeded, RemoteStream
from callrelay.client.transport import Recorder, Transport
from callrelay.errors import NegotiationMismatch, TransportFailure

Gst.init(None)

logger = logging.getLogger(__name__)

DEFAULT_STUN = "stun://stun.l.google.com:19302"

VIDEO_CAPS = "application/x-rtp,media=video,encoding-name=VP8,payload=96,clock-rate=90000"
AUDIO_CAPS = "application/x-rtp,media=audio,encoding-name=OPUS,payload=111,clock-rate=48000"

SDP_TYPES = {
    "offer": GstWebRTC.WebRTCSDPType.OFFER,
    "answer": GstWebRTC.WebRTCSDPType.ANSWER,
}

# handle given to recorders: the pipeline and the tee the remote video is split on
IncomingVideo = collections.namedtuple("IncomingVideo", ["pipeline", "tee"])


def start_glib_loop():
    """Run the default GLib main context so bus watches get dispatched."""
    main_loop = GLib.MainLoop()
    threading.Thread(target=main_loop.run, name="glib-main-loop", daemon=True).start()
    return main_loop


def _make(factory):
    element = Gst.ElementFactory.make(factory)
    if element is None:
        raise TransportFailure(f"GStreamer element '{factory}' is not available")
    return element


class GstWebRTCTransport(Transport):
    """Receive-only webrtcbin peer connection: one video and one audio transceiver."""

    def __init__(self, emit, stun=DEFAULT_STUN):
        super().__init__(emit)
        self.loop = asyncio.get_running_loop()
        self.closed = False

        self.pipeline = Gst.Pipeline.new(None)
        self.webrtc = _make("webrtcbin")
        self.webrtc.set_property("stun-server", stun)
        self.webrtc.set_property("bundle-policy", GstWebRTC.WebRTCBundlePolicy.MAX_BUNDLE)
        self.pipeline.add(self.webrtc)

        # webrtcbin signals
        self.webrtc.connect("on-negotiation-needed", self.on_negotiation_needed)
        self.webrtc.connect("on-ice-candidate", self.on_ice_candidate)
        self.webrtc.connect("notify::ice-connection-state", self.on_ice_connection_state)
        self.webrtc.connect("pad-added", self.on_incoming_stream)

        for caps in (VIDEO_CAPS, AUDIO_CAPS):
            self.webrtc.emit("add-transceiver",
                             GstWebRTC.WebRTCRTPTransceiverDirection.RECVONLY,
                             Gst.caps_from_string(caps))

        self._bus = self.pipeline.get_bus()
        self._bus.add_signal_watch()
        self._bus.connect("message", self.on_bus_message)

        self.pipeline.set_state(Gst.State.PLAYING)

    @property
    def signaling_state(self):
        return self.webrtc.get_property("signaling-state").value_nick

    def _post(self, event):
        self.loop.call_soon_threadsafe(self._emit, event)

    # ---------- webrtcbin callbacks (streaming threads) ----------
    def on_negotiation_needed(self, webrtc):
        logger.debug("[WEBRTC] on_negotiation_needed")
        self._post(NegotiationNeeded(self))

    def on_ice_candidate(self, webrtc, mlineindex, candidate):
        self._post(LocalCandidate(self, {"candidate": candidate, "sdpMLineIndex": int(mlineindex)}))

    def on_ice_connection_state(self, webrtc, pspec):
        state = webrtc.get_property("ice-connection-state").value_nick
        self._post(ConnectionStateChanged(self, state))

    def on_incoming_stream(self, webrtc, pad):
        if pad.get_direction() != Gst.PadDirection.SRC:
            return
        caps = pad.get_current_caps()
        s = caps.to_string() if caps else ""
        logger.info(f"[WEBRTC] Incoming stream caps: {s}")

        if "video" in s:
            # the tee lets a recorder branch attach later
            tee = _make("tee")
            q = _make("queue")
            depay = _make("rtpvp8depay")
            dec = _make("vp8dec")
            conv = _make("videoconvert")
            sink = _make("autovideosink")
            chain = (tee, q, depay, dec, conv, sink)
            for e in chain: self.pipeline.add(e)
            for e in chain: e.sync_state_with_parent()
            pad.link(tee.get_static_pad("sink"))
            Gst.Element.link_many(*chain)
            self._post(RemoteStream(self, IncomingVideo(self.pipeline, tee)))

        elif "audio" in s:
            q = _make("queue")
            depay = _make("rtpopusdepay")
            dec = _make("opusdec")
            conv = _make("audioconvert")
            res = _make("audioresample")
            sink = _make("autoaudiosink")
            chain = (q, depay, dec, conv, res, sink)
            for e in chain: self.pipeline.add(e)
            for e in chain: e.sync_state_with_parent()
            pad.link(q.get_static_pad("sink"))
            Gst.Element.link_many(*chain)

    def on_bus_message(self, bus, msg):
        t = msg.type
        if t == Gst.MessageType.ERROR:
            err, dbg = msg.parse_error()
            logger.error(f"[GST][ERROR] {err} {dbg}")
            self._post(ConnectionStateChanged(self, "failed"))
        elif t == Gst.MessageType.EOS:
            logger.info("[GST] End-of-Stream")
        elif t == Gst.MessageType.STATE_CHANGED:
            if msg.src == self.pipeline:
                old, new, pending = msg.parse_state_changed()
                logger.debug(f"[GST] Pipeline state: {old.value_nick} -> {new.value_nick}")

    # ---------- SDP/ICE ----------
    async def _call(self, signal, *args):
        """Emit a promise-taking webrtcbin action signal and await its reply."""
        if self.closed:
            raise NegotiationMismatch(f"{signal} on a closed transport")
        future = self.loop.create_future()

        def on_reply(promise, *_):
            result = promise.wait()
            reply = promise.get_reply() if result == Gst.PromiseResult.REPLIED else None
            self.loop.call_soon_threadsafe(self._settle, future, signal, result, reply)

        promise = Gst.Promise.new_with_change_func(on_reply, None, None)
        self.webrtc.emit(signal, *args, promise)
        return await future

    @staticmethod
    def _settle(future, signal, result, reply):
        if future.done():
            return
        if result != Gst.PromiseResult.REPLIED:
            future.set_exception(NegotiationMismatch(f"{signal} was {result.value_nick}"))
        elif reply is not None and reply.has_field("error"):
            future.set_exception(NegotiationMismatch(f"{signal} failed: {reply.get_value('error')}"))
        else:
            future.set_result(reply)

    def _description(self, description):
        try:
            sdp_type = SDP_TYPES[description["type"]]
            res, sdpmsg = GstSdp.SDPMessage.new_from_text(description["sdp"])
        except (KeyError, TypeError) as e:
            raise NegotiationMismatch(f"Unusable session description: {e}") from e
        if res != GstSdp.SDPResult.OK:
            raise NegotiationMismatch("Could not parse SDP")
        return GstWebRTC.WebRTCSessionDescription.new(sdp_type, sdpmsg)

    async def _create(self, kind):
        reply = await self._call(f"create-{kind}", None)
        description = reply.get_value(kind)
        return {"type": kind, "sdp": description.sdp.as_text()}

    async def create_offer(self):
        return await self._create("offer")

    async def create_answer(self):
        return await self._create("answer")

    async def set_local_description(self, description):
        await self._call("set-local-description", self._description(description))

    async def set_remote_description(self, description):
        await self._call("set-remote-description", self._description(description))

    async def add_candidate(self, candidate):
        if self.closed:
            raise NegotiationMismatch("add-ice-candidate on a closed transport")
        try:
            mline, text = int(candidate["sdpMLineIndex"]), candidate["candidate"]
        except (KeyError, TypeError, ValueError) as e:
            raise NegotiationMismatch(f"Unusable ICE candidate: {e}") from e
        self.webrtc.emit("add-ice-candidate", mline, text)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._bus.remove_signal_watch()
        self.pipeline.set_state(Gst.State.NULL)
        logger.info("[WEBRTC] Peer connection closed.")


class GstRecorder(Recorder):
    """Muxes the remote VP8 video into WebM bytes, collected from an appsink."""

    def __init__(self):
        self._chunks = []
        self._stream = None
        self._elements = ()
        self._tee_pad = None

    @property
    def recording(self):
        return bool(self._elements)

    def start(self, stream):
        q = _make("queue")
        depay = _make("rtpvp8depay")
        mux = _make("webmmux")
        mux.set_property("streamable", True)
        sink = _make("appsink")
        sink.set_property("emit-signals", True)
        sink.set_property("sync", False)
        sink.connect("new-sample", self._on_sample)

        chain = (q, depay, mux, sink)
        for e in chain: stream.pipeline.add(e)
        Gst.Element.link_many(*chain)
        for e in chain: e.sync_state_with_parent()

        self._tee_pad = stream.tee.request_pad_simple("src_%u")
        self._tee_pad.link(q.get_static_pad("sink"))
        self._stream = stream
        self._elements = chain
        self._chunks = []

    def _on_sample(self, sink):
        sample = sink.emit("pull-sample")
        buf = sample.get_buffer()
        ok, info = buf.map(Gst.MapFlags.READ)
        if ok:
            self._chunks.append(bytes(info.data))
            buf.unmap(info)
        return Gst.FlowReturn.OK

    def stop(self):
        if not self.recording:
            return b""
        q = self._elements[0]
        self._tee_pad.unlink(q.get_static_pad("sink"))
        self._stream.tee.release_request_pad(self._tee_pad)
        for e in self._elements:
            e.set_state(Gst.State.NULL)
            self._stream.pipeline.remove(e)

        data = b"".join(self._chunks)
        logger.info(f"[GST] Recorded {len(self._chunks)} chunks, {len(data)} bytes")
        self._chunks = []
        self._elements = ()
        self._tee_pad = None
        self._stream = None
        return data
