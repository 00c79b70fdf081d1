import asyncio
import json

import pytest
import websockets

from callrelay.client.events import (
    ConnectionStateChanged, LocalCandidate, NegotiationNeeded, RemoteStream, SignalReceived,
)
from callrelay.client.session import PeerSessionController
from callrelay.client.transport import STABLE, Recorder, Transport
from callrelay.errors import NegotiationMismatch


class FakeTransport(Transport):
    """Stands in for webrtcbin: tracks signaling state and records every call."""

    def __init__(self, emit):
        super().__init__(emit)
        self.state = STABLE
        self.closed = False
        self.close_calls = 0
        self.local_descriptions = []
        self.remote_descriptions = []
        self.candidates = []
        self.fail_remote = False
        self.fail_candidates = False
        # like a fresh peer connection with transceivers added
        emit(NegotiationNeeded(self))

    @property
    def signaling_state(self):
        return self.state

    async def create_offer(self):
        return {"type": "offer", "sdp": "v=0 fake-offer"}

    async def create_answer(self):
        if self.state != "have-remote-offer":
            raise NegotiationMismatch("create-answer without a remote offer")
        return {"type": "answer", "sdp": "v=0 fake-answer"}

    async def set_local_description(self, description):
        self.local_descriptions.append(description)
        self.state = "have-local-offer" if description["type"] == "offer" else STABLE

    async def set_remote_description(self, description):
        if self.fail_remote or self.closed:
            raise NegotiationMismatch("set-remote-description rejected")
        if description["type"] == "answer" and self.state != "have-local-offer":
            raise NegotiationMismatch(f"answer in {self.state}")
        self.remote_descriptions.append(description)
        self.state = "have-remote-offer" if description["type"] == "offer" else STABLE

    async def add_candidate(self, candidate):
        if self.closed or self.fail_candidates:
            raise NegotiationMismatch("add-ice-candidate rejected")
        self.candidates.append(candidate)

    def close(self):
        self.close_calls += 1
        self.closed = True
        self.state = "closed"

    # drive callbacks the way webrtcbin would
    def emit_candidate(self, candidate):
        self._emit(LocalCandidate(self, candidate))

    def emit_state(self, state):
        self._emit(ConnectionStateChanged(self, state))

    def emit_stream(self, stream="remote-stream"):
        self._emit(RemoteStream(self, stream))


class FakeRecorder(Recorder):

    def __init__(self):
        self.stream = None
        self.stopped = False

    @property
    def recording(self):
        return self.stream is not None and not self.stopped

    def start(self, stream):
        self.stream = stream

    def stop(self):
        self.stopped = True
        return b"webm-bytes"


class FakeSignaling:

    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)
        return True

    def sent_of(self, message_type):
        return [m for m in self.sent if m.type == message_type]


class Harness:
    """A controller wired to fakes. Build it inside a running event loop."""

    def __init__(self):
        self.signaling = FakeSignaling()
        self.transports = []
        self.recorders = []
        self.fail_transport = None
        self.fail_recorder = None
        self.controller = PeerSessionController(self.signaling, self._make_transport, self._make_recorder)

    def _make_transport(self, emit):
        if self.fail_transport is not None:
            raise self.fail_transport
        transport = FakeTransport(emit)
        self.transports.append(transport)
        return transport

    def _make_recorder(self):
        if self.fail_recorder is not None:
            raise self.fail_recorder
        recorder = FakeRecorder()
        self.recorders.append(recorder)
        return recorder

    @property
    def transport(self):
        return self.transports[-1]

    def start(self):
        """Run the controller's own event loop instead of draining by hand."""
        self.task = asyncio.create_task(self.controller.run())
        return self.task

    async def settle(self, *events):
        for event in events:
            self.controller.post(event)
        await asyncio.wait_for(self.controller.events.join(), 1)

    async def drain(self):
        while not self.controller.events.empty():
            await self.controller.dispatch(self.controller.events.get_nowait())

    async def post(self, event):
        self.controller.post(event)
        await self.drain()

    async def feed(self, message):
        await self.post(SignalReceived(message))


@pytest.fixture
def harness():
    return Harness


@pytest.fixture
def fake_transport():
    return FakeTransport


async def recv_json(ws, timeout=2):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def wait_until(predicate, timeout=2):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def ws_helpers():
    class Helpers:
        recv = staticmethod(recv_json)
        until = staticmethod(wait_until)

        @staticmethod
        async def connect(relay):
            return await websockets.connect(f"ws://127.0.0.1:{relay.port}")

        @staticmethod
        async def register(ws, identity):
            await ws.send(json.dumps({"type": "register", "id": identity}))
            return await recv_json(ws)

    return Helpers
