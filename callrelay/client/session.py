"""
Peer session controller.

Every input (relay messages, transport callbacks, operator intents, loss of
the relay connection) arrives as an event on one queue and is handled to
completion before the next one is taken, so a session's state only ever
changes in arrival order.

    Idle --call--> Offering --answer--> Connected
    Idle --offer--> Answering --transport connected--> Connected
    any --hangup / transport failure / signaling lost--> Closing --> Idle
"""
import asyncio
import dataclasses
import enum
import logging
from pathlib import Path
from typing import Any, Optional

from callrelay.client.events import (
    CallIntent, ConnectionStateChanged, HangupIntent, LocalCandidate, NegotiationNeeded,
    RegisterIntent, RemoteStream, SaveRecordingIntent, SignalingLost, SignalReceived,
    StartRecordingIntent, StopRecordingIntent, TRANSPORT_EVENTS,
)
from callrelay.client.transport import CONNECTED_STATES, STABLE, TERMINAL_STATES, Recorder, Transport
from callrelay.errors import (
    AlreadyRegistered, DuplicateIdentity, NegotiationMismatch, SignalingError, TransportFailure,
)
from callrelay.protocol import (
    Answer, Candidate, Error, Hangup, Offer, Register, Registered,
)

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    CLOSING = "closing"


@dataclasses.dataclass
class Session:
    peer_id: str
    transport: Transport
    state: SessionState
    remote_stream: Any = None
    recorder: Optional[Recorder] = None


class PeerSessionController:

    def __init__(self, signaling, transport_factory, recorder_factory=None):
        """
        ``signaling`` needs an async ``send(message)``. ``transport_factory``
        is called with the controller's ``post`` and returns a Transport.
        ``recorder_factory`` returns a Recorder, or is None when recording
        is unavailable.
        """
        self.signaling = signaling
        self._transport_factory = transport_factory
        self._recorder_factory = recorder_factory

        self.identity = None
        self.session: Optional[Session] = None
        self.recording: Optional[bytes] = None
        self.events = asyncio.Queue()
        self._registration = None
        self._pending_identity = None

        self._handlers = {
            SignalReceived: self._on_signal,
            SignalingLost: self._on_signaling_lost,
            NegotiationNeeded: self._on_negotiation_needed,
            LocalCandidate: self._on_local_candidate,
            ConnectionStateChanged: self._on_connection_state,
            RemoteStream: self._on_remote_stream,
            RegisterIntent: self._on_register_intent,
            CallIntent: self._on_call_intent,
            HangupIntent: self._on_hangup_intent,
            StartRecordingIntent: self._on_start_recording,
            StopRecordingIntent: self._on_stop_recording,
            SaveRecordingIntent: self._on_save_recording,
        }
        self._message_handlers = {
            Registered: self._on_registered,
            Error: self._on_error,
            Offer: self._on_offer,
            Answer: self._on_answer,
            Candidate: self._on_candidate,
            Hangup: self._on_hangup,
            Register: self._on_unexpected,
        }

    @property
    def state(self):
        return self.session.state if self.session is not None else SessionState.IDLE

    def post(self, event):
        self.events.put_nowait(event)

    async def run(self):
        """Consume events until the signaling channel is lost."""
        while True:
            event = await self.events.get()
            try:
                await self.dispatch(event)
            except Exception:
                logger.exception(f"Error handling {type(event).__name__}")
            finally:
                self.events.task_done()
            if isinstance(event, SignalingLost):
                return

    async def dispatch(self, event):
        if isinstance(event, TRANSPORT_EVENTS) and not self._is_current(event.transport):
            logger.debug(f"[WEBRTC] Dropping {type(event).__name__} from a released transport")
            return
        await self._handlers[type(event)](event)

    async def register(self, identity):
        """Post a register intent and wait for the relay's verdict."""
        self._registration = asyncio.get_running_loop().create_future()
        self.post(RegisterIntent(identity))
        return await self._registration

    async def teardown(self, reason, notify_peer=False):
        """
        End the current session. Safe to call in any state; a second call
        while the first is running, or with no session, does nothing.
        """
        session = self.session
        if session is None or session.state is SessionState.CLOSING:
            return
        session.state = SessionState.CLOSING
        logger.info(f"Hanging up with '{session.peer_id}': {reason}")
        try:
            if session.recorder is not None and session.recorder.recording:
                dropped = session.recorder.stop()
                logger.info(f"Recording stopped, {len(dropped)} unsaved bytes discarded.")
        finally:
            try:
                session.transport.close()
            finally:
                session.recorder = None
                session.remote_stream = None
                self.recording = None
                self.session = None

        if notify_peer:
            await self.signaling.send(Hangup(target_id=session.peer_id))
        logger.info("Connection closed.")

    def _is_current(self, transport):
        return self.session is not None and self.session.transport is transport

    def _open_session(self, peer_id, state):
        transport = self._transport_factory(self.post)
        self.session = Session(peer_id=peer_id, transport=transport, state=state)
        logger.info(f"[WEBRTC] Created peer connection for '{peer_id}' ({state.value})")
        return self.session

    def _settle_registration(self, result=None, exc=None):
        self._pending_identity = None
        if self._registration is None or self._registration.done():
            return
        if exc is not None:
            self._registration.set_exception(exc)
        else:
            self._registration.set_result(result)

    # ---------- relay messages ----------
    async def _on_signal(self, event):
        message = event.message
        logger.debug(f"[SIG] Received signaling message: {message.type}")
        await self._message_handlers[type(message)](message)

    async def _on_registered(self, message):
        self.identity = message.id
        logger.info(f"Registered as {message.id}. Ready to call or receive.")
        self._settle_registration(result=message.id)

    async def _on_error(self, message):
        logger.warning(f"[SIG][ERROR] {message.message}")
        if self._pending_identity is None:
            # errors outside a registration never end the session
            return
        if message.reason == DuplicateIdentity.reason:
            self._settle_registration(exc=DuplicateIdentity(self._pending_identity))
        else:
            failure = SignalingError(message.message)
            failure.reason = message.reason or SignalingError.reason
            self._settle_registration(exc=failure)

    async def _on_unexpected(self, message):
        logger.warning(f"[SIG] Unexpected {message.type} message from relay")

    async def _on_offer(self, message):
        if not message.sender_id:
            logger.warning("[SIG] Offer without senderId, dropping")
            return
        if self.session is not None:
            logger.info(f"[SIG] Offer from '{message.sender_id}' replaces session with '{self.session.peer_id}'")
            await self.teardown("replaced by a new offer")

        try:
            session = self._open_session(message.sender_id, SessionState.ANSWERING)
        except SignalingError as e:
            logger.error(f"[WEBRTC] Could not answer offer from '{message.sender_id}': {e.message}")
            return
        transport = session.transport
        try:
            await transport.set_remote_description(message.payload)
            answer = await transport.create_answer()
            await transport.set_local_description(answer)
        except NegotiationMismatch as e:
            logger.warning(f"[WEBRTC] Could not answer offer from '{message.sender_id}': {e.message}")
            return
        await self.signaling.send(Answer(target_id=message.sender_id, payload=answer))
        logger.info(f"[SIG] Answer sent to '{message.sender_id}'")

    async def _on_answer(self, message):
        session = self.session
        if session is None or message.sender_id != session.peer_id:
            logger.info(f"[SIG] Answer from '{message.sender_id}' matches no session, discarding")
            return
        if session.state is not SessionState.OFFERING or session.transport.signaling_state == STABLE:
            logger.info(f"[SIG] Stale answer from '{message.sender_id}' ({session.state.value}), discarding")
            return
        try:
            await session.transport.set_remote_description(message.payload)
        except NegotiationMismatch as e:
            logger.warning(f"[WEBRTC] Could not apply answer: {e.message}")
            return
        session.state = SessionState.CONNECTED
        logger.info("Received answer. Peer connection established!")

    async def _on_candidate(self, message):
        session = self.session
        if session is None or message.sender_id != session.peer_id:
            logger.info("Received ICE candidate but no peer connection yet.")
            return
        try:
            await session.transport.add_candidate(message.payload)
        except NegotiationMismatch as e:
            logger.warning(f"[WEBRTC] Error adding received ICE candidate: {e.message}")

    async def _on_hangup(self, message):
        if self.session is None or message.sender_id != self.session.peer_id:
            logger.info(f"[SIG] Hangup from '{message.sender_id}' matches no session")
            return
        logger.info("Remote party hung up.")
        await self.teardown("remote hangup")

    async def _on_signaling_lost(self, event):
        await self.teardown(event.reason)
        self.identity = None
        self._settle_registration(exc=TransportFailure(event.reason))

    # ---------- transport events ----------
    async def _on_negotiation_needed(self, event):
        session = self.session
        if session.state is not SessionState.OFFERING or session.transport.signaling_state != STABLE:
            logger.debug(f"[WEBRTC] Negotiation needed ignored in {session.state.value}")
            return
        logger.info("[WEBRTC] Negotiation needed. Creating offer...")
        try:
            offer = await session.transport.create_offer()
            await session.transport.set_local_description(offer)
        except NegotiationMismatch as e:
            logger.warning(f"[WEBRTC] Error creating offer: {e.message}")
            return
        await self.signaling.send(Offer(target_id=session.peer_id, payload=offer))
        logger.info(f"[SIG] Offer sent to '{session.peer_id}'")

    async def _on_local_candidate(self, event):
        await self.signaling.send(Candidate(target_id=self.session.peer_id, payload=event.candidate))

    async def _on_connection_state(self, event):
        session = self.session
        logger.info(f"[WEBRTC] ICE connection state: {event.state}")
        if event.state in CONNECTED_STATES and session.state is SessionState.ANSWERING:
            session.state = SessionState.CONNECTED
        elif event.state in TERMINAL_STATES:
            await self.teardown(f"transport {event.state}")

    async def _on_remote_stream(self, event):
        self.session.remote_stream = event.stream
        logger.info("[WEBRTC] Received remote stream.")

    # ---------- operator intents ----------
    async def _on_register_intent(self, event):
        if self.identity is not None:
            logger.warning(f"Already registered as {self.identity}")
            self._settle_registration(exc=AlreadyRegistered(self.identity))
            return
        self._pending_identity = event.identity
        logger.info(f"Registering as {event.identity}...")
        await self.signaling.send(Register(id=event.identity))

    async def _on_call_intent(self, event):
        if self.identity is None:
            logger.warning("Register before calling.")
            return
        if self.session is not None:
            logger.warning(f"Already in a session with '{self.session.peer_id}'. Hang up first.")
            return
        if event.target_id == self.identity:
            logger.warning("Cannot call yourself.")
            return
        logger.info(f"Attempting to call {event.target_id}...")
        # the offer goes out on the transport's NegotiationNeeded event
        try:
            self._open_session(event.target_id, SessionState.OFFERING)
        except SignalingError as e:
            logger.error(f"[WEBRTC] Could not call '{event.target_id}': {e.message}")

    async def _on_hangup_intent(self, event):
        await self.teardown("local hangup", notify_peer=True)

    async def _on_start_recording(self, event):
        session = self.session
        if session is None or session.remote_stream is None:
            logger.warning("No remote video stream available to record.")
            return
        if session.recorder is not None and session.recorder.recording:
            logger.warning("Already recording.")
            return
        if self._recorder_factory is None:
            logger.warning("Recording is not available.")
            return
        try:
            recorder = self._recorder_factory()
            recorder.start(session.remote_stream)
        except SignalingError as e:
            logger.error(f"Could not start recording: {e.message}")
            return
        session.recorder = recorder
        self.recording = None
        logger.info("Recording started...")

    async def _on_stop_recording(self, event):
        session = self.session
        if session is None or session.recorder is None or not session.recorder.recording:
            logger.warning("Not recording.")
            return
        self.recording = session.recorder.stop()
        session.recorder = None
        logger.info(f"Recording stopped, {len(self.recording)} bytes. Ready to save.")

    async def _on_save_recording(self, event):
        if not self.recording:
            logger.warning("No recorded video to save.")
            return
        try:
            Path(event.path).write_bytes(self.recording)
        except OSError as e:
            logger.error(f"Could not save recording to {event.path}: {e}")
            return
        logger.info(f"Recording saved to {event.path}")
        self.recording = None
