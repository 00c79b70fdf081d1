"""Everything the session controller reacts to, as one closed set of event types."""
import dataclasses
from typing import Any


# signaling channel
@dataclasses.dataclass
class SignalReceived:
    message: Any


@dataclasses.dataclass
class SignalingLost:
    reason: str = "signaling channel closed"


# transport
@dataclasses.dataclass
class NegotiationNeeded:
    transport: Any


@dataclasses.dataclass
class LocalCandidate:
    transport: Any
    candidate: dict


@dataclasses.dataclass
class ConnectionStateChanged:
    transport: Any
    state: str


@dataclasses.dataclass
class RemoteStream:
    transport: Any
    stream: Any


TRANSPORT_EVENTS = (NegotiationNeeded, LocalCandidate, ConnectionStateChanged, RemoteStream)


# operator intents
@dataclasses.dataclass
class RegisterIntent:
    identity: str


@dataclasses.dataclass
class CallIntent:
    target_id: str


@dataclasses.dataclass
class HangupIntent:
    pass


@dataclasses.dataclass
class StartRecordingIntent:
    pass


@dataclasses.dataclass
class StopRecordingIntent:
    pass


@dataclasses.dataclass
class SaveRecordingIntent:
    path: str
