"""
Signaling wire protocol.

Every frame is a JSON object with a "type" tag. The set of types is closed:
register / registered / offer / answer / candidate / hangup / error. Routed
types carry a "targetId" and get a "senderId" stamped by the relay. Fields
that are not part of a type's schema are kept in ``extra`` and written back
out unchanged.
"""
import dataclasses
import json
from typing import Any, ClassVar, Optional

from voluptuous import ALLOW_EXTRA, All, Invalid, Length, Optional as Opt, Required, Schema

from callrelay.errors import MalformedMessage


def _present(value):
    if value is None:
        raise Invalid("payload must not be null")
    return value


IDENTITY = All(str, Length(min=1))


@dataclasses.dataclass
class Register:
    type: ClassVar[str] = "register"
    schema: ClassVar[Schema] = Schema({Required("id"): IDENTITY}, extra=ALLOW_EXTRA)

    id: str
    extra: dict = dataclasses.field(default_factory=dict)

    @classmethod
    def from_dict(cls, data):
        return cls(id=data["id"], extra=_extra(data, ("type", "id")))

    def to_dict(self):
        return {"type": self.type, "id": self.id, **self.extra}


@dataclasses.dataclass
class Registered:
    type: ClassVar[str] = "registered"
    schema: ClassVar[Schema] = Schema({Required("id"): IDENTITY}, extra=ALLOW_EXTRA)

    id: str
    extra: dict = dataclasses.field(default_factory=dict)

    @classmethod
    def from_dict(cls, data):
        return cls(id=data["id"], extra=_extra(data, ("type", "id")))

    def to_dict(self):
        return {"type": self.type, "id": self.id, **self.extra}


@dataclasses.dataclass
class Error:
    type: ClassVar[str] = "error"
    schema: ClassVar[Schema] = Schema({
        Required("message"): str,
        Opt("reason"): str,
    }, extra=ALLOW_EXTRA)

    message: str
    reason: Optional[str] = None
    extra: dict = dataclasses.field(default_factory=dict)

    @classmethod
    def from_dict(cls, data):
        return cls(message=data["message"], reason=data.get("reason"),
                   extra=_extra(data, ("type", "message", "reason")))

    @classmethod
    def from_exception(cls, exc):
        return cls(message=exc.message, reason=exc.reason)

    def to_dict(self):
        data = {"type": self.type, "message": self.message}
        if self.reason is not None:
            data["reason"] = self.reason
        data.update(self.extra)
        return data


@dataclasses.dataclass
class RoutedMessage:
    """A peer-to-peer message the relay forwards by ``target_id``."""
    type: ClassVar[str]
    payload_key: ClassVar[Optional[str]] = None

    target_id: str
    payload: Any = None
    sender_id: Optional[str] = None
    extra: dict = dataclasses.field(default_factory=dict)

    @classmethod
    def build_schema(cls):
        fields = {Required("targetId"): IDENTITY}
        if cls.payload_key is not None:
            fields[Required(cls.payload_key)] = _present
        return Schema(fields, extra=ALLOW_EXTRA)

    @classmethod
    def from_dict(cls, data):
        keys = ("type", "targetId", "senderId", cls.payload_key)
        return cls(
            target_id=data["targetId"],
            payload=data.get(cls.payload_key) if cls.payload_key else None,
            sender_id=data.get("senderId"),
            extra=_extra(data, keys),
        )

    def to_dict(self):
        data = {"type": self.type, "targetId": self.target_id}
        if self.payload_key is not None:
            data[self.payload_key] = self.payload
        if self.sender_id is not None:
            data["senderId"] = self.sender_id
        data.update(self.extra)
        return data


class Offer(RoutedMessage):
    type = "offer"
    payload_key = "offer"


class Answer(RoutedMessage):
    type = "answer"
    payload_key = "answer"


class Candidate(RoutedMessage):
    type = "candidate"
    payload_key = "candidate"


class Hangup(RoutedMessage):
    type = "hangup"


ROUTED_TYPES = (Offer, Answer, Candidate, Hangup)

MESSAGE_TYPES = {cls.type: cls for cls in (Register, Registered, Error) + ROUTED_TYPES}

for _cls in ROUTED_TYPES:
    _cls.schema = _cls.build_schema()


def _extra(data, keys):
    return {k: v for k, v in data.items() if k not in keys}


def decode(raw):
    """Parse one text frame into a message object or raise MalformedMessage."""
    if not isinstance(raw, str):
        raise MalformedMessage("Binary frames are not supported.")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedMessage("Invalid JSON.") from e
    if not isinstance(data, dict):
        raise MalformedMessage("Message must be a JSON object.")

    message_type = data.get("type")
    cls = MESSAGE_TYPES.get(message_type) if isinstance(message_type, str) else None
    if cls is None:
        raise MalformedMessage("Unknown message type.")
    try:
        cls.schema(data)
    except Invalid as e:
        raise MalformedMessage(f"Malformed {message_type} message: {e}") from e
    return cls.from_dict(data)


def encode(message) -> str:
    return json.dumps(message.to_dict())
