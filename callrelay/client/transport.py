"""
Interfaces of the two media collaborators the session controller drives.

A Transport is one peer connection. It reports what happens to it by calling
the ``emit`` callable it was created with, passing events from
``callrelay.client.events``. A Recorder turns a remote stream into bytes.
"""
import abc

STABLE = "stable"

CONNECTED_STATES = ("connected", "completed")
TERMINAL_STATES = ("failed", "disconnected", "closed")


class Transport(abc.ABC):

    def __init__(self, emit):
        self._emit = emit

    @property
    @abc.abstractmethod
    def signaling_state(self) -> str:
        """Is "stable" when no offer/answer exchange is in flight."""

    @abc.abstractmethod
    async def create_offer(self) -> dict: ...

    @abc.abstractmethod
    async def create_answer(self) -> dict: ...

    @abc.abstractmethod
    async def set_local_description(self, description: dict): ...

    @abc.abstractmethod
    async def set_remote_description(self, description: dict):
        """Raises NegotiationMismatch if the description cannot be applied now."""

    @abc.abstractmethod
    async def add_candidate(self, candidate: dict):
        """Raises NegotiationMismatch after close or before a remote description."""

    @abc.abstractmethod
    def close(self): ...


class Recorder(abc.ABC):

    @property
    @abc.abstractmethod
    def recording(self) -> bool: ...

    @abc.abstractmethod
    def start(self, stream): ...

    @abc.abstractmethod
    def stop(self) -> bytes: ...
