import asyncio
import logging

from callrelay.errors import AlreadyRegistered, DuplicateIdentity, TargetUnreachable

logger = logging.getLogger(__name__)


class Registry:
    """
    Identity -> Connection table.

    One instance per relay, handed to every connection handler. All reads and
    writes go through ``self._lock`` so a lookup never sees a half-removed
    entry and two connections can never hold the same identity.
    """

    def __init__(self):
        self._peers = {}
        self._lock = asyncio.Lock()

    async def register(self, connection, identity):
        async with self._lock:
            if connection.identity is not None:
                raise AlreadyRegistered(connection.identity)
            if identity in self._peers:
                raise DuplicateIdentity(identity)
            self._peers[identity] = connection
            connection.bind(identity)
            logger.info(f"[REGISTER] Peer '{identity}' registered. Total peers: {len(self._peers)}")

    async def lookup(self, identity):
        async with self._lock:
            connection = self._peers.get(identity)
            if connection is None or not connection.open:
                raise TargetUnreachable(identity)
            return connection

    async def unregister(self, connection):
        """Drop ``connection``'s own entry. Returns True if one was removed."""
        async with self._lock:
            identity = connection.identity
            if identity is None or self._peers.get(identity) is not connection:
                return False
            del self._peers[identity]
            logger.info(f"[CLEANUP] Removed peer '{identity}'. Remaining: {list(self._peers.keys())}")
            return True

    def identities(self):
        return list(self._peers.keys())

    def __contains__(self, identity):
        return identity in self._peers

    def __len__(self):
        return len(self._peers)
