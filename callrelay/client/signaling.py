import logging

import websockets

from callrelay.client.events import SignalingLost, SignalReceived
from callrelay.errors import MalformedMessage
from callrelay.protocol import decode, encode

logger = logging.getLogger(__name__)


class SignalingClient:
    """Client end of the relay websocket."""

    def __init__(self, ws_url):
        self.ws_url = ws_url
        self.ws = None

    async def connect(self):
        self.ws = await websockets.connect(self.ws_url)
        logger.info(f"[SIG] Signaling server connected: {self.ws_url}")

    async def send(self, message):
        if self.ws is None:
            logger.warning(f"[SIG] Not connected, dropping {message.type}")
            return False
        try:
            await self.ws.send(encode(message))
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"[SIG] Signaling channel closed, could not send {message.type}")
            return False
        return True

    async def listen(self, post):
        """
        Feed every decoded frame to ``post`` as SignalReceived, then post
        SignalingLost once the socket is gone.
        """
        reason = "signaling channel closed"
        try:
            async for raw in self.ws:
                try:
                    message = decode(raw)
                except MalformedMessage as e:
                    logger.warning(f"[SIG] Ignoring frame from relay: {e.message}")
                    continue
                post(SignalReceived(message))
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"signaling channel lost: {e}"
        finally:
            logger.info(f"[SIG] {reason}")
            post(SignalingLost(reason))

    async def close(self):
        if self.ws is not None:
            await self.ws.close()
