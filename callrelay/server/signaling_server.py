#!/usr/bin/env python3
import argparse
import asyncio
import logging
import os
import ssl

import websockets

from callrelay.errors import AlreadyRegistered, MalformedMessage, NotRegistered, SignalingError, TargetUnreachable
from callrelay.logger import setup_logging
from callrelay.protocol import (
    Answer, Candidate, Error, Hangup, Offer, Register, Registered, decode, encode,
)
from callrelay.server.registry import Registry

logger = logging.getLogger(__name__)

# frames queued for a client that has stopped reading
OUTBOX_LIMIT = 256


class Connection:
    """One client websocket plus its outbound queue and bound identity."""

    def __init__(self, websocket, outbox_limit=OUTBOX_LIMIT):
        self.websocket = websocket
        self.identity = None
        self.open = True
        self._outbox = asyncio.Queue(maxsize=outbox_limit)

    def bind(self, identity):
        if self.identity is not None:
            raise AlreadyRegistered(self.identity)
        self.identity = identity

    def send(self, message):
        """
        Queue a frame for the writer task, which owns the socket. Never
        blocks; raises asyncio.QueueFull once the client stops reading.
        """
        if self.open:
            self._outbox.put_nowait(encode(message))

    def reply(self, message):
        try:
            self.send(message)
        except asyncio.QueueFull:
            logger.warning(f"[DROP] {message.type} for '{self.identity}', outbox full")

    async def writer(self):
        while True:
            frame = await self._outbox.get()
            try:
                await self.websocket.send(frame)
            except websockets.exceptions.ConnectionClosed:
                self.open = False
                return


class RelayServer:

    def __init__(self, registry: Registry, host="0.0.0.0", port=8765, ssl_context=None, outbox_limit=OUTBOX_LIMIT):
        self.registry = registry
        self.outbox_limit = outbox_limit
        self._host = host
        self._port = port
        self._ssl_context = ssl_context
        self._server = None
        self._handlers = {
            Register: self.register,
            Offer: self.route,
            Answer: self.route,
            Candidate: self.route,
            Hangup: self.route,
            Registered: self.reject,
            Error: self.reject,
        }

    @property
    def port(self):
        if self._server is None:
            return self._port
        return self._server.sockets[0].getsockname()[1]

    async def handler(self, ws):
        connection = Connection(ws, self.outbox_limit)
        writer = asyncio.create_task(connection.writer())
        logger.info(f"[NEW CONNECTION] from {ws.remote_address}")
        try:
            async for raw in ws:
                await self.handle_frame(connection, raw)
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"[DISCONNECT] Connection closed for peer '{connection.identity}'")
        finally:
            connection.open = False
            await self.on_disconnect(connection)
            writer.cancel()

    async def handle_frame(self, connection, raw):
        try:
            message = decode(raw)
            await self._handlers[type(message)](connection, message)
        except SignalingError as e:
            logger.warning(f"[ERROR] {e.message} (peer '{connection.identity}')")
            connection.reply(Error.from_exception(e))

    async def register(self, connection, message):
        await self.registry.register(connection, message.id)
        connection.reply(Registered(id=message.id))

    async def route(self, connection, message):
        if connection.identity is None:
            raise NotRegistered(message.type)
        target = await self.registry.lookup(message.target_id)
        message.sender_id = connection.identity
        try:
            target.send(message)
        except asyncio.QueueFull:
            logger.warning(f"[RELAY] '{message.target_id}' is not reading, {message.type} dropped")
            raise TargetUnreachable(message.target_id)
        logger.info(f"[RELAY] {message.type} from '{connection.identity}' to '{message.target_id}'")

    async def reject(self, connection, message):
        raise MalformedMessage(f"Clients may not send {message.type} messages.")

    async def on_disconnect(self, connection):
        # the peer this identity was talking to is not notified
        if not await self.registry.unregister(connection):
            logger.info("[DISCONNECT] Unregistered client disconnected.")

    async def __aenter__(self):
        self._server = await websockets.serve(self.handler, self._host, self._port, ssl=self._ssl_context)
        logger.info(f"Signaling server listening on {self._host}:{self.port}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        logger.debug("Stopping signaling server")
        self._server.close()
        await self._server.wait_closed()
        self._server = None


def ssl_context_from(certfile, keyfile):
    ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ssl_context.load_cert_chain(certfile=certfile, keyfile=keyfile)
    return ssl_context


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Two-party call signaling relay")
    ap.add_argument("--host", default=os.environ.get("CALLRELAY_HOST", "0.0.0.0"))
    ap.add_argument("--port", type=int, default=int(os.environ.get("CALLRELAY_PORT", "8765")))
    ap.add_argument("--ssl-cert", default=os.environ.get("CALLRELAY_SSL_CERT"), help="serve wss:// with this cert")
    ap.add_argument("--ssl-key", default=os.environ.get("CALLRELAY_SSL_KEY"))
    ap.add_argument("--outbox-limit", type=int, default=int(os.environ.get("CALLRELAY_OUTBOX_LIMIT", OUTBOX_LIMIT)),
                    help="frames queued per client before its messages are refused")
    args = ap.parse_args(argv)
    if bool(args.ssl_cert) != bool(args.ssl_key):
        ap.error("--ssl-cert and --ssl-key must be given together")
    return args


async def serve(args):
    ssl_context = ssl_context_from(args.ssl_cert, args.ssl_key) if args.ssl_cert else None
    scheme = "wss" if ssl_context else "ws"
    logger.info("=" * 50)
    logger.info(f" Signaling Server Starting on {scheme}://{args.host}:{args.port}")
    logger.info("=" * 50)
    async with RelayServer(Registry(), args.host, args.port, ssl_context, args.outbox_limit):
        await asyncio.Future()


def main(argv=None):
    setup_logging()
    args = parse_args(argv)
    try:
        asyncio.run(serve(args))
    except KeyboardInterrupt:
        logger.info("Stopping Server ...")


if __name__ == "__main__":
    main()
