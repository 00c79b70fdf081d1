#!/usr/bin/env python3
import argparse
import asyncio
import functools
import logging
import os
import shlex
import sys

from callrelay.client.events import (
    CallIntent, HangupIntent, RegisterIntent, SaveRecordingIntent, StartRecordingIntent, StopRecordingIntent,
)
from callrelay.client.session import PeerSessionController
from callrelay.client.signaling import SignalingClient
from callrelay.errors import SignalingError
from callrelay.logger import setup_logging

logger = logging.getLogger(__name__)

HELP = "commands: register <id> | call <id> | hangup | record start | record stop | save <path> | quit"


def parse_command(line):
    """Turn one operator input line into an intent. None means quit."""
    words = shlex.split(line)
    if not words:
        return ()
    cmd, args = words[0].lower(), words[1:]
    if cmd == "quit":
        return None
    if cmd == "register" and len(args) == 1:
        return RegisterIntent(args[0])
    if cmd == "call" and len(args) == 1:
        return CallIntent(args[0])
    if cmd == "hangup" and not args:
        return HangupIntent()
    if cmd == "record" and args == ["start"]:
        return StartRecordingIntent()
    if cmd == "record" and args == ["stop"]:
        return StopRecordingIntent()
    if cmd == "save" and len(args) == 1:
        return SaveRecordingIntent(args[0])
    raise ValueError(HELP)


class P2PClient:
    def __init__(self, ws_url, self_id, peer_id=None, stun=None):
        self.ws_url = ws_url
        self.self_id = self_id
        self.peer_id = peer_id
        self.stun = stun

    def build_controller(self, signaling):
        # GStreamer is loaded only by the client CLI
        from callrelay.client.gst_transport import GstRecorder, GstWebRTCTransport, start_glib_loop
        start_glib_loop()
        transport_factory = functools.partial(GstWebRTCTransport, stun=self.stun) if self.stun else GstWebRTCTransport
        return PeerSessionController(signaling, transport_factory, recorder_factory=GstRecorder)

    async def run(self):
        signaling = SignalingClient(self.ws_url)
        await signaling.connect()
        controller = self.build_controller(signaling)

        listen_task = asyncio.create_task(signaling.listen(controller.post))
        run_task = asyncio.create_task(controller.run())
        try:
            if self.self_id:
                try:
                    await controller.register(self.self_id)
                except SignalingError as e:
                    logger.error(f"Registration failed: {e.message}")
                    return
            if self.peer_id:
                controller.post(CallIntent(self.peer_id))

            stdin_task = asyncio.create_task(self.read_intents(controller))
            await asyncio.wait({run_task, stdin_task}, return_when=asyncio.FIRST_COMPLETED)
            stdin_task.cancel()
        finally:
            if not run_task.done():
                controller.post(HangupIntent())
                await controller.events.join()
            await signaling.close()
            await asyncio.gather(listen_task, run_task, return_exceptions=True)

    async def read_intents(self, controller):
        loop = asyncio.get_running_loop()
        print(HELP)
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                return
            try:
                intent = parse_command(line)
            except ValueError as e:
                print(e)
                continue
            if intent is None:
                return
            if intent:
                controller.post(intent)


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Two-party call client")
    ap.add_argument("--server", default=os.environ.get("CALLRELAY_SERVER", "ws://localhost:8765"),
                    help="WS signaling URL")
    ap.add_argument("--id", default=os.environ.get("CALLRELAY_ID"), help="this peer id")
    ap.add_argument("--peer", default=None, help="remote peer id to call right after registering")
    ap.add_argument("--stun", default=os.environ.get("CALLRELAY_STUN"), help="e.g. stun://stun.l.google.com:19302")
    args = ap.parse_args(argv)
    if args.peer and not args.id:
        ap.error("--peer needs --id")
    return args


def main(argv=None):
    setup_logging()
    args = parse_args(argv)
    client = P2PClient(ws_url=args.server, self_id=args.id, peer_id=args.peer, stun=args.stun)
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        logger.info("Cancelled ...")


if __name__ == "__main__":
    main()
