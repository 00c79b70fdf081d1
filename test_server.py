"""Relay behaviour over real websocket connections."""
import asyncio
import json

import pytest

from callrelay.server.registry import Registry
from callrelay.server.signaling_server import Connection, RelayServer, parse_args


def relay_test(body):
    async def run():
        async with RelayServer(Registry(), "127.0.0.1", 0) as relay:
            await body(relay)

    asyncio.run(run())


def test_register_replies_registered(ws_helpers):
    async def body(relay):
        async with await ws_helpers.connect(relay) as alice:
            reply = await ws_helpers.register(alice, "alice")
            assert reply == {"type": "registered", "id": "alice"}
            assert relay.registry.identities() == ["alice"]

    relay_test(body)


def test_duplicate_identity_is_rejected_and_table_unchanged(ws_helpers):
    async def body(relay):
        async with await ws_helpers.connect(relay) as first, await ws_helpers.connect(relay) as second:
            await ws_helpers.register(first, "alice")
            reply = await ws_helpers.register(second, "alice")
            assert reply["type"] == "error"
            assert reply["reason"] == "duplicate-identity"
            assert reply["message"] == "ID 'alice' is already taken."
            assert relay.registry.identities() == ["alice"]

            # the rejected connection stays open and can pick another id
            assert await ws_helpers.register(second, "alice2") == {"type": "registered", "id": "alice2"}
            assert sorted(relay.registry.identities()) == ["alice", "alice2"]

    relay_test(body)


def test_identity_is_bound_once_per_connection(ws_helpers):
    async def body(relay):
        async with await ws_helpers.connect(relay) as ws:
            await ws_helpers.register(ws, "alice")
            reply = await ws_helpers.register(ws, "alicia")
            assert reply["reason"] == "already-registered"
            assert relay.registry.identities() == ["alice"]

    relay_test(body)


def test_offer_is_forwarded_with_sender_stamped(ws_helpers):
    async def body(relay):
        async with await ws_helpers.connect(relay) as alice, await ws_helpers.connect(relay) as bob:
            await ws_helpers.register(alice, "alice")
            await ws_helpers.register(bob, "bob")
            offer = {"type": "offer", "sdp": "v=0\r\n", "nested": [1, {"x": None}]}
            await alice.send(json.dumps({
                "type": "offer", "targetId": "bob", "offer": offer, "callTag": "abc",
            }))
            received = await ws_helpers.recv(bob)
            assert received == {
                "type": "offer", "targetId": "bob", "offer": offer, "callTag": "abc", "senderId": "alice",
            }

    relay_test(body)


def test_sender_id_cannot_be_spoofed(ws_helpers):
    async def body(relay):
        async with await ws_helpers.connect(relay) as alice, await ws_helpers.connect(relay) as bob:
            await ws_helpers.register(alice, "alice")
            await ws_helpers.register(bob, "bob")
            await alice.send(json.dumps({"type": "hangup", "targetId": "bob", "senderId": "mallory"}))
            received = await ws_helpers.recv(bob)
            assert received["senderId"] == "alice"

    relay_test(body)


def test_unknown_target_is_reported_to_sender(ws_helpers):
    async def body(relay):
        async with await ws_helpers.connect(relay) as alice:
            await ws_helpers.register(alice, "alice")
            await alice.send(json.dumps({"type": "offer", "targetId": "carol", "offer": {"sdp": "x"}}))
            reply = await ws_helpers.recv(alice)
            assert reply == {
                "type": "error",
                "message": "target carol not found or not connected",
                "reason": "target-unreachable",
            }

    relay_test(body)


def test_routing_requires_registration(ws_helpers):
    async def body(relay):
        async with await ws_helpers.connect(relay) as anon, await ws_helpers.connect(relay) as bob:
            await ws_helpers.register(bob, "bob")
            await anon.send(json.dumps({"type": "candidate", "targetId": "bob", "candidate": {"c": 1}}))
            reply = await ws_helpers.recv(anon)
            assert reply["reason"] == "not-registered"
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(bob.recv(), 0.2)

    relay_test(body)


@pytest.mark.parametrize("frame", [
    "not json",
    "[1, 2]",
    json.dumps({"type": "dance"}),
    json.dumps({"type": "offer", "offer": {}}),
    json.dumps({"type": "answer", "targetId": "bob"}),
    json.dumps({"type": "register", "id": ""}),
    json.dumps({"type": "registered", "id": "alice"}),
    b"\x00binary",
])
def test_malformed_frames_get_an_error_and_connection_survives(ws_helpers, frame):
    async def body(relay):
        async with await ws_helpers.connect(relay) as ws:
            await ws.send(frame)
            reply = await ws_helpers.recv(ws)
            assert reply["type"] == "error"
            assert reply["reason"] == "malformed-message"
            assert await ws_helpers.register(ws, "alice") == {"type": "registered", "id": "alice"}

    relay_test(body)


def test_disconnect_removes_only_its_own_entry(ws_helpers):
    async def body(relay):
        alice = await ws_helpers.connect(relay)
        bob = await ws_helpers.connect(relay)
        await ws_helpers.register(alice, "alice")
        await ws_helpers.register(bob, "bob")

        await bob.close()
        await ws_helpers.until(lambda: "bob" not in relay.registry)
        assert relay.registry.identities() == ["alice"]

        await alice.send(json.dumps({"type": "answer", "targetId": "bob", "answer": {"sdp": "x"}}))
        reply = await ws_helpers.recv(alice)
        assert reply["reason"] == "target-unreachable"
        await alice.close()

    relay_test(body)


def test_identity_is_released_on_disconnect(ws_helpers):
    async def body(relay):
        first = await ws_helpers.connect(relay)
        await ws_helpers.register(first, "alice")
        await first.close()
        await ws_helpers.until(lambda: len(relay.registry) == 0)

        async with await ws_helpers.connect(relay) as second:
            assert await ws_helpers.register(second, "alice") == {"type": "registered", "id": "alice"}

    relay_test(body)


def test_full_outbox_reports_target_unreachable():
    async def run():
        relay = RelayServer(Registry(), outbox_limit=2)
        alice = Connection(websocket=None, outbox_limit=2)
        bob = Connection(websocket=None, outbox_limit=2)
        await relay.handle_frame(alice, json.dumps({"type": "register", "id": "alice"}))
        await relay.handle_frame(bob, json.dumps({"type": "register", "id": "bob"}))
        # bob never drains: his "registered" plus one candidate fill the queue
        candidate = json.dumps({"type": "candidate", "targetId": "bob", "candidate": {"c": 1}})
        await relay.handle_frame(alice, candidate)
        await relay.handle_frame(alice, candidate)

        assert bob._outbox.qsize() == 2
        frames = [json.loads(alice._outbox.get_nowait()) for _ in range(alice._outbox.qsize())]
        assert frames == [
            {"type": "registered", "id": "alice"},
            {"type": "error", "message": "target bob not found or not connected", "reason": "target-unreachable"},
        ]

        # a sender that is not reading either loses its own error replies quietly
        await relay.handle_frame(bob, candidate.replace("bob", "carol"))
        assert bob._outbox.qsize() == 2
        assert "bob" in relay.registry

    asyncio.run(run())


def test_parse_args_reads_environment(monkeypatch):
    monkeypatch.setenv("CALLRELAY_PORT", "9001")
    args = parse_args([])
    assert args.port == 9001
    assert args.outbox_limit == 256
    assert args.ssl_cert is None


def test_parse_args_needs_cert_and_key_together():
    with pytest.raises(SystemExit):
        parse_args(["--ssl-cert", "cert.pem"])
