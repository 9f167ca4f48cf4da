import asyncio
import base64
import json
import os
import socket
import sys

import pytest
from websockets.asyncio.server import serve

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from conftest import FakeTransport, settle
from parley import protocol
from parley.config import TransportSettings
from parley.encoder import AudioChunk
from parley.error_handler import ConnectError
from parley.protocol import EventType
from parley.transport import TransportState, WebSocketTransport


def _chunk(seq):
    return AudioChunk(seq=seq, timestamp=seq * 0.2, payload=b"\x00\x01" * 8, encoding="pcm16",
                      sample_rate=24000, channels=1, duration_ms=0.3)


def _ws_settings(port, **overrides):
    values = dict(url=f"ws://127.0.0.1:{port}/realtime-ws", connect_timeout=2.0, max_retries=1,
                  backoff_initial=0.0, backoff_max=0.0, stop_timeout=1.0)
    values.update(overrides)
    return TransportSettings(**values)


async def _wait_for(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# ---- Base transport behaviour (queue, retry, lifecycle) ----

def test_messages_are_delivered_in_enqueue_order(transport_settings):
    async def run():
        transport = FakeTransport(transport_settings)
        await transport.open("s1", protocol.session_start("s1", 24000, 1, "pcm16"))
        assert transport.state == TransportState.READY
        for seq in range(25):
            assert transport.send(protocol.audio_chunk(_chunk(seq)))
        transport.send(protocol.turn_commit())
        await settle()
        return transport

    transport = asyncio.run(run())

    assert transport.state == TransportState.STREAMING
    assert [m["seq"] for m in transport.delivered if m["type"] == "audio"] == list(range(25))
    assert transport.types()[-1] == "turn_commit"


def test_transient_send_failure_degrades_then_recovers(transport_settings):
    states = []

    async def run():
        transport = FakeTransport(transport_settings)
        transport.on_state(states.append)
        await transport.open("s1", {"type": "session_start"})
        transport.fail_sends = 2
        transport.send(protocol.audio_chunk(_chunk(0)))
        transport.send(protocol.audio_chunk(_chunk(1)))
        await settle(20)
        return transport

    transport = asyncio.run(run())

    assert TransportState.DEGRADED in states
    assert transport.state == TransportState.STREAMING
    assert [m["seq"] for m in transport.delivered if m["type"] == "audio"] == [0, 1]
    assert transport.retry_count == 2


def test_exhausted_retries_close_with_fatal_error(transport_settings):
    closed = []

    async def run():
        transport = FakeTransport(transport_settings)
        transport.on_close(closed.append)
        await transport.open("s1", {"type": "session_start"})
        transport.fail_sends = 10
        transport.send(protocol.audio_chunk(_chunk(0)))
        await settle(30)
        return transport

    transport = asyncio.run(run())

    assert transport.state == TransportState.CLOSED
    assert len(closed) == 1
    assert closed[0].transient is False
    assert transport.send(protocol.turn_commit()) is False


def test_close_sends_stop_once_and_is_idempotent(transport_settings):
    async def run():
        transport = FakeTransport(transport_settings)
        await transport.open("s1", {"type": "session_start"})
        await transport.close()
        await transport.close()
        return transport

    transport = asyncio.run(run())

    assert transport.types().count("session_stop") == 1
    assert transport.state == TransportState.CLOSED
    assert transport.disconnects == 1


def test_reopened_transport_delivers_through_its_new_queue(transport_settings):
    async def run():
        transport = FakeTransport(transport_settings)
        await transport.open("s1", {"type": "session_start"})
        transport.send(protocol.turn_commit())
        await settle()
        await transport.close()
        assert transport.pending == 0

        await transport.open("s2", {"type": "session_start"})
        transport.send(protocol.turn_commit())
        await settle()
        await transport.close()
        return transport

    transport = asyncio.run(run())

    assert transport.types() == ["session_start", "turn_commit", "session_stop",
                                 "session_start", "turn_commit", "session_stop"]
    assert transport.sent_count == 2


def test_stop_delivery_failure_is_only_logged(transport_settings):
    async def run():
        transport = FakeTransport(transport_settings)
        await transport.open("s1", {"type": "session_start"})
        transport.fail_sends = 1
        await transport.close()
        return transport

    transport = asyncio.run(run())

    assert "session_stop" not in transport.types()
    assert transport.state == TransportState.CLOSED


def test_open_times_out_without_session_ready(transport_settings):
    transport_settings.connect_timeout = 0.05

    async def run():
        transport = FakeTransport(transport_settings, auto_ready=False)
        with pytest.raises(ConnectError):
            await transport.open("s1", {"type": "session_start"})
        return transport

    transport = asyncio.run(run())

    assert transport.state == TransportState.CLOSED


# ---- WebSocket transport against a local server ----

def test_websocket_session_round_trip():
    received = []
    events = []
    pcm = base64.b64encode(b"\x10\x00" * 32).decode()

    async def handler(ws):
        async for raw in ws:
            message = json.loads(raw)
            received.append(message)
            if message["type"] == "session_start":
                await ws.send(json.dumps({"type": "session_ready", "sessionId": "srv-1"}))
            elif message["type"] == "turn_commit":
                await ws.send(json.dumps({"type": "transcript", "role": "user", "text": "hello"}))
                await ws.send("this is not json")
                await ws.send(json.dumps({"type": "audio", "delta": pcm}))
                await ws.send(json.dumps({"type": "response_done"}))

    async def run():
        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            transport = WebSocketTransport(_ws_settings(port))
            transport.on_event(events.append)
            await transport.open("local-1", protocol.session_start("local-1", 24000, 1, "pcm16"))
            assert transport.state == TransportState.READY
            assert transport.session_id == "srv-1"

            for seq in range(10):
                transport.send(protocol.audio_chunk(_chunk(seq)))
            transport.send(protocol.turn_commit())
            await _wait_for(lambda: any(e.type == EventType.RESPONSE_DONE for e in events))
            assert transport.state == TransportState.STREAMING

            await transport.close()
            await _wait_for(lambda: received and received[-1]["type"] == "session_stop")
            return transport

    transport = asyncio.run(run())

    assert transport.state == TransportState.CLOSED
    types = [m["type"] for m in received]
    assert types[0] == "session_start"
    assert [m["seq"] for m in received if m["type"] == "audio"] == list(range(10))
    assert types[-2:] == ["turn_commit", "session_stop"]
    assert [e.type for e in events] == [
        EventType.SESSION_READY, EventType.TRANSCRIPT, EventType.RESPONSE_AUDIO, EventType.RESPONSE_DONE]
    assert events[2].audio == b"\x10\x00" * 32


def test_websocket_connect_refused():
    async def run():
        transport = WebSocketTransport(_ws_settings(_free_port()))
        with pytest.raises(ConnectError):
            await transport.open("s1", {"type": "session_start"})
        return transport

    transport = asyncio.run(run())

    assert transport.state == TransportState.CLOSED


def test_websocket_without_session_ready_times_out():
    async def handler(ws):
        async for _ in ws:
            pass

    async def run():
        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            transport = WebSocketTransport(_ws_settings(port, connect_timeout=0.2))
            with pytest.raises(ConnectError):
                await transport.open("s1", {"type": "session_start"})
            return transport

    transport = asyncio.run(run())

    assert transport.state == TransportState.CLOSED


def test_websocket_remote_close_reports_transient_error():
    closed = []

    async def handler(ws):
        await ws.recv()
        await ws.send(json.dumps({"type": "session_ready"}))
        await asyncio.sleep(0.1)
        await ws.close()

    async def run():
        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            transport = WebSocketTransport(_ws_settings(port))
            transport.on_close(closed.append)
            await transport.open("s1", {"type": "session_start"})
            await _wait_for(lambda: closed)
            return transport

    transport = asyncio.run(run())

    assert closed[0].transient is True
    assert transport.state == TransportState.CLOSED
