import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosedError

from teleop_signaling import (
    Answer,
    Candidate,
    Offer,
    SignalingChannel,
    TransportError,
    encode_message,
    parse_message,
)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------
def test_parse_offer():
    assert parse_message('{"type": "offer", "description": "v=0"}') == Offer("v=0")


def test_parse_answer():
    assert parse_message('{"type": "answer", "description": "v=0"}') == Answer("v=0")


def test_parse_candidate_with_and_without_mid():
    assert parse_message(
        '{"type": "candidate", "candidate": "candidate:1 1 UDP 1 1.2.3.4 5 typ host", "mid": "video"}'
    ) == Candidate("candidate:1 1 UDP 1 1.2.3.4 5 typ host", "video")
    assert parse_message('{"type": "candidate", "candidate": "c"}') == Candidate("c", None)
    assert parse_message('{"type": "candidate", "candidate": "c", "mid": null}') == Candidate("c", None)


def test_parse_ignores_extra_fields():
    assert parse_message('{"type": "offer", "description": "v=0", "id": 7}') == Offer("v=0")


@pytest.mark.parametrize("text", [
    "not json",
    "",
    "[]",
    '"offer"',
    "{}",
    '{"type": "bogus"}',
    '{"type": "offer"}',
    '{"type": "offer", "description": 12}',
    '{"type": "candidate"}',
    '{"type": "candidate", "candidate": 5}',
    '{"type": "candidate", "candidate": "c", "mid": 0}',
])
def test_malformed_frames_are_dropped(text):
    assert parse_message(text) is None


def test_encode_answer():
    assert json.loads(encode_message(Answer("v=0\r\n"))) == {"type": "answer", "description": "v=0\r\n"}


def test_encode_candidate_keeps_null_mid():
    assert json.loads(encode_message(Candidate("c"))) == {"type": "candidate", "candidate": "c", "mid": None}


def test_encode_rejects_other_objects():
    with pytest.raises(TypeError):
        encode_message({"type": "answer"})


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------
def test_messages_in_arrival_order(connect_to, make_websocket):
    ws = connect_to(make_websocket([
        '{"type": "candidate", "candidate": "a", "mid": "0"}',
        b"\x00\x01binary",
        "garbage",
        '{"type": "offer", "description": "sdp"}',
        '{"type": "candidate", "candidate": "b", "mid": "0"}',
    ]))

    async def scenario():
        channel = await SignalingChannel("ws://robot/").connect()
        received = [message async for message in channel.messages()]
        await channel.close()
        return received

    received = asyncio.run(scenario())

    assert received == [Candidate("a", "0"), Offer("sdp"), Candidate("b", "0")]
    assert ws.closed


def test_send_preserves_call_order(connect_to, make_websocket):
    ws = connect_to(make_websocket())

    async def scenario():
        channel = await SignalingChannel("ws://robot/").connect()
        channel.send(Answer("sdp"))
        channel.send(Candidate("one", "0"))
        channel.send(Candidate("two", "0"))
        for _ in range(5):
            await asyncio.sleep(0)
        await channel.close()

    asyncio.run(scenario())

    assert ws.sent == [
        {"type": "answer", "description": "sdp"},
        {"type": "candidate", "candidate": "one", "mid": "0"},
        {"type": "candidate", "candidate": "two", "mid": "0"},
    ]


def test_connect_failure_is_a_transport_error(connect_to):
    connect_to(ConnectionRefusedError("refused"))

    async def scenario():
        await SignalingChannel("ws://robot/").connect()

    with pytest.raises(TransportError):
        asyncio.run(scenario())


def test_dropped_connection_is_a_transport_error(connect_to, make_websocket):
    connect_to(make_websocket(
        ['{"type": "offer", "description": "sdp"}'],
        error=ConnectionClosedError(None, None),
    ))

    async def scenario():
        channel = await SignalingChannel("ws://robot/").connect()
        received = []
        try:
            async for message in channel.messages():
                received.append(message)
        finally:
            await channel.close()
        return received

    with pytest.raises(TransportError):
        asyncio.run(scenario())


def test_send_before_connect_fails():
    with pytest.raises(TransportError):
        SignalingChannel("ws://robot/").send(Answer("sdp"))


@pytest.mark.parametrize("error", [ConnectionClosedError(None, None), RuntimeError("socket gone")])
def test_send_after_writer_stops_is_a_transport_error(connect_to, make_websocket, error):
    ws = connect_to(make_websocket(send_error=error))

    async def scenario():
        channel = await SignalingChannel("ws://robot/").connect()
        channel.send(Answer("sdp"))
        for _ in range(5):
            await asyncio.sleep(0)
        assert channel._writer.done()
        assert channel._writer.exception() is None
        try:
            with pytest.raises(TransportError):
                channel.send(Candidate("late", "0"))
        finally:
            await channel.close()

    asyncio.run(scenario())

    assert ws.sent == []
    assert ws.closed
