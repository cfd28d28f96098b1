import asyncio
import json

import pytest

from helpers import RawWebSocket, make_server
from titanlink.framing import OP_CLOSE, OP_PING, OP_PONG, encode_frame


async def http_get(port):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), 2)
    writer.close()
    head, _, body = data.partition(b"\r\n\r\n")
    return head, json.loads(body)


@pytest.mark.asyncio
async def test_health_endpoint(server):
    head, body = await http_get(server.port)

    assert head.startswith(b"HTTP/1.1 200 OK")
    assert b"application/json" in head
    assert body == {"status": "ok", "name": "TitanLink Signaling", "sessions": 0}


@pytest.mark.asyncio
async def test_create_and_join_over_sockets(server):
    host = await RawWebSocket.connect(server.port)
    client = await RawWebSocket.connect(server.port)

    await host.send_json({"type": "create-session", "sessionCode": "ABC123", "hostId": "h1"})
    assert await host.recv_json() == {"type": "session-created"}

    await client.send_json({"type": "join-session", "sessionCode": "ABC123", "clientId": "c1"})
    assert await client.recv_json() == {"type": "session-joined", "data": {"hostId": "h1"}}
    assert await host.recv_json() == {"type": "peer-joined", "data": {"peerId": "c1"}}

    _, body = await http_get(server.port)
    assert body["sessions"] == 1

    await client.send_json({"type": "signal", "sessionCode": "ABC123", "to": "h1", "payload": {"type": "answer"}})
    assert await host.recv_json() == {
        "type": "signal",
        "data": {"from": "c1", "to": "h1", "payload": {"type": "answer"}},
    }

    await host.close()
    await client.close()


@pytest.mark.asyncio
async def test_duplicate_code_gets_error(server):
    first = await RawWebSocket.connect(server.port)
    second = await RawWebSocket.connect(server.port)

    await first.send_json({"type": "create-session", "sessionCode": "ABC123", "hostId": "h1"})
    await first.recv_json()
    await second.send_json({"type": "create-session", "sessionCode": "ABC123", "hostId": "h2"})

    reply = await second.recv_json()
    assert reply["type"] == "error"
    assert server.registry.get("ABC123").host_id == "h1"

    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_malformed_json_is_dropped(server):
    ws = await RawWebSocket.connect(server.port)

    await ws.send_frame("{not json")
    await ws.send_json({"type": "create-session", "sessionCode": "ABC123", "hostId": "h1"})

    assert await ws.recv_json() == {"type": "session-created"}
    await ws.close()


@pytest.mark.asyncio
async def test_unknown_type_gets_error_reply(server):
    ws = await RawWebSocket.connect(server.port)

    await ws.send_json({"type": "bogus"})
    reply = await ws.recv_json()

    assert reply["type"] == "error"
    assert "bogus" in reply["data"]
    await ws.close()


@pytest.mark.asyncio
async def test_message_split_across_writes(server):
    ws = await RawWebSocket.connect(server.port)
    frame = encode_frame(
        json.dumps({"type": "create-session", "sessionCode": "SPLIT1", "hostId": "h1"}),
        mask_key=b"\x01\x02\x03\x04",
    )

    for i in range(0, len(frame), 5):
        await ws.send_raw(frame[i:i + 5])
        await asyncio.sleep(0)

    assert await ws.recv_json() == {"type": "session-created"}
    await ws.close()


@pytest.mark.asyncio
async def test_two_messages_in_one_write(server):
    ws = await RawWebSocket.connect(server.port)
    mask = b"\x01\x02\x03\x04"
    data = encode_frame(json.dumps({"type": "bogus1"}), mask_key=mask) + encode_frame(
        json.dumps({"type": "bogus2"}), mask_key=mask
    )

    await ws.send_raw(data)

    assert "bogus1" in (await ws.recv_json())["data"]
    assert "bogus2" in (await ws.recv_json())["data"]
    await ws.close()


@pytest.mark.asyncio
async def test_64_bit_frame_closes_connection(server):
    ws = await RawWebSocket.connect(server.port)

    header = encode_frame(b"x" * 65536, mask_key=b"\x01\x02\x03\x04")[:14]
    await ws.send_raw(header)

    await ws.wait_eof()


@pytest.mark.asyncio
async def test_close_frame_is_echoed(server):
    ws = await RawWebSocket.connect(server.port)

    await ws.send_frame(b"\x03\xe8", OP_CLOSE)

    frame = await ws.recv_frame()
    assert frame.opcode == OP_CLOSE
    await ws.wait_eof()


@pytest.mark.asyncio
async def test_ping_is_answered(server):
    ws = await RawWebSocket.connect(server.port)

    await ws.send_frame(b"hi", OP_PING)

    frame = await ws.recv_frame()
    assert frame.opcode == OP_PONG
    assert frame.payload == b"hi"
    await ws.close()


@pytest.mark.asyncio
async def test_client_disconnect_notifies_host(server):
    host = await RawWebSocket.connect(server.port)
    client = await RawWebSocket.connect(server.port)

    await host.send_json({"type": "create-session", "sessionCode": "ABC123", "hostId": "h1"})
    await host.recv_json()
    await client.send_json({"type": "join-session", "sessionCode": "ABC123", "clientId": "c1"})
    await client.recv_json()
    await host.recv_json()

    await client.close()

    assert await host.recv_json() == {"type": "peer-left", "data": {"peerId": "c1"}}
    await host.close()


@pytest.mark.asyncio
async def test_host_disconnect_destroys_session(server):
    host = await RawWebSocket.connect(server.port)
    client = await RawWebSocket.connect(server.port)

    await host.send_json({"type": "create-session", "sessionCode": "ABC123", "hostId": "h1"})
    await host.recv_json()
    await client.send_json({"type": "join-session", "sessionCode": "ABC123", "clientId": "c1"})
    await client.recv_json()

    await host.close()

    assert await client.recv_json() == {"type": "host-left"}
    assert server.registry.get("ABC123") is None
    await client.close()


@pytest.mark.asyncio
async def test_unanswered_heartbeat_closes_connection():
    server = make_server(heartbeat_seconds=0.05)
    await server.start()
    try:
        ws = await RawWebSocket.connect(server.port)

        frame = await ws.recv_frame()
        assert frame.opcode == OP_PING

        await ws.wait_eof()
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_answered_heartbeat_keeps_connection():
    server = make_server(heartbeat_seconds=0.05)
    await server.start()
    try:
        ws = await RawWebSocket.connect(server.port)

        for _ in range(4):
            frame = await ws.recv_frame()
            assert frame.opcode == OP_PING
            await ws.send_frame(b"", OP_PONG)

        assert len(server.protocols) == 1
        await ws.close()
    finally:
        await server.stop()
