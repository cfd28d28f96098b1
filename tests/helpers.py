import asyncio
import json

from titanlink.config import Config
from titanlink.framing import INCOMPLETE, OP_TEXT, encode_frame, parse_frame
from titanlink.server import SignalingServer

MASK = b"\x11\x22\x33\x44"

HANDSHAKE = (
    b"GET / HTTP/1.1\r\n"
    b"Host: localhost\r\n"
    b"Upgrade: websocket\r\n"
    b"Connection: Upgrade\r\n"
    b"Sec-WebSocket-Key: dGhlIHNhbXBsZSBub25jZQ==\r\n"
    b"Sec-WebSocket-Version: 13\r\n"
    b"\r\n"
)

class RawWebSocket:
    """Minimal masking client speaking straight to the signaling server."""

    def __init__(self, reader, writer):
        self.reader = reader
        self.writer = writer
        self.buffer = b""

    @classmethod
    async def connect(cls, port):
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(HANDSHAKE)
        await writer.drain()
        head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 2)
        assert head.startswith(b"HTTP/1.1 101")
        return cls(reader, writer)

    async def send_raw(self, data):
        self.writer.write(data)
        await self.writer.drain()

    async def send_frame(self, payload, opcode=OP_TEXT):
        await self.send_raw(encode_frame(payload, opcode, mask_key=MASK))

    async def send_json(self, message):
        await self.send_frame(json.dumps(message))

    async def recv_frame(self, timeout=2.0):
        while True:
            result = parse_frame(self.buffer)
            if result is not INCOMPLETE:
                self.buffer = self.buffer[result.size:]
                return result
            chunk = await asyncio.wait_for(self.reader.read(65536), timeout)
            if not chunk:
                raise ConnectionError("closed by server")
            self.buffer += chunk

    async def recv_json(self, timeout=2.0):
        frame = await self.recv_frame(timeout)
        return json.loads(frame.payload)

    async def wait_eof(self, timeout=2.0):
        while True:
            chunk = await asyncio.wait_for(self.reader.read(65536), timeout)
            if not chunk:
                return

    async def close(self):
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except ConnectionError:
            pass

def make_server(**signaling):
    settings = {"host": "127.0.0.1", "port": 0}
    settings.update(signaling)
    return SignalingServer(Config(data={"signaling": settings}))
