"""Shared helpers for the relay tests."""

import asyncio
import os

from config import load_defaults
from gyrowire.codec import Frame, Incomplete, Opcode, decode_frame, encode_frame
from relay_manager import RelayManager
from relay_server import RelayConnectionProtocol
from server_data import ServerState

SAMPLE_KEY = "dGhlIHNhbXBsZSBub25jZQ=="
SAMPLE_ACCEPT = "s3pPLMBiTxaQ9kYGzzhZRbK+xOo="


def make_config(**server):
    config = load_defaults()
    config["server"].update(server)
    return config


def handshake_request(key: str = SAMPLE_KEY) -> bytes:
    return (
        "GET / HTTP/1.1\r\n"
        "Host: localhost:8080\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Key: {key}\r\n"
        "Sec-WebSocket-Version: 13\r\n"
        "\r\n"
    ).encode("ascii")


def client_frame(payload, opcode: Opcode = Opcode.TEXT, fin: bool = True) -> bytes:
    """Masked frame, the way a browser would send it."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return encode_frame(payload, opcode, fin=fin, mask_key=os.urandom(4))


def split_response(data: bytes):
    head, _, rest = bytes(data).partition(b"\r\n\r\n")
    return head.decode("ascii"), rest


def server_frames(data: bytes):
    frames = []
    buffer = bytes(data)
    while buffer:
        frame = decode_frame(buffer)
        if isinstance(frame, Incomplete):
            break
        frames.append(frame)
        buffer = buffer[frame.consumed:]
    return frames


def server_texts(data: bytes):
    return [frame.text() for frame in server_frames(data) if frame.opcode == Opcode.TEXT]


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


class FakeTransport(asyncio.Transport):
    def __init__(self, protocol, peername=("127.0.0.1", 50000)):
        super().__init__()
        self.protocol = protocol
        self.peername = peername
        self.written = bytearray()
        self.closed = False
        self.aborted = False
        self.close_calls = 0
        self.reading = True
        self.pause_calls = 0

    def get_extra_info(self, name, default=None):
        if name == "peername":
            return self.peername
        return default

    def write(self, data):
        assert not self.closed, "write after close"
        self.written += data

    def is_closing(self):
        return self.closed

    def pause_reading(self):
        self.pause_calls += 1
        self.reading = False

    def resume_reading(self):
        self.reading = True

    def is_reading(self):
        return self.reading

    def close(self):
        self.close_calls += 1
        if self.closed:
            return
        self.closed = True
        asyncio.get_running_loop().call_soon(self.protocol.connection_lost, None)

    def abort(self):
        self.aborted = True
        self.close()

    def frames_after_handshake(self):
        _, rest = split_response(self.written)
        return server_frames(rest)

    def texts_after_handshake(self):
        _, rest = split_response(self.written)
        return server_texts(rest)


class FakeSession:
    """Stands in for a connection when only the routing is under test."""

    def __init__(self, peername=("10.0.0.2", 40000), open=True):
        self.peername = peername
        self.open = open
        self.sent = []

    async def send_text(self, payload: str) -> bool:
        if not self.open:
            return False
        self.sent.append(payload)
        return True


async def open_session(config=None, handshake: bool = True):
    """Protocol wired to a fake transport, as the listener would create it."""
    config = config or make_config()
    loop = asyncio.get_running_loop()
    data = ServerState()
    manager = RelayManager(config, data)
    protocol = RelayConnectionProtocol(loop, config, data, manager)
    transport = FakeTransport(protocol)
    protocol.connection_made(transport)
    if handshake:
        protocol.data_received(handshake_request())
        await settle()
    return protocol, transport, data, manager


async def read_server_frame(reader: asyncio.StreamReader) -> Frame:
    head = await reader.readexactly(2)
    length = head[1] & 0x7F
    extra = b""
    if length == 126:
        extra = await reader.readexactly(2)
    elif length == 127:
        extra = await reader.readexactly(8)
    if extra:
        length = int.from_bytes(extra, "big")
    payload = await reader.readexactly(length)
    frame = decode_frame(head + extra + payload)
    assert not isinstance(frame, Incomplete)
    return frame


async def connect_raw(port: int):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(handshake_request())
    await writer.drain()
    response = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 2)
    return reader, writer, response.decode("ascii")
