"""
GyroRelay
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import asyncio
import enum
import logging
from asyncio import Server
from typing import Optional, Tuple

from gyrowire.codec import (
    FrameDecodeError,
    Incomplete,
    Opcode,
    MAX_CONTROL_PAYLOAD,
    decode_frame,
    decode_text,
    encode,
    encode_close,
    encode_frame,
    read_header,
)
from gyrowire.handshake import HandshakeError, REQUEST_TERMINATOR, negotiate
from relay_manager import RelayManager
from server_data import ServerState

MAX_HANDSHAKE_SIZE = 8192
MAX_FRAME_HEADER_SIZE = 14

CLOSE_GOING_AWAY = 1001
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_INVALID_PAYLOAD = 1007
CLOSE_MESSAGE_TOO_BIG = 1009


class ServerBindError(Exception): pass


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionEvent(enum.Enum):
    ACCEPTED = "accepted"
    HANDSHAKE_SUCCEEDED = "handshake succeeded"
    HANDSHAKE_FAILED = "handshake failed"
    PEER_CLOSED = "peer closed"
    PROTOCOL_ERROR = "protocol error"
    SHUTDOWN = "shutdown"
    CONNECTION_LOST = "connection lost"
    TRANSPORT_CLOSED = "transport closed"


SESSION_TRANSITIONS = {
    (SessionState.CONNECTING, SessionEvent.ACCEPTED): SessionState.HANDSHAKING,
    (SessionState.CONNECTING, SessionEvent.TRANSPORT_CLOSED): SessionState.CLOSED,

    (SessionState.HANDSHAKING, SessionEvent.HANDSHAKE_SUCCEEDED): SessionState.OPEN,
    (SessionState.HANDSHAKING, SessionEvent.HANDSHAKE_FAILED): SessionState.CLOSED,
    (SessionState.HANDSHAKING, SessionEvent.SHUTDOWN): SessionState.CLOSING,
    (SessionState.HANDSHAKING, SessionEvent.CONNECTION_LOST): SessionState.CLOSING,

    (SessionState.OPEN, SessionEvent.PEER_CLOSED): SessionState.CLOSING,
    (SessionState.OPEN, SessionEvent.PROTOCOL_ERROR): SessionState.CLOSING,
    (SessionState.OPEN, SessionEvent.SHUTDOWN): SessionState.CLOSING,
    (SessionState.OPEN, SessionEvent.CONNECTION_LOST): SessionState.CLOSING,

    (SessionState.CLOSING, SessionEvent.TRANSPORT_CLOSED): SessionState.CLOSED,
}


class RelayConnectionProtocol(asyncio.Protocol):
    _peername: Tuple[str, int] = None

    def __init__(self, loop: asyncio.AbstractEventLoop, config, data: ServerState, manager: RelayManager):
        self._transport: Optional[asyncio.Transport] = None
        self._loop = loop
        self._config = config
        self._data = data
        self._manager = manager
        self._max_frame_size: int = self._config["server"]["max_frame_size"]
        self._max_message_size: int = self._config["server"]["max_message_size"]
        self._handshake_timeout: float = self._config["server"]["handshake_timeout"]
        self._welcome_message: Optional[str] = self._config["server"]["welcome_message"]
        # past this, stop reading from the socket until queued frames are handled
        self._buffer_high_water = self._max_frame_size + MAX_FRAME_HEADER_SIZE + MAX_HANDSHAKE_SIZE
        self._buffer = bytearray()
        self._buffer_write_event = asyncio.Event()
        self._buffer_read_task: Optional[asyncio.Future] = None
        self._shutdown_task: Optional[asyncio.Future] = None
        self._connection_closed_event = asyncio.Event()
        self._handshake_timer: Optional[asyncio.TimerHandle] = None
        self._fragment_opcode: Optional[Opcode] = None
        self._fragments = bytearray()
        self._reading_paused = False
        self._finalized = False
        self.state = SessionState.CONNECTING

    @property
    def peername(self):
        return self._peername

    @property
    def is_open(self) -> bool:
        return (self.state == SessionState.OPEN
                and self._transport is not None and not self._transport.is_closing())

    def _fire(self, event: SessionEvent) -> bool:
        new_state = SESSION_TRANSITIONS.get((self.state, event))
        if new_state is None:
            logging.debug(f"{self._peername} ignoring '{event.value}' while {self.state.value}")
            return False

        logging.debug(f"{self._peername} {self.state.value} -> {new_state.value} ({event.value})")
        self.state = new_state
        if new_state in (SessionState.CLOSING, SessionState.CLOSED):
            self._close_transport()
        if new_state == SessionState.CLOSED:
            self._finalize()
        return True

    def connection_made(self, transport):
        self._peername = transport.get_extra_info('peername')
        logging.debug(f"{self._peername} connection made")
        self._transport = transport
        # registered before the handshake, so stop() can reach half open connections too
        self._manager.client_connected(self, self._peername)
        self._fire(SessionEvent.ACCEPTED)
        self._handshake_timer = self._loop.call_later(self._handshake_timeout, self._on_handshake_timeout)
        self._buffer_read_task = self._loop.create_task(self._process_buffer())
        self._shutdown_task = self._loop.create_task(self.on_shutdown())

    def data_received(self, data):
        if self.state not in (SessionState.HANDSHAKING, SessionState.OPEN):
            return
        self._buffer += data
        if len(self._buffer) > self._buffer_high_water and not self._reading_paused:
            logging.debug(f"{self._peername} {len(self._buffer)} bytes queued, pausing reads")
            self._reading_paused = True
            self._transport.pause_reading()
        self._buffer_write_event.set()

    async def _process_buffer(self):
        while not self._data.shutdown_event.is_set() and not self._connection_closed_event.is_set():
            try:
                await self._buffer_write_event.wait()  # buffer has been written to
                self._buffer_write_event.clear()
                if self.state == SessionState.HANDSHAKING:
                    self._process_handshake()
                if self.state == SessionState.OPEN:
                    await self._process_frames()
            except asyncio.CancelledError:
                break

        logging.debug(f"{self._peername} stopped processing buffer")

    def _process_handshake(self):
        end = self._buffer.find(REQUEST_TERMINATOR)
        if end == -1:
            if len(self._buffer) > MAX_HANDSHAKE_SIZE:
                logging.warning(f"{self._peername} upgrade request larger than {MAX_HANDSHAKE_SIZE} bytes")
                self._fire(SessionEvent.HANDSHAKE_FAILED)
            return

        end += len(REQUEST_TERMINATOR)
        request = bytes(self._buffer[:end])
        # anything after the request is already frame data
        del self._buffer[:end]

        try:
            response = negotiate(request)
        except HandshakeError as e:
            logging.warning(f"{self._peername} handshake failed: {e}")
            self._fire(SessionEvent.HANDSHAKE_FAILED)
            return

        self._cancel_handshake_timer()
        self._transport.write(response)
        self._fire(SessionEvent.HANDSHAKE_SUCCEEDED)
        logging.info(f"{self._peername} websocket open")

        if self._welcome_message is not None:
            self._write(encode(self._welcome_message))

    def _on_handshake_timeout(self):
        self._handshake_timer = None
        if self.state == SessionState.HANDSHAKING:
            logging.warning(f"{self._peername} no upgrade request within {self._handshake_timeout}s")
            self._fire(SessionEvent.HANDSHAKE_FAILED)

    def _cancel_handshake_timer(self):
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None

    async def _process_frames(self):
        # frames of one connection are handled strictly in the order they arrived
        while self.state == SessionState.OPEN:
            try:
                header = read_header(self._buffer)
                if isinstance(header, Incomplete):
                    self._resume_reading()
                    return
                if header.payload_length > self._max_frame_size:
                    self._fail(CLOSE_MESSAGE_TOO_BIG, f"frame of {header.payload_length} bytes")
                    return
                if not header.masked:
                    self._fail(CLOSE_PROTOCOL_ERROR, "client frames must be masked")
                    return
                frame = decode_frame(self._buffer)
                if isinstance(frame, Incomplete):
                    self._resume_reading()
                    return
            except FrameDecodeError as e:
                self._fail(CLOSE_PROTOCOL_ERROR, str(e))
                return

            del self._buffer[:frame.consumed]
            self._resume_reading()
            await self._handle_frame(frame)

    def _resume_reading(self):
        if self._reading_paused and len(self._buffer) <= self._buffer_high_water:
            self._reading_paused = False
            if not self._transport.is_closing():
                logging.debug(f"{self._peername} caught up, resuming reads")
                self._transport.resume_reading()

    async def _handle_frame(self, frame):
        if frame.opcode == Opcode.CLOSE:
            self._handle_close(frame.payload)
            return
        if frame.opcode == Opcode.PING:
            self._write(encode_frame(frame.payload, Opcode.PONG))
            return
        if frame.opcode == Opcode.PONG:
            return

        if frame.opcode == Opcode.CONTINUATION:
            if self._fragment_opcode is None:
                self._fail(CLOSE_PROTOCOL_ERROR, "continuation frame without a message to continue")
                return
            self._fragments += frame.payload
        else:
            if self._fragment_opcode is not None:
                self._fail(CLOSE_PROTOCOL_ERROR, "new message started before the previous one finished")
                return
            self._fragment_opcode = frame.opcode
            self._fragments = bytearray(frame.payload)

        if len(self._fragments) > self._max_message_size:
            self._fail(CLOSE_MESSAGE_TOO_BIG, f"message of more than {self._max_message_size} bytes")
            return
        if not frame.fin:
            return

        opcode, payload = self._fragment_opcode, bytes(self._fragments)
        self._fragment_opcode = None
        self._fragments = bytearray()

        if opcode == Opcode.BINARY:
            logging.info(f"{self._peername} discarding binary message of {len(payload)} bytes")
            return

        try:
            text = decode_text(payload)
        except FrameDecodeError as e:
            self._fail(CLOSE_INVALID_PAYLOAD, str(e))
            return

        logging.debug(f"{self._peername} received {text!r}")
        try:
            await self._manager.route(self, text)
        except Exception as e:
            logging.exception(e)
            logging.warning(f"{self._peername} could not handle message")

    def _handle_close(self, payload: bytes):
        code = int.from_bytes(payload[:2], byteorder="big") if len(payload) >= 2 else None
        logging.debug(f"{self._peername} peer sent close {code=}")
        # echo the status code back, then hang up
        self._write(encode_close(code))
        self._fire(SessionEvent.PEER_CLOSED)

    def _fail(self, code: int, reason: str):
        logging.warning(f"{self._peername} closing connection: {reason}")
        if self.state == SessionState.OPEN:
            self._write(encode_close(code, reason[:MAX_CONTROL_PAYLOAD - 2]))
        self._buffer.clear()
        if not self._fire(SessionEvent.PROTOCOL_ERROR):
            self._fire(SessionEvent.HANDSHAKE_FAILED)

    def _write(self, data: bytes) -> bool:
        if self._transport is None or self._transport.is_closing():
            logging.debug(f"{self._peername} tried to write {len(data)} bytes with no connection")
            return False
        self._transport.write(data)
        return True

    async def send_text(self, payload: str) -> bool:
        if not self.is_open:
            return False
        return self._write(encode(payload))

    def close_transport(self):
        if self.is_open:
            self._write(encode_close(CLOSE_GOING_AWAY))
        if not self._fire(SessionEvent.SHUTDOWN):
            self._close_transport()

    def _close_transport(self):
        if self._transport is not None and not self._transport.is_closing():
            self._transport.close()

    def abort(self):
        if self._transport is not None:
            self._transport.abort()

    def connection_lost(self, error):
        if error is not None:
            logging.debug(f"{self._peername} connection lost: {error}")
        else:
            logging.debug(f"{self._peername} connection lost")
        self._fire(SessionEvent.CONNECTION_LOST)
        self._fire(SessionEvent.TRANSPORT_CLOSED)

    def _finalize(self):
        if self._finalized:
            return
        self._finalized = True
        self._cancel_handshake_timer()
        self._buffer.clear()
        self._fragments = bytearray()
        self._manager.client_disconnected(self)
        self._connection_closed_event.set()
        self._buffer_write_event.set()  # wake the buffer task so it can exit
        logging.debug(f"{self._peername} connection cleaned up")

    async def on_shutdown(self):
        logging.debug(f"{self._peername} awaiting shutdown")
        waiters = [
            self._loop.create_task(self._data.shutdown_event.wait()),
            self._loop.create_task(self._connection_closed_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if self._buffer_read_task is not None:
            self._buffer_read_task.cancel()
        if not self._connection_closed_event.is_set():
            logging.debug(f"{self._peername} shutting down transport")
            self.close_transport()


class RelayServer:
    def __init__(self, config, loop: asyncio.AbstractEventLoop, data: ServerState, manager: RelayManager):
        self._loop = loop
        self._config = config
        self._data = data
        self._manager = manager
        self._server: Optional[Server] = None

    def _protocol_factory(self):
        proto = RelayConnectionProtocol(
            self._loop, self._config, self._data, self._manager
        )
        return proto

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self):
        if self._server is not None:
            logging.warning("Relay server already running")
            return
        host = self._config["server"]["host"] or None
        port = int(self._config["server"]["port"])
        self._data.shutdown_event.clear()
        try:
            self._server = await self._loop.create_server(
                self._protocol_factory, host, port, start_serving=False)
        except OSError as e:
            logging.exception(e)
            logging.error(f"Could not listen on port {port}. Is another relay already running?")
            raise ServerBindError(f"could not bind to {host or '*'}:{port}") from e
        await self._server.start_serving()
        logging.info(f"Relay server listening on port {self.port}")

    async def stop(self):
        if self._server is None:
            return
        server, self._server = self._server, None
        self._data.shutdown_event.set()
        server.close()

        clients = self._data.clear()
        for client in clients:
            try:
                client.session.close_transport()
            except Exception as e:
                logging.debug(f"{client.address} error while closing: {e}")

        try:
            await asyncio.wait_for(server.wait_closed(), self._config["server"]["shutdown_timeout"])
        except asyncio.TimeoutError:
            logging.warning(f"Connections did not close in time, aborting {len(clients)} of them")
            for client in clients:
                try:
                    client.session.abort()
                except Exception as e:
                    logging.debug(f"{client.address} error while aborting: {e}")
        logging.debug("closed relay server")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
