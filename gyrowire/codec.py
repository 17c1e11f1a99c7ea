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

"""
RFC 6455 base framing.

    byte 0: FIN(1) RSV(3) opcode(4)
    byte 1: MASK(1) payload length(7)
    126 -> 2 more bytes of length, 127 -> 8 more bytes of length
    4 bytes mask key, if MASK is set
    payload
"""

import dataclasses
import enum
from typing import Optional, Tuple, Union


class FrameDecodeError(Exception): pass


class Opcode(enum.IntEnum):
    CONTINUATION = 0x0
    TEXT = 0x1
    BINARY = 0x2
    CLOSE = 0x8
    PING = 0x9
    PONG = 0xA

    @property
    def is_control(self) -> bool:
        return self.value >= 0x8


MAX_CONTROL_PAYLOAD = 125


@dataclasses.dataclass(frozen=True)
class Incomplete:
    """
    not enough bytes buffered yet; nothing was consumed
    """
    needed: int  # lower bound of total bytes required, as far as the header tells


@dataclasses.dataclass(frozen=True)
class FrameHeader:
    fin: bool
    opcode: Opcode
    masked: bool
    payload_length: int
    header_length: int  # base header + extended length + mask key

    @property
    def frame_length(self) -> int:
        return self.header_length + self.payload_length


@dataclasses.dataclass(frozen=True)
class Frame:
    fin: bool
    opcode: Opcode
    masked: bool
    payload: bytes  # already unmasked
    consumed: int

    def text(self) -> str:
        return decode_text(self.payload)


class _Short(Exception): pass


class FrameReader:
    """
    cursor over a receive buffer. reads past the end raise _Short, which the module functions turn into Incomplete.
    """

    def __init__(self, buffer: Union[bytes, bytearray]):
        self._buffer = buffer
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self._buffer) - self.offset

    def read(self, count: int) -> bytes:
        if count > self.remaining:
            raise _Short(self.offset + count)
        data = bytes(self._buffer[self.offset:self.offset + count])
        self.offset += count
        return data

    def read_byte(self) -> int:
        return self.read(1)[0]

    def read_uint(self, size: int) -> int:
        return int.from_bytes(self.read(size), byteorder="big")

    def read_header(self) -> FrameHeader:
        start = self.offset
        b0 = self.read_byte()
        b1 = self.read_byte()

        if b0 & 0x70:
            raise FrameDecodeError(f"reserved bits set ({b0 & 0x70:#x}); no extensions were negotiated")
        try:
            opcode = Opcode(b0 & 0x0F)
        except ValueError as e:
            raise FrameDecodeError(f"unknown opcode {b0 & 0x0F:#x}") from e
        fin = bool(b0 & 0x80)
        masked = bool(b1 & 0x80)

        payload_length = b1 & 0x7F
        if payload_length == 126:
            payload_length = self.read_uint(2)
        elif payload_length == 127:
            payload_length = self.read_uint(8)
            if payload_length >> 63:
                raise FrameDecodeError("most significant bit of 64 bit payload length is set")

        if opcode.is_control:
            if not fin:
                raise FrameDecodeError(f"fragmented control frame {opcode.name}")
            if payload_length > MAX_CONTROL_PAYLOAD:
                raise FrameDecodeError(f"control frame {opcode.name} too long ({payload_length})")

        header_length = self.offset - start + (4 if masked else 0)
        return FrameHeader(fin, opcode, masked, payload_length, header_length)

    def read_frame(self) -> Frame:
        start = self.offset
        header = self.read_header()
        mask_key = self.read(4) if header.masked else None
        payload = self.read(header.payload_length)
        if mask_key is not None:
            payload = apply_mask(payload, mask_key)
        return Frame(header.fin, header.opcode, header.masked, payload, self.offset - start)


def apply_mask(payload: bytes, mask_key: bytes) -> bytes:
    # payload[i] ^ mask_key[i % 4], done as one big integer xor
    length = len(payload)
    if length == 0:
        return b""
    repeated = (mask_key * (length // 4 + 1))[:length]
    return (int.from_bytes(payload, "big") ^ int.from_bytes(repeated, "big")).to_bytes(length, "big")


def decode_text(payload: bytes) -> str:
    try:
        return payload.decode("utf-8", errors="strict")
    except UnicodeDecodeError as e:
        raise FrameDecodeError(f"text payload is not valid utf-8: {e.reason}") from e


def read_header(buffer) -> Union[FrameHeader, Incomplete]:
    try:
        return FrameReader(buffer).read_header()
    except _Short as e:
        needed, = e.args
        return Incomplete(needed)


def decode_frame(buffer) -> Union[Frame, Incomplete]:
    try:
        return FrameReader(buffer).read_frame()
    except _Short:
        header = read_header(buffer)
        if isinstance(header, FrameHeader):
            return Incomplete(header.frame_length)
        return header


def decode(buffer) -> Union[Tuple[str, int], Incomplete]:
    frame = decode_frame(buffer)
    if isinstance(frame, Incomplete):
        return frame
    return frame.text(), frame.consumed


def frame_length(buffer) -> int:
    """
    length of the next frame if all of it is buffered, otherwise 0
    """
    header = read_header(buffer)
    if isinstance(header, Incomplete) or header.frame_length > len(buffer):
        return 0
    return header.frame_length


def encode_frame(payload: bytes, opcode: Opcode = Opcode.TEXT, fin: bool = True,
                 mask_key: Optional[bytes] = None) -> bytes:
    frame = bytearray()
    frame.append((0x80 if fin else 0x00) | opcode)

    mask_bit = 0x80 if mask_key is not None else 0x00
    length = len(payload)
    if length < 126:
        frame.append(mask_bit | length)
    elif length <= 0xFFFF:
        frame.append(mask_bit | 126)
        frame += length.to_bytes(2, byteorder="big")
    else:
        frame.append(mask_bit | 127)
        frame += length.to_bytes(8, byteorder="big")

    if mask_key is not None:
        if len(mask_key) != 4:
            raise ValueError("mask key must be 4 bytes")
        frame += mask_key
        payload = apply_mask(payload, mask_key)

    frame += payload
    return bytes(frame)


def encode(payload: str) -> bytes:
    return encode_frame(payload.encode("utf-8"), Opcode.TEXT)


def encode_close(code: Optional[int] = None, reason: str = "") -> bytes:
    body = b""
    if code is not None:
        body = code.to_bytes(2, byteorder="big") + reason.encode("utf-8")
    return encode_frame(body[:MAX_CONTROL_PAYLOAD], Opcode.CLOSE)
