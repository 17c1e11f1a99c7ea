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
import base64
from typing import Optional

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes

WEBSOCKET_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"
REQUEST_TERMINATOR = b"\r\n\r\n"


class HandshakeError(Exception): pass


def accept_key(key: str) -> str:
    """Derive Sec-WebSocket-Accept from the client's Sec-WebSocket-Key."""
    digest = hashes.Hash(hashes.SHA1(), backend=default_backend())
    digest.update((key.strip() + WEBSOCKET_GUID).encode("ascii"))
    return base64.b64encode(digest.finalize()).decode("ascii")


def find_websocket_key(request: str) -> Optional[str]:
    for line in request.split("\r\n"):
        name, separator, value = line.partition(":")
        if separator and name.strip().lower() == "sec-websocket-key":
            return value.strip()
    return None


def negotiate(raw_request: bytes) -> bytes:
    # latin-1 decodes any byte, only the key has to be ascii
    request = bytes(raw_request).decode("latin-1")

    key = find_websocket_key(request)
    if not key:
        raise HandshakeError("no Sec-WebSocket-Key header in upgrade request")
    if not key.isascii():
        raise HandshakeError("Sec-WebSocket-Key is not ascii")

    accept = accept_key(key)

    return (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {accept}\r\n"
        "\r\n"
    ).encode("ascii")
