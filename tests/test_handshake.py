"""Tests for the HTTP upgrade handshake."""

import pytest

from gyrowire.handshake import HandshakeError, accept_key, find_websocket_key, negotiate
from helpers import SAMPLE_ACCEPT, SAMPLE_KEY, handshake_request


class TestAcceptKey:
    def test_rfc_sample(self):
        assert accept_key(SAMPLE_KEY) == SAMPLE_ACCEPT

    def test_surrounding_whitespace_is_ignored(self):
        assert accept_key(f"  {SAMPLE_KEY}\t") == SAMPLE_ACCEPT


class TestNegotiate:
    def test_response(self):
        response = negotiate(handshake_request())
        assert response == (
            b"HTTP/1.1 101 Switching Protocols\r\n"
            b"Upgrade: websocket\r\n"
            b"Connection: Upgrade\r\n"
            b"Sec-WebSocket-Accept: " + SAMPLE_ACCEPT.encode() + b"\r\n"
            b"\r\n"
        )

    def test_no_subprotocol_header(self):
        assert b"Sec-WebSocket-Protocol" not in negotiate(handshake_request())

    def test_header_name_is_case_insensitive(self):
        request = handshake_request().replace(b"Sec-WebSocket-Key", b"sec-websocket-KEY")
        assert SAMPLE_ACCEPT.encode() in negotiate(request)

    def test_missing_key(self):
        request = b"GET / HTTP/1.1\r\nHost: localhost\r\nUpgrade: websocket\r\n\r\n"
        with pytest.raises(HandshakeError):
            negotiate(request)

    def test_empty_key(self):
        with pytest.raises(HandshakeError):
            negotiate(b"GET / HTTP/1.1\r\nSec-WebSocket-Key:   \r\n\r\n")

    def test_non_ascii_key(self):
        with pytest.raises(HandshakeError):
            negotiate("GET / HTTP/1.1\r\nSec-WebSocket-Key: ключ\r\n\r\n".encode("utf-8"))

    def test_non_ascii_in_other_headers(self):
        request = handshake_request().replace(b"Host: localhost:8080", "User-Agent: Télé\u2122".encode("utf-8"))
        assert SAMPLE_ACCEPT.encode() in negotiate(request)


def test_find_websocket_key_ignores_other_headers():
    request = "GET / HTTP/1.1\r\nX-Sec-WebSocket-Key-Hint: nope\r\nSec-WebSocket-Key: abc\r\n\r\n"
    assert find_websocket_key(request) == "abc"
    assert find_websocket_key("GET / HTTP/1.1\r\n\r\n") is None
