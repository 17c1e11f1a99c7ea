"""Tests for the mDNS advertisement."""

import asyncio
import socket
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import zeroconf

from config import load_defaults
from mdns_registration import SERVICE_TYPE, RelayZeroconf, ZeroconfException


def mdns_config(**mdns):
    config = load_defaults()
    config["mdns"].update(mdns)
    return config


class TestRelayZeroconf:
    def test_disabled_does_nothing(self):
        with patch("mdns_registration.AsyncZeroconf") as async_zeroconf:
            relay_zeroconf = RelayZeroconf(mdns_config())
            asyncio.run(relay_zeroconf.start(8080))
            asyncio.run(relay_zeroconf.stop())
        async_zeroconf.assert_not_called()

    def test_service_info(self):
        relay_zeroconf = RelayZeroconf(mdns_config(enabled=True, name="Lounge", address="192.168.1.35"))
        info = relay_zeroconf.build_service(8080)
        assert info.type == SERVICE_TYPE
        assert info.name == f"Lounge.{SERVICE_TYPE}"
        assert info.port == 8080
        assert info.addresses == [socket.inet_aton("192.168.1.35")]
        assert info.properties[b"marker"] == b"UNITY_INIT"

    def test_register_and_unregister(self):
        instance = MagicMock()
        instance.async_register_service = AsyncMock()
        instance.async_unregister_all_services = AsyncMock()
        instance.async_close = AsyncMock()

        with patch("mdns_registration.AsyncZeroconf", return_value=instance):
            relay_zeroconf = RelayZeroconf(mdns_config(enabled=True, address="192.168.1.35"))
            asyncio.run(relay_zeroconf.start(8080))

            instance.async_register_service.assert_awaited_once()
            service = instance.async_register_service.await_args.args[0]
            assert service.port == 8080

            asyncio.run(relay_zeroconf.stop())
            asyncio.run(relay_zeroconf.stop())

        instance.async_unregister_all_services.assert_awaited_once()
        instance.async_close.assert_awaited_once()

    def test_registration_failure(self):
        instance = MagicMock()
        instance.async_register_service = AsyncMock(side_effect=zeroconf.NonUniqueNameException())

        with patch("mdns_registration.AsyncZeroconf", return_value=instance):
            relay_zeroconf = RelayZeroconf(mdns_config(enabled=True, address="192.168.1.35"))
            with pytest.raises(ZeroconfException):
                asyncio.run(relay_zeroconf.start(8080))
