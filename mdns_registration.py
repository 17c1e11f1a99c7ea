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

import logging
import socket
from typing import Optional

import zeroconf
from zeroconf import IPVersion
from zeroconf.asyncio import AsyncZeroconf, AsyncServiceInfo

SERVICE_TYPE = "_gyro-relay._tcp.local."


class ZeroconfException(Exception): pass


def guess_local_address() -> str:
    # connecting a udp socket sends nothing, but picks the interface used for the default route
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        try:
            probe.connect(("10.255.255.255", 1))
            return probe.getsockname()[0]
        except OSError:
            return "127.0.0.1"


class RelayZeroconf:
    """
    Advertises the relay so phones on the same network can find it without typing an address.
    Does nothing unless [mdns] enabled = true.
    """
    _service: Optional[AsyncServiceInfo] = None

    def __init__(self, config):
        self._config = config
        self._zeroconf: Optional[AsyncZeroconf] = None

    @property
    def enabled(self) -> bool:
        return bool(self._config["mdns"]["enabled"])

    def build_service(self, port: int) -> AsyncServiceInfo:
        name = self._config["mdns"]["name"]
        address = self._config["mdns"]["address"] or guess_local_address()
        return AsyncServiceInfo(
            SERVICE_TYPE,
            f"{name}.{SERVICE_TYPE}",
            addresses=[socket.inet_aton(address)],
            port=port,
            properties={
                "path": "/",
                "marker": self._config["relay"]["primary_marker"],
            },
            server=f"{name}.local."
        )

    async def start(self, port: int):
        if not self.enabled:
            logging.debug("mDNS disabled")
            return
        try:
            self._zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)
            self._service = self.build_service(port)
            await self._zeroconf.async_register_service(self._service)
            logging.info(f"Advertising {self._service.name} on port {port}")
        except zeroconf.Error as e:
            logging.exception(e)
            raise ZeroconfException() from e

    async def stop(self):
        if self._zeroconf is None:
            return
        await self._zeroconf.async_unregister_all_services()
        await self._zeroconf.async_close()
        self._zeroconf = None
        self._service = None
        logging.debug(f"Unregistered services.")
