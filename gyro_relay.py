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
import logging
import os

from config import Config, ConfigurationLoadError
from logger import setup_logging
from mdns_registration import RelayZeroconf, ZeroconfException
from relay_manager import RelayManager
from relay_server import RelayServer, ServerBindError
from server_data import ServerState


class GyroRelay:

    def __init__(self, config, loop: asyncio.AbstractEventLoop):
        self._config = config
        self._loop = loop
        self.data = ServerState()
        self.manager = RelayManager(self._config, self.data)
        self.server = RelayServer(self._config, self._loop, self.data, self.manager)
        self._mdns = RelayZeroconf(self._config)

    async def begin(self):
        logging.info("Starting Gyro Relay Server")
        async with self.server:
            await self._mdns.start(self.server.port)
            try:
                logging.info(f"Phones connect to ws://<this machine>:{self.server.port}")
                logging.info("Ctrl^C to quit")
                await self.data.shutdown_event.wait()
            except asyncio.CancelledError:
                logging.info("Cancelled ...")
            finally:
                logging.info("Stopping Server ...")
                await self._mdns.stop()


async def main():
    logging.info("Starting gyro relay ...")

    config = Config(os.environ.get("GYRO_RELAY_CONFIG", "./config.toml"))
    loop = asyncio.get_running_loop()

    try:
        await config.initialize()

        gyro_relay = GyroRelay(config.config, loop)
        await gyro_relay.begin()
    except ConfigurationLoadError:
        logging.error("Could not load configuration. Exiting")
        return
    except ServerBindError:
        logging.error("Could not start the relay server. Exiting")
        return
    except ZeroconfException:
        logging.error("Could not advertise the relay over mDNS. Exiting")
        return
    finally:
        await config.close()


def run():
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Stopped.")


if __name__ == "__main__":
    run()
