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

import ipaddress
import logging
from pathlib import Path
from typing import Optional

import aiofiles
import tomlkit
import tomlkit.exceptions
import voluptuous.error
from voluptuous import Schema, Required, Optional as Opt, Any, All, Range, Length, Coerce

from messages import DEFAULT_PRIMARY_MARKER

DEFAULT_PORT = 8080


class ConfigurationLoadError(Exception): pass


def ip_address_validator(address: str) -> str:
    try:
        ipaddress.IPv4Address(address)
    except ipaddress.AddressValueError as e:
        raise voluptuous.error.Invalid(message="Invalid IPv4 address.") from e
    return address


config_schema = Schema({
    Opt('server', default={}): {
        Opt('host', default=""): str,
        Opt('port', default=DEFAULT_PORT): All(int, Range(min=0, max=65535)),
        Opt('max_frame_size', default=1024 * 1024): All(int, Range(min=125)),
        Opt('max_message_size', default=1024 * 1024): All(int, Range(min=125)),
        Opt('handshake_timeout', default=10.0): All(Coerce(float), Range(min=0, min_included=False)),
        Opt('shutdown_timeout', default=5.0): All(Coerce(float), Range(min=0)),
        Opt('welcome_message', default=None): Any(None, All(str, Length(min=1))),
    },
    Opt('relay', default={}): {
        Opt('primary_marker', default=DEFAULT_PRIMARY_MARKER): All(str, Length(min=1)),
    },
    Opt('mdns', default={}): {
        Opt('enabled', default=False): bool,
        Opt('name', default="GyroRelay"): All(str, Length(min=1, max=63)),
        Opt('address', default=None): Any(None, ip_address_validator),
    },
})


def default_config() -> dict:
    return config_schema({})


class Config:
    config: dict
    document: tomlkit.TOMLDocument
    created: bool = False

    def __init__(self, config_location: Path):
        self.config_location = Path(config_location)

    async def initialize(self):
        try:
            async with aiofiles.open(self.config_location, 'r') as config_file:
                file_data = await config_file.read()
                self.document = tomlkit.parse(file_data)
                logging.debug("Loaded Configuration without toml format error")
                logging.debug("Validating against Schema.")
                self.config = config_schema(self.document.unwrap())
                logging.debug("Validated against Schema.")
        except FileNotFoundError:
            logging.warning(f"Could not find {self.config_location}, using defaults. "
                            f"They will be written to {self.config_location} on exit.")
            self.config = default_config()
            self.document = self._default_document()
            self.created = True
        except IOError as e:
            logging.exception(e)
            logging.warning(f"Could not open file {self.config_location}")
            raise ConfigurationLoadError() from e
        except tomlkit.exceptions.ParseError as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} is invalid")
            raise ConfigurationLoadError() from e
        except voluptuous.error.MultipleInvalid as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} does not match expected format")
            logging.warning(f"Issue configuration item: {e.path}")
            raise ConfigurationLoadError() from e

        logging.info(f"Configuration loaded.")

    @staticmethod
    def _default_document() -> tomlkit.TOMLDocument:
        defaults = default_config()
        document = tomlkit.document()
        document.add(tomlkit.comment("GyroRelay configuration"))
        for section, values in defaults.items():
            table = tomlkit.table()
            for key, value in values.items():
                if value is None:
                    continue  # toml has no null; leaving the key out means the default
                table.add(key, value)
            document.add(section, table)
        return document

    async def close(self):
        if self.created is True:
            async with aiofiles.open(self.config_location, 'w') as config_file:
                await config_file.write(tomlkit.dumps(self.document))
            logging.info(f"Default configuration written to {self.config_location}.")


def load_defaults(port: Optional[int] = None) -> dict:
    config = default_config()
    if port is not None:
        config['server']['port'] = port
    return config
