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
import os
import logging
from rich.console import Console
from rich.logging import RichHandler
from rich.traceback import install

# keep library frames out of tracebacks
import tomlkit, voluptuous, websockets

console = Console()


def setup_logging(level: str = None):
    FORMAT = "%(message)s"
    logging_handler = RichHandler(
        level=level or os.environ.get("LOGLEVEL", "INFO"),
        console=console,
        rich_tracebacks=True,
        tracebacks_suppress=[tomlkit, voluptuous, websockets]
    )

    logging.basicConfig(
        level="NOTSET", format=FORMAT, datefmt="[%X]", handlers=[logging_handler]
    )

    # websockets is chatty at debug level; only the simulator uses it
    logging.getLogger("websockets").setLevel(logging.INFO)

    install(
        console=console
    )
