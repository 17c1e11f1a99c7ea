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

import inspect
import logging
from typing import Callable, List, Optional, Tuple, Union

from messages import (
    DirectionEvent,
    GyroEvent,
    ack_message,
    decode_message,
    is_primary_marker,
    registered_message,
)
from server_data import ServerState, ClientRole, ConnectedClient

RelayEvent = Union[DirectionEvent, GyroEvent]


class RelayManager:
    """
    Decides what happens to every text message a session receives. Sessions own their sockets; this only looks up
    who to write to.
    """
    def __init__(self, config, data: ServerState):
        self._config = config
        self._data = data
        self._primary_marker = self._config["relay"]["primary_marker"]
        self._subscribers: List[Callable] = []

    def subscribe(self, callback: Callable[[RelayEvent], object]) -> Callable[[], None]:
        """
        Callbacks get every accepted DirectionEvent and GyroEvent. Coroutine functions are awaited.
        Returns a function that removes the callback again.
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _notify(self, event: RelayEvent) -> None:
        for callback in self._subscribers[:]:
            try:
                if inspect.iscoroutinefunction(callback):
                    await callback(event)
                else:
                    callback(event)
            except Exception as e:
                logging.exception(e)
                logging.warning(f"Subscriber {callback!r} failed handling {type(event).__name__}")

    def client_connected(self, session, address: Optional[Tuple]) -> ConnectedClient:
        client = self._data.add_client(session, address)
        logging.debug(f"{address} registered, {len(self._data)} client(s) connected")
        return client

    def client_disconnected(self, session) -> None:
        client = self._data.remove_client(session)
        if client is None:
            return
        if client.role == ClientRole.PRIMARY:
            logging.info(f"{client.address} primary client disconnected")
        logging.debug(f"{client.address} removed, {len(self._data)} client(s) connected")

    async def route(self, session, payload: str) -> None:
        if is_primary_marker(payload, self._primary_marker):
            await self.register_primary(session)
            return

        message = decode_message(payload)
        if isinstance(message, DirectionEvent):
            await self._handle_direction(session, message)
        elif isinstance(message, GyroEvent):
            await self._handle_gyro(session, message)
        else:
            logging.info(f"{session.peername} discarded message: {message.reason}")

    async def register_primary(self, session) -> None:
        previous = self._data.get_primary()
        if not self._data.classify(session, ClientRole.PRIMARY):
            logging.warning(f"{session.peername} tried to register as primary while not connected")
            return
        if previous is not None and previous.session is not session:
            logging.info(f"{session.peername} replaces {previous.address} as primary client")
        else:
            logging.info(f"{session.peername} registered as primary client")
        await session.send_text(registered_message())

    def _classify_secondary(self, session) -> None:
        client = self._data.get_client(session)
        if client is not None and client.role == ClientRole.UNCLASSIFIED:
            self._data.classify(session, ClientRole.SECONDARY)
            logging.info(f"{session.peername} registered as secondary client")

    async def _handle_direction(self, session, event: DirectionEvent) -> None:
        logging.debug(f"{session.peername} direction {event.direction.value}")
        self._data.last_direction = event
        self._classify_secondary(session)
        await self._notify(event)
        await session.send_text(ack_message(event.direction))

    async def _handle_gyro(self, session, event: GyroEvent) -> None:
        logging.debug(f"{session.peername} gyro alpha={event.alpha:.2f} beta={event.beta:.2f} gamma={event.gamma:.2f}")
        self._data.last_gyro = event
        self._classify_secondary(session)
        await self._notify(event)

        primary = self._data.get_primary()
        if primary is None:
            logging.debug(f"{session.peername} no primary client, gyro data not forwarded")
            return
        if primary.session is session:
            return
        # raw payload, so field order and precision reach the game untouched
        if not await primary.session.send_text(event.raw):
            logging.debug(f"{primary.address} primary client is not open, gyro data not forwarded")

    async def send_to_role(self, role: ClientRole, payload: str) -> int:
        """
        Write a text message to every open client with the given role. Returns how many were written.
        """
        sent = 0
        for client in self._data.clients(role):
            if await client.session.send_text(payload):
                sent += 1
        return sent

    async def send_to_primary(self, payload: str) -> bool:
        return await self.send_to_role(ClientRole.PRIMARY, payload) > 0
