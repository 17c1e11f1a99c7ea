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
import dataclasses
import enum
import threading
import time
from typing import Optional, List, Tuple

from messages import DirectionEvent, GyroEvent


class ClientRole(str, enum.Enum):
    PRIMARY = "primary"  # the game, receives forwarded gyro packets
    SECONDARY = "secondary"  # phones and browsers
    UNCLASSIFIED = "unclassified"


@dataclasses.dataclass
class ConnectedClient:
    session: asyncio.Protocol
    address: Optional[Tuple]
    role: ClientRole = ClientRole.UNCLASSIFIED
    connected_at: float = dataclasses.field(default_factory=time.monotonic)


class ServerState:
    """
    Shared between the listener, every session, and the game side, which may read last known values from another
    thread. Everything goes through the lock.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._clients: dict[asyncio.Protocol, ConnectedClient] = dict()
        self._primary: Optional[ConnectedClient] = None
        self._last_direction: Optional[DirectionEvent] = None
        self._last_gyro: Optional[GyroEvent] = None

        self.shutdown_event = asyncio.Event()

    def add_client(self, session: asyncio.Protocol, address: Optional[Tuple]) -> ConnectedClient:
        with self._lock:
            client = ConnectedClient(session, address)
            self._clients[session] = client
            return client

    def remove_client(self, session: asyncio.Protocol) -> Optional[ConnectedClient]:
        with self._lock:
            client = self._clients.pop(session, None)
            if self._primary is not None and self._primary.session is session:
                self._primary = None
            return client

    def get_client(self, session: asyncio.Protocol) -> Optional[ConnectedClient]:
        with self._lock:
            return self._clients.get(session)

    def clients(self, role: Optional[ClientRole] = None) -> List[ConnectedClient]:
        with self._lock:
            return [client for client in self._clients.values() if role is None or client.role == role]

    def __len__(self):
        with self._lock:
            return len(self._clients)

    def classify(self, session: asyncio.Protocol, role: ClientRole) -> bool:
        """
        Returns False if the session is not registered.
        """
        with self._lock:
            client = self._clients.get(session)
            if client is None:
                return False
            if role == ClientRole.PRIMARY:
                self._set_primary(client)
            else:
                if self._primary is client:
                    self._primary = None
                client.role = role
            return True

    def _set_primary(self, client: ConnectedClient) -> None:
        previous = self._primary
        if previous is not None and previous is not client:
            previous.role = ClientRole.UNCLASSIFIED
        client.role = ClientRole.PRIMARY
        self._primary = client

    def get_primary(self) -> Optional[ConnectedClient]:
        with self._lock:
            return self._primary

    @property
    def last_direction(self) -> Optional[DirectionEvent]:
        with self._lock:
            return self._last_direction

    @last_direction.setter
    def last_direction(self, event: DirectionEvent):
        with self._lock:
            self._last_direction = event

    @property
    def last_gyro(self) -> Optional[GyroEvent]:
        with self._lock:
            return self._last_gyro

    @last_gyro.setter
    def last_gyro(self, event: GyroEvent):
        with self._lock:
            self._last_gyro = event

    def clear(self) -> List[ConnectedClient]:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
            self._primary = None
            return clients
