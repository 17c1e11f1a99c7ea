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

import dataclasses
import enum
import json
from typing import Optional, Union

import voluptuous
import voluptuous.error
from voluptuous import Schema, Required, All, Coerce, ALLOW_EXTRA

DEFAULT_PRIMARY_MARKER = "UNITY_INIT"


class Direction(str, enum.Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"
    STOP = "stop"


@dataclasses.dataclass(frozen=True)
class DirectionEvent:
    direction: Direction
    timestamp: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class GyroEvent:
    alpha: float
    beta: float
    gamma: float
    timestamp: Optional[Union[str, int, float]] = None
    raw: str = ""  # payload exactly as received, forwarded as is


@dataclasses.dataclass(frozen=True)
class Unrecognized:
    reason: str


def number(value) -> float:
    # bool is an int subclass, but "alpha": true is not an angle
    if isinstance(value, bool):
        raise voluptuous.Invalid("expected a number, got a boolean")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as e:
            raise voluptuous.Invalid(f"{value!r} is not numeric") from e
    raise voluptuous.Invalid(f"expected a number, got {type(value).__name__}")


def raw_timestamp(value) -> Optional[Union[str, int, float]]:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    raise voluptuous.Invalid(f"timestamp must be a string or a number, got {type(value).__name__}")


def text_timestamp(value) -> Optional[str]:
    value = raw_timestamp(value)
    return value if value is None or isinstance(value, str) else str(value)


direction_schema = Schema({
    Required('Direction'): All(str, Coerce(Direction)),
    voluptuous.Optional('Timestamp', default=None): text_timestamp,
}, extra=ALLOW_EXTRA)

gyro_schema = Schema({
    Required('alpha'): number,
    Required('beta'): number,
    Required('gamma'): number,
    voluptuous.Optional('timestamp', default=None): raw_timestamp,
}, extra=ALLOW_EXTRA)


def is_primary_marker(payload: str, marker: str = DEFAULT_PRIMARY_MARKER) -> bool:
    return marker in payload


def decode_message(payload: str) -> Union[DirectionEvent, GyroEvent, Unrecognized]:
    """
    Try each known payload shape in order: direction first, then gyro.
    """
    try:
        packet = json.loads(payload)
    except ValueError as e:
        return Unrecognized(f"not json ({e})")

    if not isinstance(packet, dict):
        return Unrecognized(f"json {type(packet).__name__} is not an object")

    problems = []
    try:
        valid = direction_schema(packet)
        return DirectionEvent(valid['Direction'], valid['Timestamp'])
    except voluptuous.error.MultipleInvalid as e:
        problems.append(f"direction: {e}")

    try:
        valid = gyro_schema(packet)
        return GyroEvent(valid['alpha'], valid['beta'], valid['gamma'], valid['timestamp'], payload)
    except voluptuous.error.MultipleInvalid as e:
        problems.append(f"gyro: {e}")

    return Unrecognized("; ".join(problems))


def _dumps(packet: dict) -> str:
    return json.dumps(packet, separators=(",", ":"))


def ack_message(direction: Direction) -> str:
    return _dumps({"type": "ack", "direction": direction.value})


def registered_message() -> str:
    return _dumps({"type": "connected", "message": "Unity Client registered successfully"})
