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

"""
Stand-ins for the two ends of the relay, for trying it out without a phone or the game:

    python phone_simulator.py gyro ws://localhost:8080
    python phone_simulator.py direction ws://localhost:8080 up left stop
    python phone_simulator.py game ws://localhost:8080
"""

import argparse
import asyncio
import json
import logging
import math
import time
from typing import Callable, Iterable, Iterator, List, Optional

import websockets
import websockets.exceptions

from logger import setup_logging
from messages import DEFAULT_PRIMARY_MARKER


def gyro_samples(count: int, step: float = 0.05) -> Iterator[dict]:
    """Slowly rocking phone: alpha turns, beta and gamma swing back and forth."""
    for i in range(count):
        t = i * step
        yield {
            "alpha": round((t * 30.0) % 360.0, 2),
            "beta": round(45.0 * math.sin(t), 2),
            "gamma": round(30.0 * math.cos(t * 0.7), 2),
            "timestamp": int(time.time() * 1000),
        }


async def send_gyro(uri: str, samples: Iterable[dict], interval: float = 0.05) -> int:
    sent = 0
    async with websockets.connect(uri) as websocket:
        for sample in samples:
            await websocket.send(json.dumps(sample))
            sent += 1
            if interval:
                await asyncio.sleep(interval)
    logging.info(f"Sent {sent} gyro packets to {uri}")
    return sent


async def send_directions(uri: str, directions: Iterable[str], ack_timeout: float = 2.0) -> List[Optional[dict]]:
    """
    Send each direction and wait for its ack. Rejected directions get no ack, they show up as None.
    """
    acks = []
    async with websockets.connect(uri) as websocket:
        for direction in directions:
            await websocket.send(json.dumps({
                "Direction": direction,
                "Timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            }))
            try:
                reply = await asyncio.wait_for(websocket.recv(), ack_timeout)
                acks.append(json.loads(reply))
                logging.info(f"{direction}: {reply}")
            except asyncio.TimeoutError:
                acks.append(None)
                logging.warning(f"{direction}: no ack")
    return acks


async def run_game(uri: str, on_packet: Callable[[str], None], stop_event: asyncio.Event,
                   registered: Optional[asyncio.Event] = None, marker: str = DEFAULT_PRIMARY_MARKER) -> None:
    """
    Register as the primary client and hand every forwarded packet to on_packet until stop_event is set.
    """
    async with websockets.connect(uri) as websocket:
        await websocket.send(marker)
        reply = json.loads(await websocket.recv())
        logging.info(f"Registered: {reply.get('message')}")
        if registered is not None:
            registered.set()

        stop_task = asyncio.create_task(stop_event.wait())
        try:
            while not stop_event.is_set():
                recv_task = asyncio.create_task(websocket.recv())
                done, _ = await asyncio.wait([recv_task, stop_task], return_when=asyncio.FIRST_COMPLETED)
                if recv_task not in done:
                    recv_task.cancel()
                    break
                on_packet(recv_task.result())
        except websockets.exceptions.ConnectionClosed:
            logging.info("Relay closed the connection")
        finally:
            stop_task.cancel()


async def main(args: argparse.Namespace):
    if args.mode == "gyro":
        await send_gyro(args.uri, gyro_samples(args.count), args.interval)
    elif args.mode == "direction":
        await send_directions(args.uri, args.directions or ["up", "right", "down", "left", "stop"])
    else:
        await run_game(args.uri, lambda packet: logging.info(packet), asyncio.Event())


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Pretend to be a phone or the game")
    parser.add_argument("mode", choices=("gyro", "direction", "game"))
    parser.add_argument("uri", nargs="?", default="ws://localhost:8080")
    parser.add_argument("directions", nargs="*")
    parser.add_argument("--count", type=int, default=200)
    parser.add_argument("--interval", type=float, default=0.05)

    setup_logging()
    try:
        asyncio.run(main(parser.parse_args()))
    except KeyboardInterrupt:
        pass
