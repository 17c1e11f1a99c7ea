"""End to end tests with a real websocket client on both ends of the relay."""

import asyncio
import json

from helpers import make_config, wait_until
from phone_simulator import gyro_samples, run_game, send_directions, send_gyro
from relay_manager import RelayManager
from relay_server import RelayServer
from server_data import ServerState


async def start_server():
    config = make_config(host="127.0.0.1", port=0)
    data = ServerState()
    server = RelayServer(config, asyncio.get_running_loop(), data, RelayManager(config, data))
    await server.start()
    return server, data, f"ws://127.0.0.1:{server.port}"


def test_gyro_samples():
    samples = list(gyro_samples(5))
    assert len(samples) == 5
    assert all(set(sample) == {"alpha", "beta", "gamma", "timestamp"} for sample in samples)


def test_directions_are_acked():
    async def run():
        server, data, uri = await start_server()
        try:
            return await send_directions(uri, ["up", "sideways", "stop"], ack_timeout=0.3)
        finally:
            await server.stop()

    assert asyncio.run(run()) == [
        {"type": "ack", "direction": "up"},
        None,
        {"type": "ack", "direction": "stop"},
    ]


def test_game_receives_phone_gyro_in_order():
    samples = list(gyro_samples(20))

    async def run():
        server, data, uri = await start_server()
        packets = []
        stop = asyncio.Event()
        registered = asyncio.Event()
        game = asyncio.create_task(run_game(uri, packets.append, stop, registered))
        try:
            await asyncio.wait_for(registered.wait(), 2)
            sent = await send_gyro(uri, samples, interval=0)
            await wait_until(lambda: len(packets) == sent)
            stop.set()
            await asyncio.wait_for(game, 2)
        finally:
            await server.stop()
        return packets, data.last_gyro

    packets, last_gyro = asyncio.run(run())

    assert packets == [json.dumps(sample) for sample in samples]
    assert last_gyro.alpha == samples[-1]["alpha"]


def test_game_sees_relay_shutdown():
    async def run():
        server, data, uri = await start_server()
        stop = asyncio.Event()
        registered = asyncio.Event()
        game = asyncio.create_task(run_game(uri, lambda packet: None, stop, registered))
        await asyncio.wait_for(registered.wait(), 2)
        await server.stop()
        await asyncio.wait_for(game, 2)
        return game.done(), stop.is_set()

    assert asyncio.run(run()) == (True, False)
