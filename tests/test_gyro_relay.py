"""Tests for the application entry point."""

import asyncio

import gyro_relay
from gyro_relay import GyroRelay
from helpers import connect_raw, make_config, wait_until


def test_runs_until_shutdown():
    async def run():
        relay = GyroRelay(make_config(host="127.0.0.1", port=0), asyncio.get_running_loop())
        task = asyncio.create_task(relay.begin())
        await wait_until(lambda: relay.server.port is not None)
        reader, writer, response = await connect_raw(relay.server.port)
        relay.data.shutdown_event.set()
        await asyncio.wait_for(task, 5)
        writer.close()
        return response, relay.server.running, len(relay.data)

    response, running, clients = asyncio.run(run())

    assert response.startswith("HTTP/1.1 101")
    assert running is False
    assert clients == 0


def test_main_exits_on_bad_config(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text("[server]\nport = -1\n")
    monkeypatch.setenv("GYRO_RELAY_CONFIG", str(path))

    asyncio.run(gyro_relay.main())

    assert path.read_text() == "[server]\nport = -1\n"
