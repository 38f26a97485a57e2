"""Tests for the frontend-side heartbeat sender."""

import asyncio
from unittest.mock import Mock

import pytest

from sidecar_heartbeat.channel import HeartbeatChannel
from sidecar_heartbeat.client import HeartbeatSender, wait_for_endpoint


@pytest.mark.integration
class TestWaitForEndpoint:

    @pytest.mark.asyncio
    async def test_false_when_nothing_listens(self, socket_path):
        assert await wait_for_endpoint(socket_path, timeout=0.1, poll_interval=0.02) is False

    @pytest.mark.asyncio
    async def test_true_once_channel_is_up(self, socket_path):
        channel = HeartbeatChannel(socket_path, Mock(), accept_timeout=0.05)

        async def start_later():
            await asyncio.sleep(0.1)
            await channel.start()

        starter = asyncio.create_task(start_later())
        assert await wait_for_endpoint(socket_path, timeout=2.0, poll_interval=0.02) is True

        await starter
        await channel.close()


@pytest.mark.integration
class TestHeartbeatSender:

    def test_payload_required(self, socket_path):
        with pytest.raises(ValueError):
            HeartbeatSender(socket_path, payload=b"")

    @pytest.mark.asyncio
    async def test_send_reaches_channel(self, socket_path):
        on_heartbeat = Mock()
        channel = HeartbeatChannel(socket_path, on_heartbeat, accept_timeout=0.05)
        await channel.start()

        sender = HeartbeatSender(socket_path, interval=0.02)
        await sender.send()
        assert sender.connected

        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while on_heartbeat.call_count < 1 and loop.time() < deadline:
            await asyncio.sleep(0.01)
        assert on_heartbeat.call_count >= 1

        await sender.close()
        assert not sender.connected
        await channel.close()

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, socket_path):
        channel = HeartbeatChannel(socket_path, Mock(), accept_timeout=0.05)
        await channel.start()

        stop = asyncio.Event()
        sender = HeartbeatSender(socket_path, interval=0.02)
        task = asyncio.create_task(sender.run(stop))

        await asyncio.sleep(0.2)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert sender.sent >= 3
        assert not sender.connected
        await channel.close()

    @pytest.mark.asyncio
    async def test_run_waits_out_a_missing_sidecar(self, socket_path):
        on_heartbeat = Mock()
        stop = asyncio.Event()
        sender = HeartbeatSender(socket_path, interval=0.01, connect_attempts=2)
        task = asyncio.create_task(sender.run(stop))

        await asyncio.sleep(0.3)
        assert not task.done()
        assert sender.sent == 0

        channel = HeartbeatChannel(socket_path, on_heartbeat, accept_timeout=0.05)
        await channel.start()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while on_heartbeat.call_count < 1 and loop.time() < deadline:
            await asyncio.sleep(0.01)
        assert on_heartbeat.call_count >= 1

        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        await channel.close()

    @pytest.mark.asyncio
    async def test_connect_gives_up(self, socket_path):
        sender = HeartbeatSender(socket_path, interval=0.01, connect_attempts=2)

        with pytest.raises(OSError):
            await sender.connect()
