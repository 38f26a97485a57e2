"""End-to-end tests for the sidecar service."""

import asyncio
import logging
import signal
import socket
from unittest.mock import Mock

import pytest

from sidecar_heartbeat.channel import EndpointBindError
from sidecar_heartbeat.client import HeartbeatSender
from sidecar_heartbeat.main import SidecarService
from sidecar_heartbeat.shutdown import ShutdownState
from sidecar_heartbeat.tracker import ShutdownReason


@pytest.mark.integration
class TestSidecarService:

    @pytest.mark.asyncio
    async def test_steady_heartbeats_then_silence(self, test_settings, caplog):
        """80ms heartbeats for 2s keep it alive; silence then shuts it down once."""
        exit_callback = Mock()
        service = SidecarService(test_settings, exit_callback=exit_callback)
        await service.start()
        path = service.endpoint_path
        assert path.exists()

        stop = asyncio.Event()
        sender = HeartbeatSender(path, interval=0.08)
        sending = asyncio.create_task(sender.run(stop))

        await asyncio.sleep(2.0)
        assert service.coordinator.state is ShutdownState.AWAITING_HEARTBEATS
        assert service.tracker.state.heartbeats >= 15

        with caplog.at_level(logging.INFO, logger="sidecar_heartbeat"):
            stop.set()
            await sending
            code = await asyncio.wait_for(service.coordinator.wait_terminated(), timeout=2.0)

        assert code == 0
        assert service.coordinator.reason is ShutdownReason.TIMEOUT
        exit_callback.assert_called_once_with(0)
        assert not path.exists()

        messages = [r.getMessage() for r in caplog.records]
        assert sum("Heartbeat timeout detected" in m for m in messages) == 1
        assert sum("Shutdown sequence begun" in m for m in messages) == 1
        assert sum("Process terminating" in m for m in messages) == 1

    @pytest.mark.asyncio
    async def test_run_returns_success_status(self, test_settings):
        service = SidecarService(test_settings)

        code = await asyncio.wait_for(service.run(), timeout=2.0)

        assert code == 0
        assert not service.endpoint_path.exists()
        assert not service.tracker.running

    @pytest.mark.asyncio
    async def test_stale_socket_is_replaced(self, test_settings):
        path = test_settings.endpoint_path
        leftover = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        leftover.bind(str(path))
        leftover.close()

        service = SidecarService(test_settings)
        await service.start()

        assert service.channel.listening
        service.request_exit("test over")
        await service.coordinator.wait_terminated()
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_bind_failure_is_fatal(self, test_settings):
        test_settings.endpoint_path.mkdir()
        service = SidecarService(test_settings)

        with pytest.raises(EndpointBindError):
            await service.run()

        assert not service.tracker.running
        assert service.coordinator.state is ShutdownState.AWAITING_HEARTBEATS

    @pytest.mark.asyncio
    async def test_foreign_file_at_endpoint_is_fatal(self, test_settings):
        path = test_settings.endpoint_path
        path.write_text("user data")
        service = SidecarService(test_settings)

        with pytest.raises(EndpointBindError, match="not a socket"):
            await service.start()

        assert path.read_text() == "user data"
        assert not service.tracker.running

    @pytest.mark.asyncio
    async def test_signal_during_startup_still_cleans_up(self, test_settings):
        test_settings.shutdown.signals = ["SIGTERM"]
        exit_callback = Mock()
        service = SidecarService(test_settings, exit_callback=exit_callback)
        installed = []
        start_tracker = service.tracker.start

        def signal_then_start_tracker():
            installed.extend(service._signals)
            service._on_signal(signal.SIGTERM)
            start_tracker()

        service.tracker.start = signal_then_start_tracker
        await service.start()
        await asyncio.wait_for(service.coordinator.wait_terminated(), timeout=2.0)

        assert installed == [signal.SIGTERM]
        assert service.coordinator.reason is ShutdownReason.SIGNAL
        exit_callback.assert_called_once_with(0)
        assert not service.endpoint_path.exists()
        assert not service.tracker.running

    @pytest.mark.asyncio
    async def test_signal_and_supervisor_fan_in(self, test_settings):
        exit_callback = Mock()
        hook = Mock()
        service = SidecarService(test_settings, exit_callback=exit_callback)
        service.add_teardown_hook(hook, "close-database")
        await service.start()

        service._on_signal(signal.SIGTERM)
        service.request_exit("frontend asked to quit")
        service._on_signal(signal.SIGINT)
        await asyncio.wait_for(service.coordinator.wait_terminated(), timeout=2.0)

        assert service.coordinator.reason is ShutdownReason.SIGNAL
        hook.assert_called_once()
        exit_callback.assert_called_once_with(0)

    @pytest.mark.asyncio
    async def test_signal_handlers_installed_and_removed(self, test_settings):
        test_settings.shutdown.signals = ["SIGTERM"]
        service = SidecarService(test_settings)
        await service.start()
        assert service._signals == [signal.SIGTERM]

        service.request_exit()
        await service.coordinator.wait_terminated()

        assert service._signals == []

    @pytest.mark.asyncio
    async def test_in_process_heartbeats(self, test_settings):
        service = SidecarService(test_settings)
        await service.start()

        for _ in range(10):
            service.observe_heartbeat()
            await asyncio.sleep(0.05)

        assert service.coordinator.state is ShutdownState.AWAITING_HEARTBEATS
        health = service.health_check()
        assert health["tracker"]["heartbeats"] == 10
        assert health["channel"]["listening"] is True
        assert health["endpoint"] == str(service.endpoint_path)

        service.request_exit()
        await service.coordinator.wait_terminated()

    @pytest.mark.asyncio
    async def test_http_trigger_enabled(self, test_settings, unused_tcp_port):
        test_settings.http.enabled = True
        test_settings.http.port = unused_tcp_port
        service = SidecarService(test_settings)
        await service.start()

        reader, writer = await asyncio.open_connection("127.0.0.1", unused_tcp_port)
        writer.write(b"POST /heartbeat HTTP/1.1\r\nHost: localhost\r\nContent-Length: 0\r\nConnection: close\r\n\r\n")
        await writer.drain()
        response = await reader.read()
        writer.close()
        await writer.wait_closed()

        assert response.startswith(b"HTTP/1.1 200")
        assert b'"status": "ok"' in response
        await service.tracker.flush()
        assert service.tracker.state.heartbeats == 1

        service.request_exit()
        await service.coordinator.wait_terminated()
        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", unused_tcp_port)
