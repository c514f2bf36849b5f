"""
Tests for the source connection monitor.
"""

import asyncio

from harvester.source import ConnectionMonitor, ConnectionState, SourceClient

from conftest import FakeSourceClient


class TestConnectionMonitor:

    def test_initial_state(self):
        monitor = ConnectionMonitor()

        assert monitor.state is ConnectionState.INITIALIZING
        assert monitor.is_ready is False

    def test_listeners_receive_transitions(self):
        monitor = ConnectionMonitor()
        seen = []
        monitor.subscribe(lambda old, new: seen.append((old, new)))

        monitor.set_state(ConnectionState.AWAITING_PAIRING)
        monitor.set_state(ConnectionState.READY)
        monitor.set_state(ConnectionState.READY)

        assert seen == [
            (ConnectionState.INITIALIZING, ConnectionState.AWAITING_PAIRING),
            (ConnectionState.AWAITING_PAIRING, ConnectionState.READY),
        ]
        assert monitor.is_ready is True

    def test_unsubscribe(self):
        monitor = ConnectionMonitor()
        seen = []
        unsubscribe = monitor.subscribe(lambda old, new: seen.append(new))

        unsubscribe()
        monitor.set_state(ConnectionState.READY)

        assert seen == []

    def test_failing_listener_does_not_block_others(self):
        monitor = ConnectionMonitor()
        seen = []

        def broken(old, new):
            raise RuntimeError("listener bug")

        monitor.subscribe(broken)
        monitor.subscribe(lambda old, new: seen.append(new))

        monitor.set_state(ConnectionState.DISCONNECTED)

        assert seen == [ConnectionState.DISCONNECTED]

    def test_wait_until_ready_resolves(self):
        monitor = ConnectionMonitor()

        async def scenario():
            waiter = asyncio.create_task(monitor.wait_until_ready(timeout=1))
            await asyncio.sleep(0)
            monitor.set_state(ConnectionState.READY)
            return await waiter

        assert asyncio.run(scenario()) is True

    def test_wait_until_ready_times_out(self):
        monitor = ConnectionMonitor(ConnectionState.DISCONNECTED)

        assert asyncio.run(monitor.wait_until_ready(timeout=0.01)) is False

    def test_wait_when_already_ready(self):
        monitor = ConnectionMonitor(ConnectionState.READY)

        assert asyncio.run(monitor.wait_until_ready(timeout=0)) is True


class TestSourceClientProtocol:

    def test_fake_client_satisfies_protocol(self):
        assert isinstance(FakeSourceClient(), SourceClient)
