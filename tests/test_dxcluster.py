#!/usr/bin/env python3
"""
Tests for the DX Cluster provider: reconnection, backoff and shutdown.
"""
import asyncio

import pytest

from fakecluster import (
    FakeClusterServer, SPOT_A, SPOT_B, SPOT_C,
    _run, idle, prompt_and_login, send, unused_port
)
from dxlistener.providers.base import SpotFormat
from dxlistener.providers.dxcluster import DXClusterProvider, SessionState, backoff_delay
from dxlistener.providers.errors import BadFrequency, ConnectError
from dxlistener.utils.config import ClusterConfig


def make_config(port, **overrides) -> ClusterConfig:
    settings = dict(
        host="127.0.0.1",
        port=port,
        login_identity="N0CALL",
        backoff_initial=0.05,
        backoff_max=0.2,
        stall_timeout=5.0,
        login_grace=2.0,
        connect_timeout=2.0,
    )
    settings.update(overrides)
    return ClusterConfig(**settings)


async def receive_n(channel, count, timeout=5):
    return [await asyncio.wait_for(channel.receive(), timeout=timeout) for _ in range(count)]


class TestBackoff:
    def test_no_failures_no_delay(self):
        assert backoff_delay(0, 1.0, 60.0) == 0.0

    def test_doubles_up_to_cap(self):
        delays = [backoff_delay(n, 1.0, 60.0) for n in range(1, 12)]
        assert delays[:7] == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0]
        assert all(d == 60.0 for d in delays[6:])

    def test_monotonic_non_decreasing(self):
        delays = [backoff_delay(n, 0.3, 45.0) for n in range(1, 200)]
        assert all(a <= b for a, b in zip(delays, delays[1:]))
        assert max(delays) == 45.0

    def test_huge_failure_count_does_not_overflow(self):
        assert backoff_delay(10_000, 1.0, 60.0) == 60.0


class TestProvider:
    def test_reconnect_resumes_without_duplicates(self):
        async def first(reader, writer):
            await prompt_and_login(reader, writer)
            await send(writer, SPOT_A, "To ALL de G4ABC: chat", SPOT_B)
            # Connection drops in the middle of a line
            writer.write(b"DX de W1AW:  140")
            await writer.drain()

        async def second(reader, writer):
            await prompt_and_login(reader, writer)
            await send(writer, SPOT_C)
            await idle(reader)

        async def main():
            server = await FakeClusterServer([first, second]).start()
            provider = DXClusterProvider(make_config(server.port))
            channel = provider.start()
            try:
                spots = await receive_n(channel, 3)
                state = provider.state
                retries = provider.retry_count
            finally:
                await provider.stop()
                await server.close()
            return spots, server.connections, state, retries, provider.state

        spots, connections, state, retries, final_state = _run(main())
        assert [s.dx_callsign for s in spots] == ["JA1ABC", "VK2XYZ", "K5XYZ"]
        assert spots[2].source_format == SpotFormat.RBN
        assert connections == 2
        assert state == SessionState.CONNECTED
        assert retries == 0
        assert final_state == SessionState.STOPPED

    def test_stall_triggers_reconnect(self):
        async def silent(reader, writer):
            await prompt_and_login(reader, writer)
            await idle(reader)

        async def talkative(reader, writer):
            await prompt_and_login(reader, writer)
            await send(writer, SPOT_A)
            await idle(reader)

        async def main():
            server = await FakeClusterServer([silent, talkative]).start()
            provider = DXClusterProvider(make_config(server.port, stall_timeout=0.2))
            channel = provider.start()
            try:
                spots = await receive_n(channel, 1)
            finally:
                await provider.stop()
                await server.close()
            return spots, server.connections

        spots, connections = _run(main())
        assert spots[0].dx_callsign == "JA1ABC"
        assert connections == 2

    def test_gives_up_after_max_connect_attempts(self):
        async def main():
            port = await unused_port()
            provider = DXClusterProvider(make_config(port, max_connect_attempts=3, backoff_initial=0.01))
            channel = provider.start()
            with pytest.raises(ConnectError):
                await asyncio.wait_for(provider.wait_closed(), timeout=5)
            remaining = [spot async for spot in channel]
            return provider.retry_count, provider.state, remaining, provider.is_running

        retries, state, remaining, running = _run(main())
        assert retries == 3
        assert state == SessionState.STOPPED
        assert remaining == []
        assert not running

    def test_consumer_close_stops_provider(self):
        async def script(reader, writer):
            await prompt_and_login(reader, writer)
            await send(writer, SPOT_A, SPOT_B, SPOT_C)
            await idle(reader)

        async def main():
            server = await FakeClusterServer([script]).start()
            provider = DXClusterProvider(make_config(server.port, channel_capacity=1))
            channel = provider.start()
            try:
                first = await receive_n(channel, 1)
                channel.close()
                await asyncio.wait_for(provider.wait_closed(), timeout=5)
            finally:
                await server.close()
            return first, provider.state, provider.session

        first, state, session = _run(main())
        assert first[0].dx_callsign == "JA1ABC"
        assert state == SessionState.STOPPED
        assert session is None

    def test_stop_during_backoff(self):
        async def main():
            port = await unused_port()
            provider = DXClusterProvider(make_config(port, backoff_initial=10.0, backoff_max=10.0))
            channel = provider.start()
            await asyncio.sleep(0.2)
            waiting = provider.state
            await asyncio.wait_for(provider.stop(), timeout=2)
            remaining = [spot async for spot in channel]
            return waiting, provider.state, remaining

        waiting, state, remaining = _run(main())
        assert waiting == SessionState.DISCONNECTED
        assert state == SessionState.STOPPED
        assert remaining == []

    def test_parse_errors_go_to_diagnostics(self):
        async def script(reader, writer):
            await prompt_and_login(reader, writer)
            await send(writer, "DX de W1AW:  14O25.0  JA1ABC  CQ  1234Z", SPOT_B)
            await idle(reader)

        async def main():
            server = await FakeClusterServer([script]).start()
            diagnostics = asyncio.Queue(maxsize=10)
            provider = DXClusterProvider(make_config(server.port), diagnostics=diagnostics)
            channel = provider.start()
            try:
                spots = await receive_n(channel, 1)
            finally:
                await provider.stop()
                await server.close()
            return spots, diagnostics.get_nowait(), provider.parse_errors, server.connections

        spots, error, parse_errors, connections = _run(main())
        assert spots[0].dx_callsign == "VK2XYZ"
        assert isinstance(error, BadFrequency)
        assert parse_errors == 1
        assert connections == 1

    @pytest.mark.parametrize("before, after, expected", [
        (b"Running AR-Cluster Version 6.1\r\n", [], SpotFormat.ARCLUSTER),
        (b"", ["Hello N0CALL, this is GB7DJK running DXSpider V1.57"], SpotFormat.DXSPIDER),
        (b"", ["Welcome to VE7CC CC-Cluster"], SpotFormat.CC_CLUSTER),
    ])
    def test_server_identification(self, before, after, expected):
        async def script(reader, writer):
            writer.write(before)
            await prompt_and_login(reader, writer)
            await send(writer, *after, SPOT_A)
            await idle(reader)

        async def main():
            server = await FakeClusterServer([script]).start()
            provider = DXClusterProvider(make_config(server.port))
            channel = provider.start()
            try:
                spots = await receive_n(channel, 1)
            finally:
                await provider.stop()
                await server.close()
            return spots[0], provider.status()

        spot, status = _run(main())
        assert spot.source_format == expected
        assert status['server_format'] == expected.value
        assert status['published'] == 1

    def test_pinned_server_format(self):
        async def script(reader, writer):
            await prompt_and_login(reader, writer)
            await send(writer, "running DXSpider", SPOT_A)
            await idle(reader)

        async def main():
            server = await FakeClusterServer([script]).start()
            provider = DXClusterProvider(make_config(server.port, server_format=SpotFormat.CC_CLUSTER))
            channel = provider.start()
            try:
                spots = await receive_n(channel, 1)
            finally:
                await provider.stop()
                await server.close()
            return spots[0]

        assert _run(main()).source_format == SpotFormat.CC_CLUSTER

    def test_cannot_restart_after_stop(self):
        async def main():
            port = await unused_port()
            provider = DXClusterProvider(make_config(port))
            await provider.stop()
            provider.start()

        with pytest.raises(RuntimeError):
            _run(main())


class TestConsumerClose:
    def test_chatter_only_feed(self):
        async def script(reader, writer):
            await prompt_and_login(reader, writer)
            await send(writer, SPOT_A)
            hangup = asyncio.create_task(reader.read())
            try:
                while not hangup.done():
                    await send(writer, "To ALL de G4ABC: chat")
                    await asyncio.sleep(0.05)
            except ConnectionError:
                pass
            finally:
                hangup.cancel()

        async def main():
            server = await FakeClusterServer([script]).start()
            provider = DXClusterProvider(make_config(server.port))
            channel = provider.start()
            try:
                await receive_n(channel, 1)
                channel.close()
                await asyncio.wait_for(provider.wait_closed(), timeout=2)
            finally:
                await provider.stop()
                await server.close()
            return provider.state, provider.session, server.connections

        state, session, connections = _run(main())
        assert state == SessionState.STOPPED
        assert session is None
        assert connections == 1

    @pytest.mark.parametrize("backoff", [0.01, 10.0])
    def test_refused_host(self, backoff):
        async def main():
            port = await unused_port()
            provider = DXClusterProvider(make_config(port, backoff_initial=backoff, backoff_max=backoff))
            channel = provider.start()
            await asyncio.sleep(0.2)
            channel.close()
            await asyncio.wait_for(provider.wait_closed(), timeout=2)
            return provider.state, provider.is_running

        state, running = _run(main())
        assert state == SessionState.STOPPED
        assert not running

    def test_stalled_session(self):
        async def script(reader, writer):
            await prompt_and_login(reader, writer)
            await idle(reader)

        async def main():
            server = await FakeClusterServer([script]).start()
            provider = DXClusterProvider(make_config(server.port, stall_timeout=0.2, backoff_initial=10.0, backoff_max=10.0))
            provider.start()
            try:
                await asyncio.sleep(0.5)
                waiting = provider.state
                provider.channel.close()
                await asyncio.wait_for(provider.wait_closed(), timeout=2)
            finally:
                await server.close()
            return waiting, provider.state, server.connections

        waiting, state, connections = _run(main())
        assert waiting == SessionState.DISCONNECTED
        assert state == SessionState.STOPPED
        assert connections == 1


class TestConnectAttempts:
    def test_lost_session_gets_full_reconnect_budget(self):
        async def script(reader, writer):
            await prompt_and_login(reader, writer)
            await send(writer, SPOT_A)

        async def main():
            # Connections after the first are closed before any prompt
            server = await FakeClusterServer([script]).start()
            provider = DXClusterProvider(make_config(server.port, max_connect_attempts=2, backoff_initial=0.01))
            provider.start()
            try:
                with pytest.raises(ConnectError):
                    await asyncio.wait_for(provider.wait_closed(), timeout=5)
            finally:
                await server.close()
            return server.connections, provider.connect_failures, provider.status()

        connections, failures, status = _run(main())
        assert connections == 3
        assert failures == 2
        assert status['connect_failures'] == 2
        assert status['published'] == 1

    def test_wait_closed_timeout_leaves_provider_running(self):
        async def script(reader, writer):
            await prompt_and_login(reader, writer)
            await idle(reader)

        async def main():
            server = await FakeClusterServer([script]).start()
            provider = DXClusterProvider(make_config(server.port))
            provider.start()
            try:
                with pytest.raises(asyncio.TimeoutError):
                    await asyncio.wait_for(provider.wait_closed(), timeout=0.2)
                running = provider.is_running
            finally:
                await provider.stop()
                await server.close()
            return running, provider.state

        running, state = _run(main())
        assert running
        assert state == SessionState.STOPPED
