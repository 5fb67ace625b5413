"""Tests for the discovery and watch loop.

The watcher runs as a real asyncio task against the in-memory engine; events
are pushed onto the live stream and the tests poll for their effects.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from conftest import PG1_ENV, PG1_LABELS
from docker_mock import MockDockerEngine, wait_until
from postgres_mock import MockPostgresServer

from autopg.config import Config
from autopg.credentials import CredentialResolver
from autopg.docker_platform import DockerPlatform
from autopg.reconciler import OutcomeStatus, Reconciler
from autopg.watcher import Watcher, WatchState


def make_watcher(config: Config, engine: MockDockerEngine, pg: MockPostgresServer) -> Watcher:
    platform = DockerPlatform(engine.client())
    reconciler = Reconciler(config, CredentialResolver(PG1_ENV), platform, connect=pg.connect)
    return Watcher(config, platform, reconciler)


async def stop(watcher: Watcher, task: asyncio.Task[None]) -> None:
    watcher.shutdown()
    await asyncio.wait_for(task, timeout=15)


@pytest_asyncio.fixture
async def running(
    config: Config, engine: MockDockerEngine, pg: MockPostgresServer
) -> AsyncIterator[Watcher]:
    """A watcher whose loop is running and reading the live stream."""
    watcher = make_watcher(config, engine, pg)
    task = asyncio.create_task(watcher.run())
    await wait_until(lambda: watcher.state == WatchState.WATCHING)
    try:
        yield watcher
    finally:
        await stop(watcher, task)


class TestScan:
    """Tests for the initial scan."""

    @pytest.mark.asyncio
    async def test_scan_provisions_existing_containers(
        self, config: Config, engine: MockDockerEngine, pg: MockPostgresServer
    ) -> None:
        engine.add_container(PG1_LABELS, name="web")
        engine.add_container({"com.example": "x"}, name="cache")
        watcher = make_watcher(config, engine, pg)

        results = await watcher.scan()

        assert len(results) == 1
        assert results[0].outcome("pg1").status == OutcomeStatus.PROVISIONED
        assert pg.databases == {"appdb": "appuser"}

    @pytest.mark.asyncio
    async def test_scan_survives_list_failure(
        self,
        config: Config,
        engine: MockDockerEngine,
        pg: MockPostgresServer,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        engine.fail_list = True
        watcher = make_watcher(config, engine, pg)

        with caplog.at_level(logging.ERROR, logger="autopg.watcher"):
            results = await watcher.scan()

        assert results == []
        assert "Container list failed" in caplog.text

    @pytest.mark.asyncio
    async def test_subscribes_before_scanning(
        self, config: Config, engine: MockDockerEngine, pg: MockPostgresServer
    ) -> None:
        """Test that no start event can fall between the scan and the subscription."""
        watcher = make_watcher(config, engine, pg)
        platform = watcher._platform
        calls: list[str] = []
        original_subscribe = platform.subscribe
        original_list = platform.list_workloads

        def subscribe(since=None):
            calls.append("subscribe")
            return original_subscribe(since)

        def list_workloads():
            calls.append("list")
            return original_list()

        platform.subscribe = subscribe
        platform.list_workloads = list_workloads

        task = asyncio.create_task(watcher.run())
        await wait_until(lambda: watcher.state == WatchState.WATCHING)
        await stop(watcher, task)

        assert calls[:2] == ["subscribe", "list"]
        assert engine.streams[0].since is not None


class TestWatch:
    """Tests for event handling."""

    @pytest.mark.asyncio
    async def test_started_container_is_provisioned(
        self, running: Watcher, engine: MockDockerEngine, pg: MockPostgresServer
    ) -> None:
        engine.start_container(PG1_LABELS)

        await wait_until(lambda: "appdb" in pg.databases and pg.grants)

        assert pg.roles == {"appuser": "secret"}
        assert running.events_processed == 1

    @pytest.mark.asyncio
    async def test_marker_is_written_when_supported(
        self, config: Config, pg: MockPostgresServer
    ) -> None:
        engine = MockDockerEngine(support_label_updates=True)
        watcher = make_watcher(config, engine, pg)
        task = asyncio.create_task(watcher.run())
        await wait_until(lambda: watcher.state == WatchState.WATCHING)

        container = engine.start_container(PG1_LABELS)
        await wait_until(lambda: "autopg.provisioned.pg1" in container.labels)
        await stop(watcher, task)

        assert container.labels["autopg.provisioned.pg1"] == "true"

    @pytest.mark.asyncio
    async def test_unauthorized_event_has_no_side_effects(
        self, running: Watcher, engine: MockDockerEngine, pg: MockPostgresServer
    ) -> None:
        engine.start_container(
            {"autopg.other.db": "d", "autopg.other.user": "u", "autopg.other.pass": "p"}
        )

        await wait_until(lambda: running.events_processed == 1)
        # Processing is sequential; a second event proves the first finished
        engine.start_container({})
        await wait_until(lambda: running.events_processed == 2)

        assert pg.connect_calls == []
        assert engine.update_requests == []

    @pytest.mark.asyncio
    async def test_inspect_failure_skips_event(
        self,
        running: Watcher,
        engine: MockDockerEngine,
        pg: MockPostgresServer,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        caplog.set_level(logging.WARNING, logger="autopg.watcher")
        engine.emit_start("e" * 64)
        engine.start_container(PG1_LABELS)

        await wait_until(lambda: "appdb" in pg.databases)

        assert "Could not inspect started container" in caplog.text

    @pytest.mark.asyncio
    async def test_events_without_container_id_are_ignored(
        self, running: Watcher, engine: MockDockerEngine
    ) -> None:
        engine.live_stream.push({"Type": "container", "Action": "start"})
        engine.start_container({})

        await wait_until(lambda: running.events_processed == 1)


class TestReconnect:
    """Tests for event stream supervision."""

    @pytest.mark.asyncio
    async def test_reconnects_after_stream_error(
        self, running: Watcher, engine: MockDockerEngine, pg: MockPostgresServer
    ) -> None:
        first = engine.live_stream
        first.fail()

        await wait_until(lambda: running.reconnects == 1)
        await wait_until(lambda: running.state == WatchState.WATCHING)

        assert first.closed is True
        assert len(engine.streams) == 2
        # Resubscription asks for replay from the last known point
        assert engine.streams[1].since is not None
        assert engine.streams[1].since >= first.since

        engine.start_container(PG1_LABELS)
        await wait_until(lambda: "appdb" in pg.databases)

    @pytest.mark.asyncio
    async def test_reconnect_does_not_rescan(
        self, running: Watcher, engine: MockDockerEngine, pg: MockPostgresServer
    ) -> None:
        engine.add_container(PG1_LABELS)
        engine.live_stream.fail()

        await wait_until(lambda: running.reconnects == 1)

        assert pg.connect_calls == []

    @pytest.mark.asyncio
    async def test_resume_point_falls_back_to_seconds(
        self, running: Watcher, engine: MockDockerEngine
    ) -> None:
        container = engine.add_container({})
        engine.live_stream.push(
            {"Action": "start", "Actor": {"ID": container.id}, "time": 1999999999}
        )
        await wait_until(lambda: running.events_processed == 1)

        engine.live_stream.end()
        await wait_until(lambda: running.reconnects == 1)

        assert engine.streams[-1].since == 1999999999

    @pytest.mark.asyncio
    async def test_resume_point_skips_past_last_event(
        self, running: Watcher, engine: MockDockerEngine
    ) -> None:
        """Test that resubscription starts one nanosecond after the last event seen."""
        container = engine.add_container({})
        engine.live_stream.push(
            {
                "Action": "start",
                "Actor": {"ID": container.id},
                "time": 1999999999,
                "timeNano": 1999999999_999999999,
            }
        )
        await wait_until(lambda: running.events_processed == 1)

        engine.live_stream.end()
        await wait_until(lambda: running.reconnects == 1)

        assert engine.streams[-1].since == "2000000000.000000000"

    @pytest.mark.asyncio
    async def test_resume_point_uses_nanosecond_precision(
        self, running: Watcher, engine: MockDockerEngine
    ) -> None:
        container = engine.add_container({})
        engine.live_stream.push(
            {
                "Action": "start",
                "Actor": {"ID": container.id},
                "time": 1999999999,
                "timeNano": 1999999999_000000000,
            }
        )
        await wait_until(lambda: running.events_processed == 1)

        engine.live_stream.end()
        await wait_until(lambda: running.reconnects == 1)

        assert engine.streams[-1].since == "1999999999.000000001"

    @pytest.mark.asyncio
    async def test_initial_subscribe_failure_recovers(
        self, config: Config, engine: MockDockerEngine, pg: MockPostgresServer
    ) -> None:
        engine.fail_subscribe_count = 2
        engine.add_container(PG1_LABELS)
        watcher = make_watcher(config, engine, pg)

        task = asyncio.create_task(watcher.run())
        await wait_until(lambda: watcher.state == WatchState.WATCHING)

        # The scan still ran while the stream was down
        assert pg.databases == {"appdb": "appuser"}
        assert watcher.reconnects == 1
        assert engine.subscribe_calls == 3

        engine.start_container({})
        await wait_until(lambda: watcher.events_processed == 1)
        await stop(watcher, task)


class TestShutdown:
    """Tests for graceful shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_while_watching(
        self, config: Config, engine: MockDockerEngine, pg: MockPostgresServer
    ) -> None:
        watcher = make_watcher(config, engine, pg)
        task = asyncio.create_task(watcher.run())
        await wait_until(lambda: watcher.state == WatchState.WATCHING)

        await stop(watcher, task)

        assert watcher.state == WatchState.STOPPED
        assert task.exception() is None
        assert all(s.closed for s in engine.streams)

    @pytest.mark.asyncio
    async def test_shutdown_while_reconnecting(
        self, engine: MockDockerEngine, pg: MockPostgresServer
    ) -> None:
        config = Config(reconnect_backoff_seconds=60)
        engine.fail_subscribe_count = 1
        watcher = make_watcher(config, engine, pg)
        task = asyncio.create_task(watcher.run())
        await wait_until(lambda: watcher.state == WatchState.RECONNECTING)

        await stop(watcher, task)

        assert watcher.state == WatchState.STOPPED
        assert watcher.reconnects == 0
