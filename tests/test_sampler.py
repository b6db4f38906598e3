"""Tests for sshmon.sampler."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, patch

import asyncssh
import pytest

from sshmon.config import HostTarget, Password, PrivateKey
from sshmon.metrics import SAMPLE_DELIMITER, MemInfo, MetricKind, ParseError, command
from sshmon.sampler import (
    CommandError,
    ErrorEvent,
    MonitorEvent,
    SampleEvent,
    Sampler,
    SamplerState,
    new_event_bus,
    sample_metric,
)
from sshmon.transport import AuthConfigError, CommandResult, NetworkError, TransportError, make_connector

MEMINFO = "MemTotal: 1000 kB\nMemFree: 200 kB\nMemAvailable: 400 kB\n"
DF = "Filesystem 1024-blocks Used Available Capacity Mounted on\n/dev/sda1 100 50 50 50% /\n"
NETDEV = f"  eth0: 1000 1 0 0 0 0 0 0 10 1 0 0 0 0 0 0\n{SAMPLE_DELIMITER}\n  eth0: 1200 1 0 0 0 0 0 0 30 1 0 0 0 0 0 0\n"


def _target(*kinds: MetricKind, interval: float = 0.05) -> HostTarget:
    return HostTarget(
        name="web-1",
        host="10.0.0.5",
        user="monitor",
        credentials=Password("pw"),
        monitors=kinds or (MetricKind.MEM,),
        interval=interval,
    )


class FakeSession:
    """Answers commands from a table; raises or fails where told to."""

    def __init__(self, outputs: dict[MetricKind, CommandResult | Exception]) -> None:
        self.outputs = {command(k): v for k, v in outputs.items()}
        self.executed: list[str] = []
        self.closed = False

    async def execute(self, cmd: str) -> CommandResult:
        self.executed.append(cmd)
        result = self.outputs[cmd]
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Fails the first ``failures`` connects, then hands out sessions."""

    def __init__(
        self,
        session_factory: Callable[[], FakeSession],
        failures: list[TransportError] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.failures = list(failures or [])
        self.calls = 0
        self.sessions: list[FakeSession] = []

    async def __call__(self, target: HostTarget) -> FakeSession:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        session = self.session_factory()
        self.sessions.append(session)
        return session


def _ok(stdout: str) -> CommandResult:
    return CommandResult(command="", stdout=stdout, stderr="", exit_code=0)


def _drain(bus: asyncio.Queue[MonitorEvent]) -> list[MonitorEvent]:
    events: list[MonitorEvent] = []
    while not bus.empty():
        events.append(bus.get_nowait())
    return events


async def _run_until(sampler: Sampler, bus: asyncio.Queue[MonitorEvent], count: int) -> list[MonitorEvent]:
    """Run the sampler until ``count`` events were emitted, then shut it down."""
    events: list[MonitorEvent] = []
    task = asyncio.create_task(sampler.run())
    try:
        while len(events) < count:
            events.append(await asyncio.wait_for(bus.get(), timeout=2))
    finally:
        sampler.shutdown.set()
        while not task.done():
            # keep the bus from blocking the sampler on its way out
            _drain(bus)
            await asyncio.sleep(0.01)
        await task
    return events


# ── sample_metric ───────────────────────────────────────────────────────────


class TestSampleMetric:
    @pytest.mark.asyncio
    async def test_parses_output(self) -> None:
        session = FakeSession({MetricKind.MEM: _ok(MEMINFO)})
        value = await sample_metric(session, MetricKind.MEM)
        assert isinstance(value, MemInfo)
        assert value.used_percent == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_non_zero_exit(self) -> None:
        session = FakeSession({MetricKind.DISK: CommandResult("df", "", "df: not found", 127)})
        with pytest.raises(CommandError) as exc_info:
            await sample_metric(session, MetricKind.DISK)
        assert exc_info.value.exit_code == 127
        assert "df: not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_parse_failure(self) -> None:
        session = FakeSession({MetricKind.MEM: _ok("nothing useful")})
        with pytest.raises(ParseError):
            await sample_metric(session, MetricKind.MEM)


# ── Sampler loop ────────────────────────────────────────────────────────────


class TestSamplerPolling:
    @pytest.mark.asyncio
    async def test_emits_samples_in_declared_order(self) -> None:
        bus = new_event_bus()
        connector = FakeConnector(lambda: FakeSession({
            MetricKind.DISK: _ok(DF),
            MetricKind.MEM: _ok(MEMINFO),
            MetricKind.NET: _ok(NETDEV),
        }))
        sampler = Sampler(_target(MetricKind.DISK, MetricKind.MEM, MetricKind.NET), bus, asyncio.Event(), connector)
        events = await _run_until(sampler, bus, 3)
        assert all(isinstance(e, SampleEvent) for e in events)
        assert [e.kind for e in events] == [MetricKind.DISK, MetricKind.MEM, MetricKind.NET]
        assert all(e.host == "web-1" for e in events)
        assert events[0].timestamp.tzinfo is not None

    @pytest.mark.asyncio
    async def test_command_and_parse_errors_do_not_abort_round(self) -> None:
        bus = new_event_bus()
        connector = FakeConnector(lambda: FakeSession({
            MetricKind.CPU: CommandResult("", "", "boom", 1),
            MetricKind.MEM: _ok("garbage"),
            MetricKind.DISK: _ok(DF),
        }))
        sampler = Sampler(_target(MetricKind.CPU, MetricKind.MEM, MetricKind.DISK), bus, asyncio.Event(), connector)
        events = await _run_until(sampler, bus, 3)
        assert isinstance(events[0], ErrorEvent) and events[0].kind is MetricKind.CPU
        assert isinstance(events[1], ErrorEvent) and events[1].kind is MetricKind.MEM
        assert isinstance(events[2], SampleEvent) and events[2].kind is MetricKind.DISK

    @pytest.mark.asyncio
    async def test_session_reused_across_rounds(self) -> None:
        bus = new_event_bus()
        connector = FakeConnector(lambda: FakeSession({MetricKind.MEM: _ok(MEMINFO)}))
        sampler = Sampler(_target(MetricKind.MEM, interval=0.01), bus, asyncio.Event(), connector)
        await _run_until(sampler, bus, 3)
        assert connector.calls == 1
        assert len(connector.sessions[0].executed) >= 3
        assert connector.sessions[0].closed

    @pytest.mark.asyncio
    async def test_transport_failure_drops_session_and_reconnects(self) -> None:
        bus = new_event_bus()
        sessions = iter([
            FakeSession({MetricKind.MEM: TransportError("connection lost")}),
            FakeSession({MetricKind.MEM: _ok(MEMINFO)}),
        ])
        connector = FakeConnector(lambda: next(sessions))
        sampler = Sampler(_target(MetricKind.MEM, interval=0.01), bus, asyncio.Event(), connector)
        events = await _run_until(sampler, bus, 2)
        assert isinstance(events[0], ErrorEvent)
        assert events[0].kind is MetricKind.MEM
        assert isinstance(events[1], SampleEvent)
        assert connector.calls == 2
        assert connector.sessions[0].closed


class TestSamplerConnecting:
    @pytest.mark.asyncio
    async def test_connect_failure_emits_error_without_kind_and_retries(self) -> None:
        bus = new_event_bus()
        connector = FakeConnector(
            lambda: FakeSession({MetricKind.MEM: _ok(MEMINFO)}),
            failures=[NetworkError("connection refused"), AuthConfigError("no credentials")],
        )
        sampler = Sampler(_target(MetricKind.MEM, interval=0.01), bus, asyncio.Event(), connector)
        events = await _run_until(sampler, bus, 3)
        assert isinstance(events[0], ErrorEvent) and events[0].kind is None
        assert "connection refused" in events[0].message
        assert isinstance(events[1], ErrorEvent) and events[1].kind is None
        assert isinstance(events[2], SampleEvent)
        assert connector.calls == 3


class TestSamplerShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_interrupts_sleep(self) -> None:
        bus = new_event_bus()
        shutdown = asyncio.Event()
        connector = FakeConnector(lambda: FakeSession({MetricKind.MEM: _ok(MEMINFO)}))
        sampler = Sampler(_target(MetricKind.MEM, interval=60.0), bus, shutdown, connector)
        task = asyncio.create_task(sampler.run())
        await asyncio.wait_for(bus.get(), timeout=2)
        await asyncio.sleep(0.01)
        assert sampler.state is SamplerState.SLEEPING

        started = time.monotonic()
        shutdown.set()
        await asyncio.wait_for(task, timeout=1)
        assert time.monotonic() - started < 1
        assert sampler.state is SamplerState.SHUTTING_DOWN
        assert connector.sessions[0].closed

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self) -> None:
        bus = new_event_bus()
        shutdown = asyncio.Event()
        connector = FakeConnector(lambda: FakeSession({MetricKind.MEM: _ok(MEMINFO)}))
        samplers = [
            Sampler(_target(MetricKind.MEM, interval=60.0), bus, shutdown, connector)
            for _ in range(3)
        ]
        tasks = [asyncio.create_task(s.run()) for s in samplers]
        await asyncio.sleep(0.05)
        shutdown.set()
        shutdown.set()
        await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)
        assert all(s.state is SamplerState.SHUTTING_DOWN for s in samplers)

    @pytest.mark.asyncio
    async def test_already_shut_down_never_connects(self) -> None:
        shutdown = asyncio.Event()
        shutdown.set()
        connector = FakeConnector(lambda: FakeSession({}))
        sampler = Sampler(_target(), new_event_bus(), shutdown, connector)
        await sampler.run()
        assert connector.calls == 0


class TestSamplerKeyErrors:
    @pytest.mark.asyncio
    async def test_unloadable_key_reported_and_retried(self, tmp_path: Path) -> None:
        key_file = tmp_path / "id_bad"
        key_file.write_text("not a key")
        target = HostTarget(
            name="web-1",
            host="10.0.0.5",
            user="monitor",
            credentials=PrivateKey(key_file),
            monitors=(MetricKind.MEM,),
            interval=0.01,
        )
        bus = new_event_bus()
        with patch(
            "sshmon.transport.asyncssh.connect",
            new_callable=AsyncMock,
            side_effect=asyncssh.KeyImportError("Invalid private key"),
        ) as mock_connect:
            sampler = Sampler(target, bus, asyncio.Event(), make_connector())
            events = await _run_until(sampler, bus, 2)
        assert all(isinstance(e, ErrorEvent) and e.kind is None for e in events)
        assert "cannot load private key" in events[0].message
        assert mock_connect.await_count >= 2
        assert sampler.state is SamplerState.SHUTTING_DOWN


class TestBackPressure:
    @pytest.mark.asyncio
    async def test_full_bus_blocks_then_delivers_everything_in_order(self) -> None:
        bus: asyncio.Queue[MonitorEvent] = asyncio.Queue(maxsize=1)
        shutdown = asyncio.Event()
        connector = FakeConnector(lambda: FakeSession({
            MetricKind.MEM: _ok(MEMINFO),
            MetricKind.DISK: _ok(DF),
            MetricKind.NET: _ok(NETDEV),
        }))
        target = _target(MetricKind.MEM, MetricKind.DISK, MetricKind.NET, interval=60.0)
        sampler = Sampler(target, bus, shutdown, connector)
        task = asyncio.create_task(sampler.run())
        await asyncio.sleep(0.05)

        # One event fits; the sampler waits on the second put.
        assert bus.full()
        assert sampler.state is SamplerState.POLLING
        assert sampler.rounds == 0
        assert not task.done()

        events = [await asyncio.wait_for(bus.get(), timeout=1) for _ in range(3)]
        assert [e.kind for e in events] == [MetricKind.MEM, MetricKind.DISK, MetricKind.NET]
        assert all(isinstance(e, SampleEvent) for e in events)
        await asyncio.sleep(0.01)
        assert sampler.rounds == 1
        assert bus.empty()

        shutdown.set()
        await asyncio.wait_for(task, timeout=1)
