"""Aggregated dashboard state and the event-bus consumer that feeds it.

``DashboardState`` maps host name → metric kind → latest sample, and holds
the navigation cursors. It is shared between the aggregator (writes
samples), the input task (writes cursors) and the render task (reads), all
through one readers/writer lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

from sshmon.metrics import KIND_ORDER, MetricKind, MetricValue
from sshmon.sampler import ErrorEvent, MonitorEvent, SampleEvent

log = logging.getLogger(__name__)


class RWLock:
    """Asyncio readers/writer lock.

    Any number of readers may hold the lock together; a writer holds it
    alone. Once a writer is waiting, new readers queue behind it.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writing(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            except BaseException:
                # A cancelled writer no longer holds back queued readers.
                self._writers_waiting -= 1
                self._cond.notify_all()
                raise
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class DashboardState:
    """Latest sample per (host, kind) plus the host/kind cursors."""

    def __init__(self, hosts: Iterable[str] = ()) -> None:
        self.hosts: list[str] = list(dict.fromkeys(hosts))
        self.data: dict[str, dict[MetricKind, MetricValue]] = {}
        self.current_host = 0
        self.current_kind = 0

    def apply(self, event: MonitorEvent) -> bool:
        """Store a sample. Error events never touch stored values.

        Returns True if the state changed.
        """
        if isinstance(event, ErrorEvent):
            return False
        if event.host not in self.hosts:
            self.hosts.append(event.host)
        self.data.setdefault(event.host, {})[event.kind] = event.value
        return True

    def get(self, host: str, kind: MetricKind) -> MetricValue | None:
        return self.data.get(host, {}).get(kind)

    def next_host(self) -> None:
        if self.hosts:
            self.current_host = (self.current_host + 1) % len(self.hosts)

    def prev_host(self) -> None:
        if self.hosts:
            self.current_host = (self.current_host - 1) % len(self.hosts)

    def select_kind(self, index: int) -> None:
        self.current_kind = max(0, min(index, len(KIND_ORDER) - 1))

    @property
    def selected_host(self) -> str | None:
        if not self.hosts:
            return None
        return self.hosts[self.current_host % len(self.hosts)]

    @property
    def selected_kind(self) -> MetricKind:
        return KIND_ORDER[self.current_kind]


class SharedState:
    """DashboardState guarded by an RWLock.

    Usage:
        async with shared.read() as state:
            text = main_text(state)
        async with shared.write() as state:
            state.next_host()
    """

    def __init__(self, state: DashboardState | None = None) -> None:
        self._state = state or DashboardState()
        self.lock = RWLock()

    @asynccontextmanager
    async def read(self) -> AsyncIterator[DashboardState]:
        async with self.lock.read():
            yield self._state

    @asynccontextmanager
    async def write(self) -> AsyncIterator[DashboardState]:
        async with self.lock.write():
            yield self._state


class Aggregator:
    """Single consumer of the event bus."""

    def __init__(self, bus: asyncio.Queue[MonitorEvent], shared: SharedState) -> None:
        self.bus = bus
        self.shared = shared
        self.samples = 0
        self.error_count = 0

    async def handle(self, event: MonitorEvent) -> None:
        if isinstance(event, SampleEvent):
            async with self.shared.write() as state:
                state.apply(event)
            self.samples += 1
            return
        self.error_count += 1
        kind = event.kind.label if event.kind is not None else "-"
        log.warning("[%s][%s] %s", event.host, kind, event.message)

    async def drain(self) -> int:
        """Apply every event already queued without waiting for more."""
        handled = 0
        while True:
            try:
                event = self.bus.get_nowait()
            except asyncio.QueueEmpty:
                return handled
            try:
                await self.handle(event)
            finally:
                self.bus.task_done()
            handled += 1

    async def run(self) -> None:
        """Consume events until cancelled."""
        while True:
            event = await self.bus.get()
            try:
                await self.handle(event)
            finally:
                self.bus.task_done()
