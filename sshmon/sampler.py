"""Per-host sampling loop.

One Sampler runs per HostTarget for the life of the process. Each cycle it
makes sure it holds a session, runs every configured metric kind in order,
pushes the results onto the event bus and sleeps until the next round. No
error ends the loop; only the shutdown event does.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from sshmon.config import HostTarget
from sshmon.metrics import MetricKind, MetricValue, ParseError, command, parse
from sshmon.transport import Connector, Session, TransportError, make_connector

log = logging.getLogger(__name__)

EVENT_BUS_CAPACITY = 100


# ── Events ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SampleEvent:
    host: str
    kind: MetricKind
    value: MetricValue
    timestamp: datetime


@dataclass(frozen=True)
class ErrorEvent:
    host: str
    kind: MetricKind | None  # None for connection-level failures
    message: str
    timestamp: datetime


MonitorEvent = SampleEvent | ErrorEvent


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_event_bus() -> asyncio.Queue[MonitorEvent]:
    return asyncio.Queue(maxsize=EVENT_BUS_CAPACITY)


# ── Sampling a single metric ────────────────────────────────────────────────


class CommandError(Exception):
    """The remote command exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"command exited with non-zero status {exit_code}{detail}")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


async def sample_metric(session: Session, kind: MetricKind) -> MetricValue:
    """Run one metric kind through the session and parse its output.

    Raises:
        CommandError: Non-zero exit status.
        ParseError: Output could not be parsed.
        TransportError: The session failed underneath the command.
    """
    cmd = command(kind)
    result = await session.execute(cmd)
    if result.exit_code != 0:
        raise CommandError(cmd, result.exit_code, result.stderr)
    return parse(kind, result.stdout)


# ── Sampler loop ────────────────────────────────────────────────────────────


class SamplerState(Enum):
    CONNECTING = "connecting"
    POLLING = "polling"
    SLEEPING = "sleeping"
    SHUTTING_DOWN = "shutting_down"


class Sampler:
    """Polls one host until the shutdown event is set."""

    def __init__(
        self,
        target: HostTarget,
        bus: asyncio.Queue[MonitorEvent],
        shutdown: asyncio.Event,
        connect: Connector | None = None,
    ) -> None:
        self.target = target
        self.bus = bus
        self.shutdown = shutdown
        self.connect = connect or make_connector()
        self.state = SamplerState.CONNECTING
        self.rounds = 0
        self._session: Session | None = None

    async def _emit_error(self, kind: MetricKind | None, message: str) -> None:
        log.debug("%s [%s]: %s", self.target.name, kind.label if kind else "-", message)
        await self.bus.put(ErrorEvent(self.target.name, kind, message, _now()))

    async def _ensure_session(self) -> Session | None:
        if self._session is not None:
            return self._session
        self.state = SamplerState.CONNECTING
        try:
            self._session = await self.connect(self.target)
        except TransportError as e:
            await self._emit_error(None, str(e))
            return None
        return self._session

    async def _drop_session(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await session.close()
        except TransportError as e:
            log.debug("%s: error closing session: %s", self.target.name, e)

    async def poll_once(self, session: Session) -> None:
        """Sample every configured kind once, in declared order."""
        self.state = SamplerState.POLLING
        for kind in self.target.monitors:
            if self.shutdown.is_set():
                return
            try:
                value = await sample_metric(session, kind)
            except (CommandError, ParseError) as e:
                await self._emit_error(kind, str(e))
                continue
            except TransportError as e:
                await self._emit_error(kind, str(e))
                await self._drop_session()
                return
            await self.bus.put(SampleEvent(self.target.name, kind, value, _now()))
        self.rounds += 1

    async def _sleep(self) -> None:
        """Wait one interval, returning early when shutdown is requested."""
        self.state = SamplerState.SLEEPING
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=self.target.interval)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        log.info("sampler for %s started (every %.1fs)", self.target.name, self.target.interval)
        try:
            while not self.shutdown.is_set():
                session = await self._ensure_session()
                if session is not None and not self.shutdown.is_set():
                    await self.poll_once(session)
                if self.shutdown.is_set():
                    break
                await self._sleep()
        finally:
            self.state = SamplerState.SHUTTING_DOWN
            await self._drop_session()
            log.info("sampler for %s stopped", self.target.name)
