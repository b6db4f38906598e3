"""Interactive terminal dashboard for sshmon.

Two cooperating tasks drive the view: ``input_loop`` polls for key presses
and moves the host/metric cursors, ``render_loop`` formats the selected
host's latest sample and paints it. Both stop when the shutdown event is
set; pressing ``q`` sets it.

Keys:
    n / →      next host
    l / p / ←  previous host
    1-4        mem / cpu / disk / net
    q / Esc    quit
"""

from __future__ import annotations

import asyncio
import curses
import sys
import time
from collections.abc import Callable
from typing import Any, Protocol, TextIO

from sshmon.metrics import KIND_ORDER, summary
from sshmon.state import DashboardState, SharedState

HELP_LINE = "n/→: next host  l/←: previous host  1-4: mem/cpu/disk/net  q: quit"
NO_SERVERS = "NO SERVERS DATA"
NO_DATA = "NO DATA"

INPUT_POLL_INTERVAL = 0.05  # seconds
KEY_ESC = 27

# Curses colour-pair IDs
C_NORMAL = 1
C_TITLE = 2
C_DIM = 3


# ── Text layout ────────────────────────────────────────────────────────────


def main_text(state: DashboardState) -> str:
    """Header, metric selector and summary for the selected host."""
    host = state.selected_host
    if host is None:
        return NO_SERVERS
    kind = state.selected_kind
    text = (
        f"=== Server: {host} ({state.current_host + 1}/{len(state.hosts)}) ===\n"
        f"[{kind.label}] "
    )
    value = state.get(host, kind)
    return text + (summary(value) if value is not None else NO_DATA)


def plain_text(state: DashboardState) -> str:
    """Every host and every metric, for line-oriented output."""
    if not state.hosts:
        return NO_SERVERS
    blocks: list[str] = []
    for host in state.hosts:
        lines = [f"=== Server: {host} ==="]
        for kind in KIND_ORDER:
            value = state.get(host, kind)
            if value is None:
                continue
            lines.append(f"[{kind.label}] {summary(value).rstrip()}")
        if len(lines) == 1:
            lines.append(NO_DATA)
        blocks.append("\n".join(lines))
    return "\n".join(blocks)


def handle_key(state: DashboardState, key: int) -> bool:
    """Apply one key press to the cursors. Returns True when quit is requested."""
    if key in (ord("q"), ord("Q"), KEY_ESC):
        return True
    if key in (ord("n"), curses.KEY_RIGHT):
        state.next_host()
    elif key in (ord("l"), ord("p"), curses.KEY_LEFT):
        state.prev_host()
    elif ord("1") <= key <= ord("4"):
        state.select_kind(key - ord("1"))
    return False


# ── Surfaces ───────────────────────────────────────────────────────────────


class Surface(Protocol):
    def paint(self, content: str, help_line: str) -> None: ...

    def poll_key(self) -> int | None: ...


def _init_colors() -> None:
    curses.start_color()
    curses.use_default_colors()
    curses.init_pair(C_NORMAL, curses.COLOR_GREEN, -1)
    curses.init_pair(C_TITLE, curses.COLOR_CYAN, -1)
    curses.init_pair(C_DIM, curses.COLOR_WHITE, -1)


def _safe(win: curses.window, *args: Any) -> None:
    """addstr wrapper that swallows out-of-bounds errors."""
    try:
        win.addstr(*args)
    except curses.error:
        pass


class CursesSurface:
    """Paints into a curses window and reads keys without blocking."""

    def __init__(self, stdscr: curses.window, colors: bool = True) -> None:
        self.stdscr = stdscr
        if colors and curses.has_colors():
            _init_colors()
        try:
            curses.curs_set(0)
        except curses.error:
            pass
        stdscr.nodelay(True)
        stdscr.keypad(True)

    def paint(self, content: str, help_line: str) -> None:
        win = self.stdscr
        max_y, max_x = win.getmaxyx()
        win.erase()
        lines = content.splitlines()
        for row, line in enumerate(lines[: max(0, max_y - 2)]):
            attr = curses.color_pair(C_TITLE) | curses.A_BOLD if row == 0 else curses.color_pair(C_NORMAL)
            _safe(win, row, 0, line[: max_x - 1], attr)
        _safe(win, max_y - 1, 0, help_line[: max_x - 1], curses.color_pair(C_DIM) | curses.A_DIM)
        win.refresh()

    def poll_key(self) -> int | None:
        key = self.stdscr.getch()
        if key == -1:
            return None
        if key == curses.KEY_RESIZE:
            self.stdscr.clear()
            return None
        return key


class PlainSurface:
    """Prints each frame to a stream. Has no keyboard input."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout
        self._last = ""

    def paint(self, content: str, help_line: str) -> None:
        if content == self._last:
            return
        self._last = content
        ts = time.strftime("%H:%M:%S")
        print(f"\n── sshmon [{ts}] ──\n{content}", file=self.stream, flush=True)

    def poll_key(self) -> int | None:
        return None


# ── Tasks ──────────────────────────────────────────────────────────────────


async def _wait(shutdown: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def input_loop(
    surface: Surface,
    shared: SharedState,
    shutdown: asyncio.Event,
    poll_interval: float = INPUT_POLL_INTERVAL,
) -> None:
    """Poll keys until quit or shutdown; quit broadcasts shutdown."""
    while not shutdown.is_set():
        key = surface.poll_key()
        if key is None:
            await _wait(shutdown, poll_interval)
            continue
        async with shared.write() as state:
            quit_requested = handle_key(state, key)
        if quit_requested:
            shutdown.set()
            return


async def render_loop(
    surface: Surface,
    shared: SharedState,
    shutdown: asyncio.Event,
    refresh: float,
    formatter: Callable[[DashboardState], str] = main_text,
    help_line: str = HELP_LINE,
) -> None:
    """Repaint every ``refresh`` seconds until shutdown. Never mutates state."""
    while not shutdown.is_set():
        async with shared.read() as state:
            content = formatter(state)
        surface.paint(content, help_line)
        await _wait(shutdown, refresh)
