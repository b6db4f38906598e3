"""Multi-host telemetry dashboard over SSH.

Starts one sampler per configured server, an aggregator that folds their
events into the shared dashboard state, and the input/render tasks. Quit
with ``q`` (tui) or Ctrl+C; the process waits for every sampler to stop
before the terminal is restored.

Usage:
    sshmon --config path/to/config.toml
    sshmon --display plain
    sshmon --print-config > ~/.config/sshmon/config.toml
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import curses
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from sshmon.config import (
    DEFAULT_LOG_PATH,
    DISPLAY_MODES,
    ConfigError,
    GlobalSettings,
    HostTarget,
    dump_default_config,
    load_config,
    parse_servers,
    parse_settings,
)
from sshmon.dashboard import CursesSurface, PlainSurface, Surface, input_loop, main_text, plain_text, render_loop
from sshmon.sampler import Sampler, new_event_bus
from sshmon.state import Aggregator, DashboardState, SharedState
from sshmon.transport import Connector, make_connector

log = logging.getLogger("sshmon")


def _install_signal_handlers(shutdown: asyncio.Event) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except (NotImplementedError, RuntimeError, ValueError):
            # Not the main thread, or a platform without signal support.
            continue
        installed.append(sig)
    return installed


async def run(
    settings: GlobalSettings,
    targets: Sequence[HostTarget],
    surface: Surface,
    connect: Connector | None = None,
    shutdown: asyncio.Event | None = None,
) -> SharedState:
    """Run the dashboard until shutdown; return the final shared state."""
    shutdown = shutdown or asyncio.Event()
    connect = connect or make_connector(settings.connect_timeout, settings.command_timeout)
    installed = _install_signal_handlers(shutdown)

    bus = new_event_bus()
    shared = SharedState(DashboardState(t.name for t in targets))
    aggregator = Aggregator(bus, shared)

    samplers = [Sampler(t, bus, shutdown, connect) for t in targets]
    sampler_tasks = [asyncio.create_task(s.run(), name=f"sampler:{s.target.name}") for s in samplers]
    aggregator_task = asyncio.create_task(aggregator.run(), name="aggregator")

    formatter = plain_text if settings.display == "plain" else main_text
    presentation = [
        asyncio.create_task(input_loop(surface, shared, shutdown), name="input"),
        asyncio.create_task(render_loop(surface, shared, shutdown, settings.refresh, formatter), name="render"),
    ]
    log.info("monitoring %d server(s)", len(targets))

    try:
        await asyncio.gather(*presentation)
    finally:
        # Reached on quit, on signal, or if a presentation task failed.
        shutdown.set()
        await asyncio.gather(*presentation, return_exceptions=True)
        # The aggregator keeps draining so no sampler stays blocked on a full bus.
        results = await asyncio.gather(*sampler_tasks, return_exceptions=True)
        for sampler, result in zip(samplers, results):
            if isinstance(result, Exception):
                log.error("sampler for %s failed: %r", sampler.target.name, result, exc_info=result)
        await aggregator.drain()
        aggregator_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await aggregator_task
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)
        log.info(
            "all samplers stopped (%d samples, %d errors)",
            aggregator.samples,
            aggregator.error_count,
        )
    return shared


# ── Logging ─────────────────────────────────────────────────────────────────


def setup_logging(display: str, log_file: Path | None, verbose: bool = False) -> None:
    """tui logs to a file so the screen stays clean; plain logs to stderr."""
    handler: logging.Handler
    if display == "tui":
        path = log_file or DEFAULT_LOG_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    elif log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    logging.getLogger("asyncssh").setLevel(logging.WARNING)


# ── CLI entry point ─────────────────────────────────────────────────────────


def _tui_main(stdscr: curses.window, settings: GlobalSettings, targets: list[HostTarget]) -> None:
    asyncio.run(run(settings, targets, CursesSurface(stdscr)))


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Monitor CPU, memory, disk and network of remote hosts over SSH.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Path to TOML config file (default: ~/.config/sshmon/config.toml)",
    )
    parser.add_argument(
        "--display",
        choices=DISPLAY_MODES,
        default=None,
        help="Override the display mode from the config file",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        metavar="PATH",
        help=f"Write logs here (tui default: {DEFAULT_LOG_PATH})",
    )
    parser.add_argument(
        "--print-config", action="store_true",
        help="Print a default config file and exit",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Log debug messages",
    )
    args = parser.parse_args()

    if args.print_config:
        print(dump_default_config(), end="")
        return

    config = load_config(args.config)
    if args.display is not None:
        config["global"] = {**config.get("global", {}), "display": args.display}
    try:
        settings = parse_settings(config)
        targets = parse_servers(config)
    except ConfigError as e:
        print(f"sshmon: invalid config: {e}", file=sys.stderr)
        raise SystemExit(1) from e

    setup_logging(settings.display, args.log_file or settings.log_file, args.verbose)

    try:
        if settings.display == "tui":
            curses.wrapper(_tui_main, settings, targets)
        else:
            print(f"sshmon: monitoring {len(targets)} server(s) (Ctrl+C to stop)")
            asyncio.run(run(settings, targets, PlainSurface()))
    except KeyboardInterrupt:
        pass
    print("sshmon: stopped.")


if __name__ == "__main__":
    main()
