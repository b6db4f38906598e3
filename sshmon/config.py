"""Configuration loading for sshmon.

Loads settings from TOML config files with sensible defaults.
Search order: explicit --config path → ~/.config/sshmon/config.toml → defaults only.

A config file has one ``[global]`` table and any number of ``[[servers]]``
entries. Each server names exactly one credential: ``password`` or
``privkey_path`` (with an optional ``passphrase``).
"""

from __future__ import annotations

import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sshmon.metrics import MetricKind

MIN_INTERVAL_MS = 200

DEFAULT_CONFIG: dict[str, Any] = {
    "global": {
        "refresh": 500,  # ms between dashboard repaints
        "display": "tui",
        "log_file": "",
        "connect_timeout": 10.0,
        "command_timeout": 10.0,
    },
    "servers": [],
}

SERVER_DEFAULTS: dict[str, Any] = {
    "port": 22,
    "interval": 1000,  # ms between poll rounds
}

DISPLAY_MODES = ("tui", "plain")

_DEFAULT_PATH = Path.home() / ".config" / "sshmon" / "config.toml"
DEFAULT_LOG_PATH = Path.home() / ".cache" / "sshmon" / "sshmon.log"


class ConfigError(ValueError):
    """Raised when a loaded config does not describe a runnable setup."""


# ── Data types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Password:
    secret: str

    def __repr__(self) -> str:
        return "Password(secret='***')"


@dataclass(frozen=True)
class PrivateKey:
    path: Path
    passphrase: str | None = None

    def __repr__(self) -> str:
        masked = None if self.passphrase is None else "***"
        return f"PrivateKey(path={str(self.path)!r}, passphrase={masked!r})"


Credentials = Password | PrivateKey


@dataclass(frozen=True)
class HostTarget:
    """One remote machine to monitor. Immutable after load."""
    name: str
    host: str
    user: str
    credentials: Credentials | None
    monitors: tuple[MetricKind, ...]
    port: int = 22
    interval: float = 1.0  # seconds


@dataclass(frozen=True)
class GlobalSettings:
    refresh: float = 0.5  # seconds
    display: str = "tui"
    log_file: Path | None = None
    connect_timeout: float = 10.0
    command_timeout: float = 10.0


# ── Loading ─────────────────────────────────────────────────────────────────


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration, merging user TOML over defaults.

    Args:
        path: Explicit config file path (from --config). If None, tries the
              default location ~/.config/sshmon/config.toml.

    Returns:
        Merged configuration dict.

    Raises:
        SystemExit: If an explicit path doesn't exist or can't be parsed.
    """
    if path is not None:
        if not path.is_file():
            print(f"sshmon: config file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        try:
            user_config = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            print(f"sshmon: invalid TOML in {path}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
        return _deep_merge(DEFAULT_CONFIG, user_config)

    if _DEFAULT_PATH.is_file():
        try:
            user_config = tomllib.loads(_DEFAULT_PATH.read_text(encoding="utf-8"))
            return _deep_merge(DEFAULT_CONFIG, user_config)
        except tomllib.TOMLDecodeError:
            print(
                f"sshmon: warning: ignoring invalid TOML in {_DEFAULT_PATH}",
                file=sys.stderr,
            )

    return _deep_merge(DEFAULT_CONFIG, {})


# ── Validation ──────────────────────────────────────────────────────────────


def _milliseconds(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{what} must be a number of milliseconds, got {value!r}")
    if value < MIN_INTERVAL_MS:
        raise ConfigError(f"{what} must be at least {MIN_INTERVAL_MS} ms, got {value}")
    return value / 1000.0


def parse_settings(config: dict[str, Any]) -> GlobalSettings:
    """Build GlobalSettings from the ``[global]`` table."""
    section: dict[str, Any] = config.get("global", {})
    display = str(section.get("display", "tui")).lower()
    if display not in DISPLAY_MODES:
        raise ConfigError(f"global display must be one of {DISPLAY_MODES}, got {display!r}")

    log_file = section.get("log_file") or None
    return GlobalSettings(
        refresh=_milliseconds(section.get("refresh", 500), "global refresh"),
        display=display,
        log_file=Path(log_file).expanduser() if log_file else None,
        connect_timeout=float(section.get("connect_timeout", 10.0)),
        command_timeout=float(section.get("command_timeout", 10.0)),
    )


def _credentials(server: dict[str, Any], name: str) -> Credentials:
    password = server.get("password")
    key_path = server.get("privkey_path")
    if password and key_path:
        raise ConfigError(f"server {name}: set either password or privkey_path, not both")
    if key_path:
        return PrivateKey(Path(key_path).expanduser(), server.get("passphrase") or None)
    if password:
        return Password(str(password))
    raise ConfigError(f"server {name}: no authentication method (password or privkey_path)")


def _required_str(server: dict[str, Any], key: str, name: str) -> str:
    value = server.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"server {name}: {key} cannot be empty")
    return value.strip()


def parse_server(server: dict[str, Any]) -> HostTarget:
    """Validate one ``[[servers]]`` entry into a HostTarget."""
    entry = {**SERVER_DEFAULTS, **server}
    name = _required_str(entry, "name", "<unnamed>")
    host = _required_str(entry, "host", name)
    user = _required_str(entry, "user", name)

    port = entry["port"]
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise ConfigError(f"server {name}: port must be between 1 and 65535")

    monitors = entry.get("monitors") or []
    if not monitors:
        raise ConfigError(f"server {name}: at least one monitor must be specified")
    try:
        kinds = tuple(MetricKind.from_name(str(m)) for m in monitors)
    except ValueError as e:
        raise ConfigError(f"server {name}: {e}") from e

    return HostTarget(
        name=name,
        host=host,
        port=port,
        user=user,
        credentials=_credentials(entry, name),
        monitors=tuple(dict.fromkeys(kinds)),
        interval=_milliseconds(entry["interval"], f"server {name}: interval"),
    )


def parse_servers(config: dict[str, Any]) -> list[HostTarget]:
    """Build the HostTarget list, in config order. Names must be unique."""
    servers = config.get("servers", [])
    if not isinstance(servers, list):
        raise ConfigError("servers must be an array of tables ([[servers]])")
    targets = [parse_server(s) for s in servers]
    seen: set[str] = set()
    for t in targets:
        if t.name in seen:
            raise ConfigError(f"duplicate server name: {t.name}")
        seen.add(t.name)
    return targets


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    g = DEFAULT_CONFIG["global"]
    lines = [
        "# sshmon configuration",
        "# Place this file at ~/.config/sshmon/config.toml",
        "",
        "[global]",
        f"refresh = {g['refresh']}",
        f'display = "{g["display"]}"',
        f'log_file = "{g["log_file"]}"',
        f"connect_timeout = {g['connect_timeout']}",
        f"command_timeout = {g['command_timeout']}",
        "",
        "# One [[servers]] table per host. Use either password or privkey_path.",
        "#",
        "# [[servers]]",
        '# name = "web-1"',
        '# host = "10.0.0.5"',
        f"# port = {SERVER_DEFAULTS['port']}",
        '# user = "monitor"',
        '# privkey_path = "~/.ssh/id_ed25519"',
        '# passphrase = ""',
        f"# interval = {SERVER_DEFAULTS['interval']}",
        "# monitors = [" + ", ".join(f'"{k.value}"' for k in MetricKind) + "]",
    ]
    return "\n".join(lines) + "\n"
