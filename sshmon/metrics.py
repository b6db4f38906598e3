"""Metric codec: remote commands and parsers for each metric kind.

Every kind maps to exactly one shell command and one parser. CPU and network
are two-phase: the command reads its source file, pauses ``SAMPLE_PAUSE``
seconds, reads it again and prints both readings separated by
``SAMPLE_DELIMITER`` in a single round trip. The parser derives usage or
rates from the two readings.

Parsers are pure and raise :class:`ParseError` for malformed output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# ── Constants ──────────────────────────────────────────────────────────────

SAMPLE_PAUSE = 0.2  # seconds between the two readings of a two-phase command
SAMPLE_DELIMITER = "---sshmon-sample---"
PROCESS_DELIMITER = "---sshmon-procs---"
TOP_PROCESSES = 10


class ParseError(ValueError):
    """Raised when command output cannot be turned into a sample."""


class MetricKind(str, Enum):
    MEM = "mem"
    CPU = "cpu"
    DISK = "disk"
    NET = "net"

    @property
    def label(self) -> str:
        return self.value.upper()

    @classmethod
    def from_name(cls, name: str) -> MetricKind:
        try:
            return cls(name.strip().lower())
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ValueError(f"unknown monitor kind: {name!r} (expected one of {valid})") from None


# Selector order: key "1" is KIND_ORDER[0], and so on.
KIND_ORDER: tuple[MetricKind, ...] = (
    MetricKind.MEM,
    MetricKind.CPU,
    MetricKind.DISK,
    MetricKind.NET,
)

COMMANDS: dict[MetricKind, str] = {
    MetricKind.MEM: "cat /proc/meminfo",
    MetricKind.CPU: (
        f"cat /proc/stat; sleep {SAMPLE_PAUSE}; echo '{SAMPLE_DELIMITER}'; cat /proc/stat; "
        f"echo '{PROCESS_DELIMITER}'; "
        f"ps -eo pid,comm,%cpu,%mem --sort=-%cpu | head -n {TOP_PROCESSES + 1}"
    ),
    MetricKind.DISK: "LC_ALL=C df -P -x tmpfs -x devtmpfs",
    MetricKind.NET: (
        f"cat /proc/net/dev; sleep {SAMPLE_PAUSE}; echo '{SAMPLE_DELIMITER}'; cat /proc/net/dev"
    ),
}


# ── Formatting helpers ─────────────────────────────────────────────────────


def fmt_bytes(n: int | float) -> str:
    """Human-readable byte count (binary prefixes)."""
    v = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(v) < 1024:
            return f"{v:.1f} {unit}"
        v /= 1024
    return f"{v:.1f} TiB"


def fmt_rate(bps: float) -> str:
    """Human-readable transfer rate."""
    if bps < 1024:
        return f"{bps:.0f} B/s"
    if bps < 1024 * 1024:
        return f"{bps / 1024:.1f} KB/s"
    if bps < 1024**3:
        return f"{bps / 1024 ** 2:.1f} MB/s"
    return f"{bps / 1024 ** 3:.1f} GB/s"


# ── Memory ─────────────────────────────────────────────────────────────────


@dataclass
class MemInfo:
    """Subset of /proc/meminfo. All fields are in kB."""

    mem_total_kb: int = 0
    mem_free_kb: int = 0
    mem_available_kb: int | None = None
    buffers_kb: int | None = None
    cached_kb: int | None = None
    swap_total_kb: int | None = None
    swap_free_kb: int | None = None
    other: dict[str, int] = field(default_factory=lambda: dict[str, int]())

    @property
    def total_bytes(self) -> int:
        return self.mem_total_kb * 1024

    @property
    def free_bytes(self) -> int:
        return self.mem_free_kb * 1024

    @property
    def available_bytes(self) -> int | None:
        if self.mem_available_kb is None:
            return None
        return self.mem_available_kb * 1024

    @property
    def used_bytes(self) -> int:
        """Total minus available (preferred) or free, never below zero."""
        avail = self.available_bytes
        if avail is None:
            avail = self.free_bytes
        return max(0, self.total_bytes - avail)

    @property
    def used_percent(self) -> float:
        if self.total_bytes == 0:
            return 0.0
        return self.used_bytes / self.total_bytes * 100.0

    @property
    def swap_used_percent(self) -> float | None:
        if self.swap_total_kb is None or self.swap_free_kb is None or self.swap_total_kb <= 0:
            return None
        used = max(0, self.swap_total_kb - self.swap_free_kb)
        return used / self.swap_total_kb * 100.0


def _leading_int(text: str) -> int | None:
    """Leading digits of the first token: ``"1234 kB"`` → 1234, ``"abc 12"`` → None."""
    tokens = text.split()
    if not tokens:
        return None
    digits = ""
    for ch in tokens[0]:
        if not ch.isdigit():
            break
        digits += ch
    return int(digits) if digits else None


def parse_meminfo(raw: str) -> MemInfo:
    """Parse ``Key:   1234 kB`` lines into a :class:`MemInfo`."""
    values: dict[str, int] = {}
    for line in raw.splitlines():
        key, sep, rest = line.partition(":")
        if not sep:
            continue
        number = _leading_int(rest.strip())
        if number is None:
            continue
        values[key.strip()] = number

    for required in ("MemTotal", "MemFree"):
        if required not in values:
            raise ParseError(f"{required} missing from meminfo output")

    return MemInfo(
        mem_total_kb=values["MemTotal"],
        mem_free_kb=values["MemFree"],
        mem_available_kb=values.get("MemAvailable"),
        buffers_kb=values.get("Buffers"),
        cached_kb=values.get("Cached"),
        swap_total_kb=values.get("SwapTotal"),
        swap_free_kb=values.get("SwapFree"),
        other=values,
    )


# ── CPU ────────────────────────────────────────────────────────────────────


@dataclass
class ProcessInfo:
    pid: int
    name: str
    cpu_percent: float
    mem_percent: float


@dataclass
class CpuInfo:
    usage_percent: float = 0.0
    user: int = 0
    system: int = 0
    idle: int = 0
    top_processes: list[ProcessInfo] = field(default_factory=lambda: list[ProcessInfo]())


def _parse_stat_line(line: str) -> list[int] | None:
    """Return [user, nice, system, idle, iowait, irq, softirq] from a ``cpu`` line."""
    parts = line.split()
    if len(parts) < 8 or parts[0] != "cpu":
        return None
    try:
        return [int(x) for x in parts[1:8]]
    except ValueError:
        return None


def _find_cpu_counters(snapshot: str) -> list[int]:
    for line in snapshot.splitlines():
        if line.startswith("cpu "):
            counters = _parse_stat_line(line)
            if counters is None:
                raise ParseError(f"malformed aggregate cpu line: {line.strip()!r}")
            return counters
    raise ParseError("aggregate cpu line not found in /proc/stat output")


def calc_cpu_usage(first: list[int], second: list[int]) -> float:
    """Usage percent between two counter snapshots; 0 when nothing elapsed."""
    total_1, total_2 = sum(first), sum(second)
    idle_1, idle_2 = first[3] + first[4], second[3] + second[4]
    total_delta = max(0, total_2 - total_1)
    idle_delta = min(max(0, idle_2 - idle_1), total_delta)
    if total_delta == 0:
        return 0.0
    return (total_delta - idle_delta) / total_delta * 100.0


def parse_top_processes(ps_output: str, limit: int = TOP_PROCESSES) -> list[ProcessInfo]:
    """Parse ``ps -eo pid,comm,%cpu,%mem`` output, skipping bad rows."""
    result: list[ProcessInfo] = []
    lines = [line for line in ps_output.splitlines() if line.strip()]
    for line in lines[1:]:  # header
        cols = line.split()
        if len(cols) < 4:
            continue
        try:
            pid = int(cols[0])
            cpu = float(cols[-2])
            mem = float(cols[-1])
        except ValueError:
            continue
        result.append(ProcessInfo(pid=pid, name=" ".join(cols[1:-2]), cpu_percent=cpu, mem_percent=mem))
        if len(result) >= limit:
            break
    return result


def parse_cpu(raw: str) -> CpuInfo:
    stat_part, _, ps_part = raw.partition(PROCESS_DELIMITER)
    snapshots = stat_part.split(SAMPLE_DELIMITER)
    if len(snapshots) < 2:
        raise ParseError("expected two /proc/stat snapshots")

    first = _find_cpu_counters(snapshots[0])
    second = _find_cpu_counters(snapshots[1])

    return CpuInfo(
        usage_percent=calc_cpu_usage(first, second),
        user=second[0],
        system=second[2],
        idle=second[3],
        top_processes=parse_top_processes(ps_part),
    )


# ── Disk ───────────────────────────────────────────────────────────────────


@dataclass
class MountEntry:
    filesystem: str
    size_kb: int
    used_kb: int
    avail_kb: int
    use_percent: float
    mount_point: str


@dataclass
class DiskInfo:
    filesystems: list[MountEntry] = field(default_factory=lambda: list[MountEntry]())

    @property
    def total_bytes(self) -> int:
        return sum(e.size_kb for e in self.filesystems) * 1024

    @property
    def used_bytes(self) -> int:
        return sum(e.used_kb for e in self.filesystems) * 1024

    @property
    def avail_bytes(self) -> int:
        return sum(e.avail_kb for e in self.filesystems) * 1024

    @property
    def used_percent(self) -> float:
        size = sum(e.size_kb for e in self.filesystems)
        if size == 0:
            return 0.0
        return sum(e.used_kb for e in self.filesystems) / size * 100.0


def _int_or_zero(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        return 0


def parse_df(raw: str) -> DiskInfo:
    """Parse ``df -P`` output. Short rows are skipped, bad numbers become 0.

    The header is recognised by having no numeric size/used/available
    column, so a translated header is skipped as well.
    """
    entries: list[MountEntry] = []
    for line in raw.splitlines():
        cols = line.split()
        # Filesystem 1024-blocks Used Available Capacity Mounted-on
        if len(cols) < 6:
            continue
        if not any(c.isdigit() for c in cols[1:4]):
            continue
        try:
            use_percent = float(cols[4].rstrip("%"))
        except ValueError:
            use_percent = 0.0
        entries.append(MountEntry(
            filesystem=cols[0],
            size_kb=_int_or_zero(cols[1]),
            used_kb=_int_or_zero(cols[2]),
            avail_kb=_int_or_zero(cols[3]),
            use_percent=use_percent,
            mount_point=" ".join(cols[5:]),
        ))
    return DiskInfo(filesystems=entries)


# ── Network ────────────────────────────────────────────────────────────────


@dataclass
class NetInterface:
    name: str
    rx_bytes: int
    tx_bytes: int
    rx_rate: float  # bytes/sec
    tx_rate: float  # bytes/sec


@dataclass
class NetInfo:
    interfaces: list[NetInterface] = field(default_factory=lambda: list[NetInterface]())

    @property
    def total_rx_rate(self) -> float:
        return sum(i.rx_rate for i in self.interfaces)

    @property
    def total_tx_rate(self) -> float:
        return sum(i.tx_rate for i in self.interfaces)


def _parse_netdev_table(content: str) -> dict[str, tuple[int, int]]:
    """Map interface name to (rx_bytes, tx_bytes) for one /proc/net/dev read."""
    counters: dict[str, tuple[int, int]] = {}
    for line in content.splitlines():
        if "|" in line:
            continue  # the two header rows
        iface, sep, rest = line.partition(":")
        if not sep:
            continue
        fields = rest.split()
        if len(fields) < 10:
            continue
        try:
            counters[iface.strip()] = (int(fields[0]), int(fields[8]))
        except ValueError:
            continue
    return counters


def calc_net_rates(
    first: dict[str, tuple[int, int]],
    second: dict[str, tuple[int, int]],
    elapsed: float = SAMPLE_PAUSE,
) -> list[NetInterface]:
    """Rates for interfaces present in both readings, in first-reading order."""
    result: list[NetInterface] = []
    for name, (rx1, tx1) in first.items():
        if name not in second:
            continue
        rx2, tx2 = second[name]
        result.append(NetInterface(
            name=name,
            rx_bytes=rx2,
            tx_bytes=tx2,
            rx_rate=max(0.0, (rx2 - rx1) / elapsed),
            tx_rate=max(0.0, (tx2 - tx1) / elapsed),
        ))
    return result


def parse_netdev(raw: str) -> NetInfo:
    snapshots = raw.split(SAMPLE_DELIMITER)
    if len(snapshots) < 2:
        raise ParseError("expected two /proc/net/dev snapshots")
    first = _parse_netdev_table(snapshots[0])
    second = _parse_netdev_table(snapshots[1])
    return NetInfo(interfaces=calc_net_rates(first, second, SAMPLE_PAUSE))


# ── Dispatch ───────────────────────────────────────────────────────────────

MetricValue = MemInfo | CpuInfo | DiskInfo | NetInfo

_PARSERS = {
    MetricKind.MEM: parse_meminfo,
    MetricKind.CPU: parse_cpu,
    MetricKind.DISK: parse_df,
    MetricKind.NET: parse_netdev,
}


def command(kind: MetricKind) -> str:
    return COMMANDS[kind]


def parse(kind: MetricKind, raw: str) -> MetricValue:
    """Parse the output of ``command(kind)``."""
    return _PARSERS[kind](raw)


# ── Summaries ──────────────────────────────────────────────────────────────


def _mem_summary(info: MemInfo) -> str:
    out = (
        f"Total Memory: {fmt_bytes(info.total_bytes)}, "
        f"Used: {fmt_bytes(info.used_bytes)} ({info.used_percent:.2f}%)"
    )
    if info.available_bytes is not None:
        out += f", Available: {fmt_bytes(info.available_bytes)}"
    swap = info.swap_used_percent
    if swap is not None:
        out += f", Swap Used: {swap:.2f}%"
    return out + "\n"


def _cpu_summary(info: CpuInfo) -> str:
    lines = [
        f"CPU Usage: {info.usage_percent:.2f}%",
        f"Top {len(info.top_processes)} processes:",
    ]
    for p in info.top_processes:
        lines.append(
            f"  {p.pid:<10d} {p.name:<20s} {p.cpu_percent:>5.1f}% CPU {p.mem_percent:>5.1f}% MEM"
        )
    return "\n".join(lines) + "\n"


def _disk_summary(info: DiskInfo) -> str:
    if not info.filesystems:
        return "No storage info found\n"
    lines = [
        f"Total Storage: {fmt_bytes(info.total_bytes)}, "
        f"Used: {fmt_bytes(info.used_bytes)} ({info.used_percent:.2f}%), "
        f"Available: {fmt_bytes(info.avail_bytes)}",
        "Mount Points:",
    ]
    for e in info.filesystems:
        lines.append(
            f"  {e.filesystem:<15s} {fmt_bytes(e.used_kb * 1024):>10s} used "
            f"({e.use_percent:>5.1f}%), mount: {e.mount_point}"
        )
    return "\n".join(lines) + "\n"


def _net_summary(info: NetInfo) -> str:
    lines = ["Network Interfaces:"]
    for i in info.interfaces:
        lines.append(f"  {i.name:<10s} RX: {fmt_rate(i.rx_rate):>10s} | TX: {fmt_rate(i.tx_rate):>10s}")
    return "\n".join(lines) + "\n"


def summary(value: MetricValue) -> str:
    """Human-readable text for a sample, as shown in the dashboard."""
    if isinstance(value, MemInfo):
        return _mem_summary(value)
    if isinstance(value, CpuInfo):
        return _cpu_summary(value)
    if isinstance(value, DiskInfo):
        return _disk_summary(value)
    if isinstance(value, NetInfo):
        return _net_summary(value)
    raise TypeError(f"not a metric sample: {value!r}")
