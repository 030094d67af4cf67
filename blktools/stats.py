"""Per-device, per-CPU trace statistics and their end-of-run report."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from blktools.trace import TRACE_SIZE


@dataclass
class CpuStats:
    """Bytes read and events seen on one CPU."""

    data_read: int = 0
    nevents: int = 0

    def _events(self) -> int:
        # When events were not counted, estimate them from the data size.
        return self.nevents if self.nevents else self.data_read // TRACE_SIZE


@dataclass
class DeviceStats:
    """Statistics for one traced device."""

    name: str
    cpus: List[CpuStats] = field(default_factory=list)
    drops: int = 0


def format_stats(devices: Iterable[DeviceStats]) -> str:
    """Render the end-of-run report for all devices."""
    lines = []
    for dev in devices:
        lines.append(f"=== {dev.name} ===")
        data_read = 0
        nevents = 0
        for cpu, stats in enumerate(dev.cpus):
            events = stats._events()
            lines.append(
                f"  CPU{cpu:3d}: {events:20d} events, "
                f"{(stats.data_read + 1023) >> 10:8d} KiB data"
            )
            data_read += stats.data_read
            nevents += events
        lines.append(
            f"  Total:  {nevents:20d} events (dropped {dev.drops}),"
            f" {(data_read + 1024) >> 10:8d} KiB data"
        )
    return "".join(line + "\n" for line in lines)


def drop_warning(total_drops: int, total_events: int) -> Optional[str]:
    """Warning about dropped events, or None when nothing was dropped."""
    if not total_drops:
        return None
    ratio = total_drops / total_events if total_events else 1.0
    return (
        f"\nYou have {total_drops} ({100.0 * ratio:5.1f}%) dropped events\n"
        "Consider using a larger buffer size (-b) and/or more buffers (-n)\n"
    )