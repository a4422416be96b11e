"""Aggregate view over the device record set.

The aggregate is never stored: :func:`compute_view` builds it from the
live records every time it is called, so it is always consistent with
the record state at that instant.  A device contributes to the
aggregate only if it is online *and* open — a stale ``open`` flag on an
offline device is ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Tuple

from pyDoorSensors.device import DeviceRecord, DeviceSnapshot
from pyDoorSensors.enums import DeviceStatus


@dataclass(frozen=True)
class AggregateView:
    """Snapshot of all devices plus the derived open set.

    Attributes
    ----------
    devices:
        Snapshots of every configured device, in configuration order.
    open_devices:
        The subset of *devices* that are online and open.
    """

    devices: Tuple[DeviceSnapshot, ...]
    open_devices: Tuple[DeviceSnapshot, ...]

    @property
    def count(self) -> int:
        """Number of devices currently online and open."""
        return len(self.open_devices)

    @property
    def open_ids(self) -> List[str]:
        return [d.device_id for d in self.open_devices]

    def status_list(self) -> List[Tuple[str, DeviceStatus]]:
        """``(name, status)`` pairs for every device, e.g. for a menu."""
        return [(d.name, d.status) for d in self.devices]

    def summary(self) -> str:
        """One-line text such as ``"1 of 4 open"``."""
        return f"{self.count} of {len(self.devices)} open"


def open_devices(records: Iterable[DeviceRecord]) -> List[DeviceRecord]:
    """Return the records that are online and open, in input order."""
    return [r for r in records if r.online and r.open]


def compute_view(records: Iterable[DeviceRecord]) -> AggregateView:
    """Build a fresh :class:`AggregateView` from *records*."""
    devices = tuple(r.snapshot() for r in records)
    return AggregateView(
        devices=devices,
        open_devices=tuple(d for d in devices if d.is_open),
    )
