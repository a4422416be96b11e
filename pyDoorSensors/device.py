"""Per-device state record.

A :class:`DeviceRecord` holds the mutable state of one door sensor:
identity, display name, the ``online`` / ``open`` flags and the
*connection generation* used to discard callbacks from superseded
connection attempts.

Records are created once by the
:class:`~pyDoorSensors.manager.ConnectivityManager` from the configured
device set and are mutated only through the manager's update API, on
the event-loop thread.

The ``open`` flag is retained while the device is offline (for display
continuity); consumers must use :attr:`DeviceRecord.status` or the
aggregator, which both ignore ``open`` for offline devices.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from pyDoorSensors.enums import DeviceStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceSnapshot:
    """Immutable copy of a :class:`DeviceRecord` handed to presentation."""

    device_id: str
    name: str
    online: bool
    open: bool

    @property
    def status(self) -> DeviceStatus:
        if not self.online:
            return DeviceStatus.DISCONNECTED
        return DeviceStatus.OPEN if self.open else DeviceStatus.CLOSED

    @property
    def is_open(self) -> bool:
        """``True`` when the device counts towards the aggregate."""
        return self.online and self.open


class DeviceRecord:
    """Mutable state of one configured door sensor.

    Parameters
    ----------
    device_id:
        Opaque, stable device identifier.
    name:
        Human-readable label.  Surrounding whitespace is stripped.
    """

    def __init__(self, device_id: str, name: Optional[str] = None) -> None:
        if not device_id:
            raise ValueError("device_id must be a non-empty string")
        self._device_id: str = str(device_id)
        self._name: str = (name or "").strip() or self._device_id

        self._online: bool = False
        self._open: bool = False
        self._generation: int = 0

    # ---- identity (read-only) ----------------------------------------

    @property
    def device_id(self) -> str:
        """The device identifier (immutable)."""
        return self._device_id

    @property
    def name(self) -> str:
        """The display name (immutable)."""
        return self._name

    # ---- state -------------------------------------------------------

    @property
    def online(self) -> bool:
        return self._online

    @property
    def open(self) -> bool:
        """Last reported door state; stale while :attr:`online` is false."""
        return self._open

    @property
    def status(self) -> DeviceStatus:
        """Display status derived from ``online`` and ``open``."""
        if not self._online:
            return DeviceStatus.DISCONNECTED
        return DeviceStatus.OPEN if self._open else DeviceStatus.CLOSED

    @property
    def is_open(self) -> bool:
        """``True`` iff the device is online *and* open."""
        return self._online and self._open

    def apply(
        self,
        *,
        online: Optional[bool] = None,
        is_open: Optional[bool] = None,
    ) -> bool:
        """Set ``online`` and/or ``open``; ``None`` leaves a field as is.

        Returns ``True`` if anything changed.
        """
        changed = False
        if online is not None and bool(online) != self._online:
            self._online = bool(online)
            changed = True
        if is_open is not None and bool(is_open) != self._open:
            self._open = bool(is_open)
            changed = True
        if changed:
            logger.debug(
                "Device '%s' → online=%s open=%s",
                self._name, self._online, self._open,
            )
        return changed

    def reset(self) -> bool:
        """Force ``online=False, open=False``.  Returns ``True`` if changed."""
        return self.apply(online=False, is_open=False)

    # ---- connection generation ---------------------------------------

    @property
    def generation(self) -> int:
        """Current connection generation (monotonically increasing)."""
        return self._generation

    def next_generation(self) -> int:
        """Start a new generation and return it.

        Everything tagged with an older generation becomes stale.
        """
        self._generation += 1
        return self._generation

    def is_stale(self, generation: int) -> bool:
        """``True`` if *generation* has been superseded."""
        return generation < self._generation

    # ---- snapshot ----------------------------------------------------

    def snapshot(self) -> DeviceSnapshot:
        return DeviceSnapshot(
            device_id=self._device_id,
            name=self._name,
            online=self._online,
            open=self._open,
        )

    # ---- dunder ------------------------------------------------------

    def __repr__(self) -> str:
        return (
            f"DeviceRecord(device_id={self._device_id!r}, "
            f"name={self._name!r}, online={self._online}, "
            f"open={self._open}, generation={self._generation})"
        )
