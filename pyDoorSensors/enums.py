"""Door sensor monitoring enumerations.

This module contains the state enums shared by the connection layer,
the per-device supervisors and the connectivity manager, plus the
event names used on the Particle device event stream.
"""

from enum import Enum, IntEnum, unique


# ---------------------------------------------------------------------------
#  Wire-level names (Particle cloud event stream)
# ---------------------------------------------------------------------------


#: Event published by the door sensor firmware with ``"open"`` / ``"closed"``.
EVENT_DOOR_MESSAGE: str = "doorMessage"

#: Event published by the Particle cloud when a device connects to or
#: disconnects from its power source / the cloud.
EVENT_DEVICE_STATUS: str = "spark/status"

#: Payload values of the events above.
DOOR_OPEN: str = "open"
DOOR_CLOSED: str = "closed"
DEVICE_ONLINE: str = "online"


# ---------------------------------------------------------------------------
#  Transport state
# ---------------------------------------------------------------------------


@unique
class ReadyState(IntEnum):
    """Ready state of an event-stream transport.

    The values match the ``readyState`` constants of a browser
    ``EventSource``.
    """

    CONNECTING = 0
    """Opening, or waiting to re-open after a transient error."""

    OPEN = 1
    """The stream is established and delivering events."""

    CLOSED = 2
    """Terminal: the transport gave up and will not retry by itself."""


# ---------------------------------------------------------------------------
#  Per-device status
# ---------------------------------------------------------------------------


@unique
class DeviceStatus(Enum):
    """Display status of one door sensor."""

    DISCONNECTED = "disconnected"
    OPEN = "open"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
#  Manager / supervisor lifecycle
# ---------------------------------------------------------------------------


@unique
class ManagerState(Enum):
    """State of the :class:`~pyDoorSensors.manager.ConnectivityManager`."""

    INACTIVE = "inactive"
    """No supervisors running; every device is offline."""

    ACTIVE = "active"
    """One supervisor running per configured device."""


@unique
class SupervisorState(Enum):
    """State of one :class:`~pyDoorSensors.supervisor.ConnectionSupervisor`."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    WAITING = "waiting"
    """Terminal transport failure; a reconnect is scheduled."""
    STOPPED = "stopped"


@unique
class NetworkStatus(Enum):
    """Last known network availability, as reported from outside."""

    UNKNOWN = "Checking connection to Internet..."
    ONLINE = "Online"
    OFFLINE = "Offline"

    @property
    def label(self) -> str:
        """Human-readable label for menus and tooltips."""
        return self.value
