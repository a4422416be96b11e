"""pyDoorSensors - live open/closed status of Particle door sensors."""

__version__ = "0.1.0"

from pyDoorSensors.enums import (  # noqa: F401 – re-export for convenience
    DEVICE_ONLINE,
    DOOR_CLOSED,
    DOOR_OPEN,
    EVENT_DEVICE_STATUS,
    EVENT_DOOR_MESSAGE,
    DeviceStatus,
    ManagerState,
    NetworkStatus,
    ReadyState,
    SupervisorState,
)

from pyDoorSensors.device import DeviceRecord, DeviceSnapshot  # noqa: F401

from pyDoorSensors.aggregator import (  # noqa: F401
    AggregateView,
    compute_view,
    open_devices,
)

from pyDoorSensors.connection import (  # noqa: F401
    DEFAULT_RETRY_DELAY,
    EventStreamConnection,
    ServerSentEvent,
    StreamClosedError,
    TransientStreamError,
)

from pyDoorSensors.config import (  # noqa: F401
    DEFAULT_BASE_URL,
    ConfigurationError,
    DoorSensorConfig,
    load_config,
)

from pyDoorSensors.reconciler import StateReconciler  # noqa: F401

from pyDoorSensors.supervisor import (  # noqa: F401
    RECONNECT_DELAY,
    ConnectionSupervisor,
)

from pyDoorSensors.manager import (  # noqa: F401
    ConnectivityManager,
    PresentationSink,
)
