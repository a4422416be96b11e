"""Connectivity manager — top-level entity of the door sensor monitor.

A :class:`ConnectivityManager` owns the fixed set of
:class:`~pyDoorSensors.device.DeviceRecord` objects built from the
configuration and, while active, one
:class:`~pyDoorSensors.supervisor.ConnectionSupervisor` per device.  It
is driven by the external network-availability signal and publishes a
fresh :class:`~pyDoorSensors.aggregator.AggregateView` to the
presentation sink after every state change.

Usage example::

    import asyncio
    from pyDoorSensors import ConnectivityManager, load_config

    def show(view):
        print(view.summary(), view.open_ids)

    async def main():
        config = load_config("config/defaults.yaml", "config/local.yaml")
        async with ConnectivityManager(config, sink=show) as manager:
            await manager.set_network_available(True)
            await asyncio.Event().wait()  # run forever

    asyncio.run(main())

Concurrency
~~~~~~~~~~~

Everything runs on one asyncio event loop.  Supervisors never touch a
record directly: they call :meth:`ConnectivityManager._update_device`,
which checks the generation guard, mutates the record and recomputes
the aggregate without yielding in between.  The presentation sink
therefore never observes a half-applied update.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Set

import aiohttp

from pyDoorSensors.aggregator import AggregateView, compute_view
from pyDoorSensors.config import DoorSensorConfig
from pyDoorSensors.device import DeviceRecord
from pyDoorSensors.enums import ManagerState, NetworkStatus
from pyDoorSensors.reconciler import StateReconciler
from pyDoorSensors.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

#: Signature of the presentation sink.  Called with the fresh view after
#: every state change.  May return an awaitable, which is scheduled as a
#: task and not awaited.
PresentationSink = Callable[[AggregateView], Any]


class ConnectivityManager:
    """Supervises one event stream per configured door sensor.

    Parameters
    ----------
    config:
        The device set, credentials and timing.  The device set is
        fixed for the lifetime of the manager.  Completeness is checked
        by :meth:`activate`.
    sink:
        Presentation sink receiving an :class:`AggregateView` after
        every change.  Exceptions raised by it are logged and ignored.
    session:
        HTTP client session to use.  When omitted the manager creates
        one on first activation and closes it in :meth:`close`.
    """

    def __init__(
        self,
        config: DoorSensorConfig,
        *,
        sink: Optional[PresentationSink] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._config = config
        self._sink = sink

        # --- device records (fixed, in configuration order) -----------
        self._records: Dict[str, DeviceRecord] = {
            device_id: DeviceRecord(device_id, name)
            for device_id, name in config.devices.items()
        }

        # --- HTTP -----------------------------------------------------
        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session: bool = session is None
        self._reconciler: Optional[StateReconciler] = None

        # --- runtime state --------------------------------------------
        self._state = ManagerState.INACTIVE
        self._network_status = NetworkStatus.UNKNOWN
        self._supervisors: Dict[str, ConnectionSupervisor] = {}
        self._sink_tasks: Set[asyncio.Task] = set()

        # Held for the whole of activate / deactivate, so a flapping
        # network signal is applied one transition at a time.
        self._lifecycle_lock = asyncio.Lock()

    # ---- read-only accessors -----------------------------------------

    @property
    def config(self) -> DoorSensorConfig:
        return self._config

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is ManagerState.ACTIVE

    @property
    def network_status(self) -> NetworkStatus:
        """Last network availability reported via :meth:`set_network_available`."""
        return self._network_status

    @property
    def devices(self) -> List[DeviceRecord]:
        """All device records, in configuration order."""
        return list(self._records.values())

    def get_device(self, device_id: str) -> DeviceRecord:
        """Look up a device record.

        Raises
        ------
        KeyError
            If *device_id* is not part of the configured device set.
        """
        try:
            return self._records[device_id]
        except KeyError:
            raise KeyError(f"Unknown device {device_id!r}") from None

    def get_supervisor(self, device_id: str) -> Optional[ConnectionSupervisor]:
        """The running supervisor of *device_id*, if any."""
        return self._supervisors.get(device_id)

    @property
    def supervisors(self) -> Dict[str, ConnectionSupervisor]:
        """A copy of the supervisor table (keyed by device id)."""
        return dict(self._supervisors)

    def view(self) -> AggregateView:
        """Compute the aggregate view from the current records."""
        return compute_view(self._records.values())

    # ---- lifecycle ---------------------------------------------------

    async def activate(self) -> None:
        """Start one supervisor per device.

        Idempotent: devices whose supervisor is already running are left
        alone, so no device ever gets a second live stream.

        Raises
        ------
        ConfigurationError
            If the configuration is incomplete.
        """
        async with self._lifecycle_lock:
            self._activate()

    async def deactivate(self) -> None:
        """Stop all supervisors and reset every device to offline/closed.

        The sink is notified exactly once, with an empty aggregate.
        Idempotent.
        """
        async with self._lifecycle_lock:
            await self._deactivate()

    async def set_network_available(self, available: bool) -> None:
        """Feed the external network signal into the manager.

        Signals are applied in the order they arrive; a transition
        still in progress is finished before the next one starts.
        """
        async with self._lifecycle_lock:
            if available:
                self._network_status = NetworkStatus.ONLINE
                logger.info("Network available")
                self._activate()
            else:
                self._network_status = NetworkStatus.OFFLINE
                logger.info("Network unavailable")
                await self._deactivate()

    def _activate(self) -> None:
        self._config.validate()

        session = self._ensure_session()
        if self._reconciler is None:
            self._reconciler = StateReconciler(
                session,
                self._config.base_url,
                self._config.access_token,
                request_timeout=self._config.request_timeout,
            )

        started = 0
        for device_id, record in self._records.items():
            supervisor = self._supervisors.get(device_id)
            if supervisor is None:
                supervisor = ConnectionSupervisor(
                    manager=self,
                    record=record,
                    session=session,
                    base_url=self._config.base_url,
                    access_token=self._config.access_token,
                    reconciler=self._reconciler,
                    reconnect_delay=self._config.reconnect_delay,
                    retry_delay=self._config.retry_delay,
                    connect_timeout=self._config.connect_timeout,
                )
                self._supervisors[device_id] = supervisor
            if supervisor.is_running:
                continue
            supervisor.start()
            started += 1

        self._state = ManagerState.ACTIVE
        logger.info(
            "Activated — started %d of %d supervisor(s)",
            started, len(self._records),
        )

    async def _deactivate(self) -> None:
        supervisors = list(self._supervisors.values())
        self._supervisors.clear()
        if supervisors:
            await asyncio.gather(*(s.stop() for s in supervisors))

        for record in self._records.values():
            record.reset()

        was_active = self._state is ManagerState.ACTIVE
        self._state = ManagerState.INACTIVE
        if was_active:
            logger.info("Deactivated — %d supervisor(s) stopped", len(supervisors))
        self._publish()

    async def close(self) -> None:
        """Deactivate and release the HTTP session (if owned)."""
        if self._state is ManagerState.ACTIVE or self._supervisors:
            await self.deactivate()

        for task in list(self._sink_tasks):
            task.cancel()
        if self._sink_tasks:
            await asyncio.gather(*self._sink_tasks, return_exceptions=True)
        self._sink_tasks.clear()

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._reconciler = None

    async def __aenter__(self) -> ConnectivityManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            if not self._owns_session:
                raise RuntimeError("The provided HTTP session is closed")
            self._session = aiohttp.ClientSession()
            self._reconciler = None
        return self._session

    # ---- state updates (called by supervisors) -----------------------

    def _update_device(
        self,
        device_id: str,
        generation: int,
        *,
        online: Optional[bool] = None,
        is_open: Optional[bool] = None,
    ) -> bool:
        """Apply a state change reported by a supervisor.

        Unknown devices and stale generations are ignored.  If the
        record changed, the aggregate is recomputed and published
        before this method returns.

        Returns
        -------
        bool
            ``True`` if the update was accepted (even if it changed
            nothing), ``False`` if it was dropped.
        """
        record = self._records.get(device_id)
        if record is None:
            logger.warning("Update for unknown device %s — ignoring", device_id)
            return False

        if record.is_stale(generation):
            logger.debug(
                "Dropping stale update for '%s' (generation %d < %d)",
                record.name, generation, record.generation,
            )
            return False

        if record.apply(online=online, is_open=is_open):
            self._publish()
        return True

    # ---- presentation ------------------------------------------------

    def _publish(self) -> AggregateView:
        """Recompute the aggregate and hand it to the sink."""
        view = self.view()
        logger.debug("Aggregate: %s %s", view.summary(), view.open_ids)
        if self._sink is None:
            return view

        try:
            result = self._sink(view)
        except Exception:  # noqa: BLE001
            logger.exception("Error in presentation sink")
            return view

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._sink_tasks.add(task)
            task.add_done_callback(self._on_sink_done)
        return view

    def _on_sink_done(self, task: asyncio.Task) -> None:
        self._sink_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Error in presentation sink: %r", exc)

    # ---- dunder ------------------------------------------------------

    def __repr__(self) -> str:
        return (
            f"ConnectivityManager(state={self._state.name}, "
            f"devices={len(self._records)}, "
            f"network={self._network_status.name})"
        )
