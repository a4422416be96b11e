"""Per-device event-stream supervision.

A :class:`ConnectionSupervisor` owns the lifecycle of the push-stream
connection for one door sensor:

1. **Connect** — :meth:`~ConnectionSupervisor.start` closes any current
   stream, starts a new *connection generation* and opens the device's
   event stream in a background task.  When the stream opens, the
   :class:`~pyDoorSensors.reconciler.StateReconciler` is asked for the
   authoritative door state.
2. **Operate** — ``doorMessage`` events update ``open``;
   ``spark/status`` events update ``online`` (and trigger another
   reconciliation when the device comes back online).
3. **Recover** — when the stream drops, the device is marked offline.
   Transient failures (network errors, EOF, gateway statuses) are
   retried by the transport after a short delay, like a browser
   ``EventSource`` would.  When the transport gives up (ready state
   ``CLOSED``) the supervisor schedules a fresh :meth:`start` after a
   fixed :data:`RECONNECT_DELAY`, indefinitely.
4. **Stop** — :meth:`~ConnectionSupervisor.stop` cancels the stream,
   any in-flight reconciliation and any pending reconnect.

Generation guard
~~~~~~~~~~~~~~~~

Every connection attempt gets a new generation from the
:class:`~pyDoorSensors.device.DeviceRecord`.  Events, failures and
reconciliation results are tagged with the generation they belong to
and the manager drops anything whose generation has been superseded.
:meth:`~ConnectionSupervisor.stop` also bumps the generation, so a
cancelled fetch that still completes is a no-op.

All state changes go through
:meth:`ConnectivityManager._update_device
<pyDoorSensors.manager.ConnectivityManager._update_device>`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Optional, Set, Tuple

import aiohttp

from pyDoorSensors.connection import (
    DEFAULT_RETRY_DELAY,
    EventStreamConnection,
    ServerSentEvent,
    StreamClosedError,
)
from pyDoorSensors.enums import (
    DEVICE_ONLINE,
    DOOR_OPEN,
    EVENT_DEVICE_STATUS,
    EVENT_DOOR_MESSAGE,
    ReadyState,
    SupervisorState,
)

if TYPE_CHECKING:
    from pyDoorSensors.device import DeviceRecord
    from pyDoorSensors.manager import ConnectivityManager
    from pyDoorSensors.reconciler import StateReconciler

logger = logging.getLogger(__name__)

#: Fixed delay in seconds before reconnecting after a terminal failure.
RECONNECT_DELAY: float = 3.0

#: Failures after which the transport re-opens the stream by itself.
#: ``StreamClosedError`` is a ``ConnectionError`` too and must be
#: handled before these.
TRANSIENT_ERRORS: Tuple[type, ...] = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    OSError,
    ValueError,
)


def decode_event_data(data: str) -> Tuple[str, Optional[str]]:
    """Split a Particle event ``data`` field into ``(payload, coreid)``.

    Particle wraps the published value in a JSON envelope::

        {"data": "open", "ttl": 60, "published_at": "...", "coreid": "..."}

    Anything that is not such an envelope is taken as the raw payload.
    """
    try:
        envelope = json.loads(data)
    except ValueError:
        return data, None
    if not isinstance(envelope, dict):
        return data, None
    payload = envelope.get("data")
    core_id = envelope.get("coreid")
    return (
        "" if payload is None else str(payload),
        str(core_id) if core_id else None,
    )


class ConnectionSupervisor:
    """Keeps one event-stream connection alive for one device.

    Parameters
    ----------
    manager:
        The owning :class:`~pyDoorSensors.manager.ConnectivityManager`;
        all state updates are routed through it.
    record:
        The device's :class:`~pyDoorSensors.device.DeviceRecord`.
    session:
        Shared HTTP client session.
    base_url:
        API root, e.g. ``"https://api.particle.io"``.
    access_token:
        Particle access token, sent as the ``access_token`` parameter.
    reconciler:
        Used for the one-shot state fetch after (re)connecting.
    reconnect_delay:
        Seconds to wait before :meth:`start` is retried after a
        terminal failure.
    retry_delay:
        Seconds the transport waits before re-opening after a transient
        failure, unless the server sent a ``retry:`` field.
    connect_timeout:
        Timeout for opening the stream, ``None`` for no limit.
    """

    def __init__(
        self,
        *,
        manager: ConnectivityManager,
        record: DeviceRecord,
        session: aiohttp.ClientSession,
        base_url: str,
        access_token: str,
        reconciler: StateReconciler,
        reconnect_delay: float = RECONNECT_DELAY,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        connect_timeout: Optional[float] = None,
    ) -> None:
        self._manager = manager
        self._record = record
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._reconciler = reconciler
        self._reconnect_delay = reconnect_delay
        self._retry_delay = retry_delay
        self._connect_timeout = connect_timeout

        self._state = SupervisorState.IDLE
        self._ready_state = ReadyState.CLOSED

        self._task: Optional[asyncio.Task] = None
        self._conn: Optional[EventStreamConnection] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconcile_tasks: Set[asyncio.Task] = set()

        # Number of streams successfully opened so far.
        self._connect_count: int = 0

    # ---- public properties -------------------------------------------

    @property
    def device_id(self) -> str:
        return self._record.device_id

    @property
    def record(self) -> DeviceRecord:
        return self._record

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def ready_state(self) -> ReadyState:
        """Ready state of the underlying transport."""
        return self._ready_state

    @property
    def is_running(self) -> bool:
        """``True`` between :meth:`start` and :meth:`stop`."""
        return self._state in (
            SupervisorState.CONNECTING,
            SupervisorState.CONNECTED,
            SupervisorState.WAITING,
        )

    @property
    def connection(self) -> Optional[EventStreamConnection]:
        """The live stream, if one is open."""
        return self._conn

    @property
    def connect_count(self) -> int:
        return self._connect_count

    @property
    def reconnect_pending(self) -> bool:
        """``True`` while a reconnect timer is scheduled."""
        return self._reconnect_handle is not None

    @property
    def events_url(self) -> str:
        return f"{self._base_url}/v1/devices/{self.device_id}/events"

    # ---- lifecycle ---------------------------------------------------

    def start(self) -> None:
        """Open a new stream, closing the current one first.

        Must be called from within a running event loop.
        """
        self._teardown()
        generation = self._record.next_generation()
        self._state = SupervisorState.CONNECTING
        self._ready_state = ReadyState.CONNECTING
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(generation))
        self._task.add_done_callback(self._on_run_done)
        logger.debug(
            "Supervisor for '%s' started (generation %d)",
            self._record.name, generation,
        )

    async def stop(self) -> None:
        """Close the stream and cancel pending work.  No reconnect follows."""
        pending = self._teardown()
        self._record.next_generation()
        self._state = SupervisorState.STOPPED
        self._ready_state = ReadyState.CLOSED
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.debug("Supervisor for '%s' stopped", self._record.name)

    def _teardown(self) -> list:
        """Cancel the timer, tasks and stream; return the cancelled tasks."""
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        pending = []
        for task in list(self._reconcile_tasks):
            if not task.done():
                task.cancel()
                pending.append(task)
        self._reconcile_tasks.clear()

        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            pending.append(task)

        if self._conn is not None:
            self._conn.close()
            self._conn = None
        return pending

    # ---- main loop ---------------------------------------------------

    async def _run(self, generation: int) -> None:
        """Open the stream and pump events until a terminal failure."""
        last_event_id: Optional[str] = None

        while True:
            self._ready_state = ReadyState.CONNECTING
            self._state = SupervisorState.CONNECTING
            try:
                conn = await EventStreamConnection.open(
                    self._session,
                    self.events_url,
                    params={"access_token": self._access_token},
                    last_event_id=last_event_id,
                    connect_timeout=self._connect_timeout,
                )
            except StreamClosedError as exc:
                self._ready_state = ReadyState.CLOSED
                self._on_failure(generation, exc)
                return
            except TRANSIENT_ERRORS as exc:
                self._on_failure(generation, exc)
                generation = self._record.next_generation()
                await asyncio.sleep(self._retry_delay)
                continue

            self._conn = conn
            self._connect_count += 1
            self._ready_state = ReadyState.OPEN
            self._state = SupervisorState.CONNECTED
            logger.info(
                "Connected to event stream of '%s'", self._record.name
            )
            self._on_open(generation)

            error: BaseException = ConnectionError("event stream ended")
            try:
                while True:
                    event = await conn.receive()
                    if event is None:
                        break
                    self._on_push_event(generation, event)
            except TRANSIENT_ERRORS as exc:
                error = exc
            finally:
                conn.close()
                if self._conn is conn:
                    self._conn = None

            if conn.last_event_id:
                last_event_id = conn.last_event_id
            retry = conn.retry if conn.retry is not None else self._retry_delay

            self._ready_state = ReadyState.CONNECTING
            self._on_failure(generation, error)
            generation = self._record.next_generation()
            await asyncio.sleep(retry)

    def _on_run_done(self, task: asyncio.Task) -> None:
        """Treat an unexpected crash of the stream task as terminal."""
        if task is not self._task:
            # Replaced by start() or torn down by stop().
            return
        self._task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return

        logger.error(
            "Event stream task for '%s' crashed: %r", self._record.name, exc
        )
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        self._ready_state = ReadyState.CLOSED
        self._on_failure(self._record.generation, exc)

    # ---- callbacks ---------------------------------------------------

    def _on_open(self, generation: int) -> None:
        self._reconcile(generation)

    def _on_push_event(self, generation: int, event: ServerSentEvent) -> None:
        """Apply one push event from the stream of *generation*."""
        if event.event not in (EVENT_DOOR_MESSAGE, EVENT_DEVICE_STATUS):
            logger.debug(
                "Ignoring %s event for '%s'", event.event, self._record.name
            )
            return

        payload, core_id = decode_event_data(event.data)
        if core_id is not None and core_id != self.device_id:
            logger.warning(
                "Event %s on stream of %s names device %s — ignoring",
                event.event, self.device_id, core_id,
            )
            return

        if event.event == EVENT_DOOR_MESSAGE:
            self._manager._update_device(
                self.device_id, generation, is_open=(payload == DOOR_OPEN)
            )
            return

        # spark/status
        if payload == DEVICE_ONLINE:
            applied = self._manager._update_device(
                self.device_id, generation, online=True
            )
            if applied:
                self._reconcile(generation)
        else:
            logger.info(
                "Device '%s' reported %s", self._record.name, payload or "offline"
            )
            self._manager._update_device(
                self.device_id, generation, online=False
            )

    def _on_failure(self, generation: int, exc: BaseException) -> None:
        """Mark the device offline; reconnect if the transport gave up."""
        self._cancel_reconciles()
        logger.warning(
            "Error communicating with '%s': %s", self._record.name, exc
        )
        self._manager._update_device(self.device_id, generation, online=False)

        if self._ready_state is ReadyState.CLOSED:
            self._state = SupervisorState.WAITING
            logger.info(
                "Attempting to reconnect with '%s' in %.1f seconds",
                self._record.name, self._reconnect_delay,
            )
            loop = asyncio.get_running_loop()
            self._reconnect_handle = loop.call_later(
                self._reconnect_delay, self._reconnect
            )

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._state is SupervisorState.WAITING:
            self.start()

    # ---- reconciliation ----------------------------------------------

    def _reconcile(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._fetch_and_apply(generation))
        self._reconcile_tasks.add(task)
        task.add_done_callback(self._on_reconcile_done)

    def _on_reconcile_done(self, task: asyncio.Task) -> None:
        self._reconcile_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Unexpected error reconciling '%s': %r", self._record.name, exc
            )

    async def _fetch_and_apply(self, generation: int) -> None:
        is_open = await self._reconciler.fetch_current_state(self.device_id)
        if is_open is None:
            return
        self._manager._update_device(
            self.device_id, generation, online=True, is_open=is_open
        )

    def _cancel_reconciles(self) -> None:
        for task in list(self._reconcile_tasks):
            task.cancel()
        self._reconcile_tasks.clear()

    # ---- dunder ------------------------------------------------------

    def __repr__(self) -> str:
        return (
            f"ConnectionSupervisor(device={self.device_id!r}, "
            f"state={self._state.name}, ready={self._ready_state.name})"
        )
