"""Low-level server-sent-event (SSE) stream over HTTP.

The Particle cloud delivers device events as a ``text/event-stream``
HTTP response that never ends.  Every event is a block of
``field: value`` lines terminated by a blank line::

    event: doorMessage
    data: {"data":"open","ttl":60,"published_at":"...","coreid":"..."}

This module provides :class:`EventStreamConnection`, which wraps one
streaming :class:`aiohttp.ClientResponse` and exposes a ``receive``
coroutine returning parsed :class:`ServerSentEvent` objects.  It knows
nothing about devices; reconnection policy lives in
:mod:`pyDoorSensors.supervisor`.

Usage::

    conn = await EventStreamConnection.open(session, url, params=params)
    event = await conn.receive()   # ServerSentEvent or None on EOF
    conn.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import aiohttp

logger = logging.getLogger(__name__)

#: MIME type of an SSE response.
EVENT_STREAM_CONTENT_TYPE: str = "text/event-stream"

#: Delay before the transport re-opens a dropped stream, unless the
#: server asked for another one with a ``retry:`` field.
DEFAULT_RETRY_DELAY: float = 1.0

#: Gateway-style statuses after which the stream is re-opened rather
#: than given up.
RETRYABLE_STATUSES = frozenset({500, 502, 503, 504})

#: Event type used when a block carries no ``event:`` field.
DEFAULT_EVENT_TYPE: str = "message"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class StreamClosedError(ConnectionError):
    """The stream cannot be opened and the transport will not retry.

    Raised for HTTP statuses other than 200 and the retryable gateway
    statuses, and for responses that are not an event stream.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class TransientStreamError(ConnectionError):
    """The stream could not be opened, but re-opening may succeed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


# ---------------------------------------------------------------------------
# Event
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerSentEvent:
    """One dispatched SSE event."""

    event: str = DEFAULT_EVENT_TYPE
    data: str = ""
    id: Optional[str] = None


# ---------------------------------------------------------------------------
# EventStreamConnection
# ---------------------------------------------------------------------------


class EventStreamConnection:
    """Framing layer for a single SSE response.

    Parameters
    ----------
    response:
        The streaming response.  Only ``response.content.readline()``
        and ``response.close()`` are used.
    url:
        The stream URL without query string, for logging.
    """

    def __init__(self, response: Any, *, url: str = "") -> None:
        self._response = response
        self._content = response.content
        self._url = url
        self._closed = False

        self._last_event_id: Optional[str] = None
        self._retry: Optional[float] = None

    # ---- opening -----------------------------------------------------

    @classmethod
    async def open(
        cls,
        session: aiohttp.ClientSession,
        url: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        last_event_id: Optional[str] = None,
        connect_timeout: Optional[float] = None,
    ) -> EventStreamConnection:
        """Issue the streaming GET request and validate the response.

        Raises
        ------
        StreamClosedError
            The server refused the stream for good (e.g. 401, 404) or
            did not answer with an event stream.
        TransientStreamError
            The server answered with a retryable gateway status.
        aiohttp.ClientError, asyncio.TimeoutError, OSError
            Network-level failures; also retryable.
        """
        headers: Dict[str, str] = {
            "Accept": EVENT_STREAM_CONTENT_TYPE,
            "Cache-Control": "no-cache",
        }
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id

        # The stream itself is unbounded: only the connect phase times out.
        timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=connect_timeout, sock_read=None
        )
        response = await session.get(
            url, params=params, headers=headers, timeout=timeout
        )

        status = response.status
        if status != 200:
            response.close()
            if status in RETRYABLE_STATUSES:
                raise TransientStreamError(
                    f"Event stream {url} answered HTTP {status}", status
                )
            raise StreamClosedError(
                f"Event stream {url} refused with HTTP {status}", status
            )

        if response.content_type != EVENT_STREAM_CONTENT_TYPE:
            content_type = response.content_type
            response.close()
            raise StreamClosedError(
                f"Event stream {url} has content type {content_type!r}",
                status,
            )

        logger.debug("Event stream %s opened", url)
        return cls(response, url=url)

    # ---- properties --------------------------------------------------

    @property
    def is_closed(self) -> bool:
        """``True`` when the connection has been closed locally."""
        return self._closed

    @property
    def url(self) -> str:
        return self._url

    @property
    def last_event_id(self) -> Optional[str]:
        """The last ``id:`` seen on the stream (sent back on re-open)."""
        return self._last_event_id

    @property
    def retry(self) -> Optional[float]:
        """Re-open delay in seconds requested by the server, if any."""
        return self._retry

    # ---- receive -----------------------------------------------------

    async def receive(self) -> Optional[ServerSentEvent]:
        """Read lines until the next complete event.

        Comment lines (starting with ``:``) and blocks with empty ``data``
        are skipped.  An incomplete block at end of stream is dropped.

        Returns
        -------
        ServerSentEvent or None
            The next event, or ``None`` when the server closed the
            stream (EOF).

        Raises
        ------
        ConnectionError
            If the connection was already closed locally.
        """
        if self._closed:
            raise ConnectionError("Connection is closed")

        event_type = ""
        data_lines = []

        while True:
            raw = await self._content.readline()
            if not raw:
                logger.debug("Event stream %s reached EOF", self._url)
                return None

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")

            # --- blank line: dispatch ---------------------------------
            if not line:
                data = "\n".join(data_lines)
                if not data:
                    event_type = ""
                    data_lines = []
                    continue
                event = ServerSentEvent(
                    event=event_type or DEFAULT_EVENT_TYPE,
                    data=data,
                    id=self._last_event_id,
                )
                logger.debug(
                    "Received %s (%d bytes) ← %s",
                    event.event, len(event.data), self._url,
                )
                return event

            # --- comment / keep-alive ---------------------------------
            if line.startswith(":"):
                continue

            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]

            if field == "event":
                event_type = value
            elif field == "data":
                data_lines.append(value)
            elif field == "id":
                if "\0" not in value:
                    self._last_event_id = value
            elif field == "retry":
                if value.isdigit():
                    self._retry = int(value) / 1000.0
            # Unknown fields are ignored.

    # ---- close -------------------------------------------------------

    def close(self) -> None:
        """Close the underlying response.  Safe to call multiple times.

        Synchronous, so a supervisor can drop its stream before opening
        the next one without yielding to the event loop.
        """
        if self._closed:
            return
        self._closed = True
        try:
            self._response.close()
        except Exception:  # noqa: BLE001
            pass
        logger.debug("Event stream %s closed", self._url)

    # ---- dunder ------------------------------------------------------

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"EventStreamConnection({self._url}, {state})"
