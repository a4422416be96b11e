"""One-shot authoritative state fetch.

Push events that fire while a device's stream is down are lost.  Each
time a stream (re)opens, or the cloud reports the device back online,
the supervisor asks the :class:`StateReconciler` for the current door
state by reading the device's ``doorMessage`` cloud variable::

    GET {base_url}/v1/devices/{device_id}/doorMessage?access_token=...

    {"cmd": "VarReturn", "name": "doorMessage", "result": "open",
     "coreInfo": {"deviceID": "...", "connected": true}}

A failed fetch never changes device state: connectivity is governed by
the stream lifecycle, and the next successful (re)connect triggers
another fetch.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from pyDoorSensors.enums import DOOR_OPEN, EVENT_DOOR_MESSAGE

logger = logging.getLogger(__name__)

#: Default total timeout for one state fetch, in seconds.
DEFAULT_REQUEST_TIMEOUT: float = 10.0


class StateReconciler:
    """Fetches the current door state of a device from the cloud API.

    Parameters
    ----------
    session:
        Shared HTTP client session.
    base_url:
        API root, e.g. ``"https://api.particle.io"``.
    access_token:
        Particle access token.
    request_timeout:
        Total timeout per request in seconds.
    variable:
        Name of the cloud variable holding the door state.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        access_token: str,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        variable: str = EVENT_DOOR_MESSAGE,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._request_timeout = request_timeout
        self._variable = variable

    def state_url(self, device_id: str) -> str:
        """URL of the state endpoint for *device_id* (no credentials)."""
        return f"{self._base_url}/v1/devices/{device_id}/{self._variable}"

    async def fetch_current_state(self, device_id: str) -> Optional[bool]:
        """Return ``True`` (open) / ``False`` (closed), or ``None``.

        ``None`` means the state could not be determined: request
        error, timeout, non-200 status, unparsable body, missing
        ``result``, or a response that names a different device.
        """
        url = self.state_url(device_id)
        try:
            async with self._session.get(
                url,
                params={"access_token": self._access_token},
                timeout=aiohttp.ClientTimeout(total=self._request_timeout),
            ) as response:
                if response.status != 200:
                    logger.warning(
                        "Door state request for %s answered HTTP %d",
                        device_id, response.status,
                    )
                    return None
                body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            logger.warning(
                "Error checking door state for %s: %s", device_id, exc
            )
            return None

        try:
            payload = json.loads(body)
        except ValueError:  # includes UnicodeDecodeError
            logger.warning(
                "Door state response for %s is not JSON: %.80r",
                device_id, body,
            )
            return None

        return self._interpret(device_id, payload)

    @staticmethod
    def _interpret(device_id: str, payload: Any) -> Optional[bool]:
        """Validate a decoded response body and extract the door state."""
        if not isinstance(payload, dict):
            logger.warning(
                "Door state response for %s is not an object", device_id
            )
            return None

        core_info: Dict[str, Any] = payload.get("coreInfo") or {}
        reported_id = (
            core_info.get("deviceID") if isinstance(core_info, dict) else None
        )
        if reported_id and reported_id != device_id:
            logger.warning(
                "Door state response for %s names device %s — ignoring",
                device_id, reported_id,
            )
            return None

        result = payload.get("result")
        if not isinstance(result, str):
            logger.warning(
                "Door state response for %s has no result", device_id
            )
            return None

        return result == DOOR_OPEN

    def __repr__(self) -> str:
        return f"StateReconciler({self._base_url!r})"
