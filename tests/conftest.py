"""Shared fixtures: an in-process fake of the Particle cloud API."""

import asyncio
import json
from collections import defaultdict

import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer


class FakeParticleCloud:
    """Serves ``/v1/devices/{id}/events`` and ``/v1/devices/{id}/doorMessage``.

    Tests steer it through plain attributes:

    * ``door_state[id]``: ``"open"`` / ``"closed"`` returned by the
      state endpoint.
    * ``state_status[id]`` / ``stream_status[id]``: HTTP status to
      answer with instead of 200.
    * ``state_device_id[id]``: device id echoed in ``coreInfo``.
    * ``state_body[id]``: raw body (str or bytes) overriding the JSON
      answer.
    * ``state_delay``: seconds to wait before answering a state fetch.
    * ``stream_content_type``: content type of the event stream.

    and reads back ``stream_attempts``, ``state_requests``,
    ``tokens`` and ``last_event_ids``.
    """

    def __init__(self):
        self.door_state = {}
        self.state_status = {}
        self.state_device_id = {}
        self.state_body = {}
        self.state_delay = 0.0
        self.stream_status = {}
        self.stream_content_type = "text/event-stream"

        self.stream_attempts = defaultdict(int)
        self.state_requests = defaultdict(int)
        self.tokens = []
        self.last_event_ids = []

        self._queues = defaultdict(list)

        app = web.Application()
        app.router.add_get("/v1/devices/{device_id}/events", self._events)
        app.router.add_get(
            "/v1/devices/{device_id}/doorMessage", self._door_message
        )
        self.server = TestServer(app)

    # ---- lifecycle ---------------------------------------------------

    async def start(self):
        await self.server.start_server()

    async def close(self):
        for queues in self._queues.values():
            for queue in queues:
                queue.put_nowait(None)
        await self.server.close()

    @property
    def base_url(self):
        return str(self.server.make_url("")).rstrip("/")

    # ---- stream control ----------------------------------------------

    def open_streams(self, device_id):
        """Number of stream handlers still running for *device_id*."""
        return len(self._queues[device_id])

    def send_raw(self, device_id, chunk: bytes):
        """Write *chunk* to the newest stream of *device_id*."""
        self._queues[device_id][-1].put_nowait(chunk)

    def push(self, device_id, event, payload, *, coreid=None, event_id=None):
        """Publish a Particle-style event on the newest stream."""
        envelope = {
            "data": payload,
            "ttl": 60,
            "published_at": "2024-01-01T00:00:00.000Z",
            "coreid": coreid or device_id,
        }
        lines = [f"event: {event}", f"data: {json.dumps(envelope)}"]
        if event_id is not None:
            lines.append(f"id: {event_id}")
        self.send_raw(device_id, ("\n".join(lines) + "\n\n").encode())

    def drop(self, device_id):
        """End every open stream of *device_id* (clean EOF)."""
        for queue in self._queues[device_id]:
            queue.put_nowait(None)

    # ---- handlers ----------------------------------------------------

    async def _events(self, request):
        device_id = request.match_info["device_id"]
        self.stream_attempts[device_id] += 1
        self.tokens.append(request.query.get("access_token"))
        self.last_event_ids.append(request.headers.get("Last-Event-ID"))

        status = self.stream_status.get(device_id, 200)
        if status != 200:
            return web.Response(status=status)

        # Registered before the headers go out, so a client that has
        # opened the stream can always be pushed to.
        queue = asyncio.Queue()
        self._queues[device_id].append(queue)

        response = web.StreamResponse()
        response.content_type = self.stream_content_type
        try:
            await response.prepare(request)
            await response.write(b":ok\n\n")
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                await response.write(chunk)
        except (ConnectionResetError, RuntimeError):
            pass
        finally:
            self._queues[device_id].remove(queue)
        return response

    async def _door_message(self, request):
        device_id = request.match_info["device_id"]
        self.state_requests[device_id] += 1
        if self.state_delay:
            await asyncio.sleep(self.state_delay)

        status = self.state_status.get(device_id, 200)
        if status != 200:
            return web.json_response({"error": "unavailable"}, status=status)

        if device_id in self.state_body:
            body = self.state_body[device_id]
            if isinstance(body, bytes):
                return web.Response(
                    body=body, content_type="application/json", charset="utf-8"
                )
            return web.Response(text=body)

        return web.json_response({
            "cmd": "VarReturn",
            "name": "doorMessage",
            "result": self.door_state.get(device_id, "closed"),
            "coreInfo": {
                "deviceID": self.state_device_id.get(device_id, device_id),
                "connected": True,
            },
        })


@pytest_asyncio.fixture
async def cloud():
    """A started :class:`FakeParticleCloud`."""
    fake = FakeParticleCloud()
    await fake.start()
    try:
        yield fake
    finally:
        await fake.close()
