import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager

from taskmarket.main import stream_feed


def _decode(chunk) -> dict:
    line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
    return json.loads(line.replace("data:", "").strip())


@pytest.mark.asyncio
async def test_session_feed_replays_past_events(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        db = app.state.db
        bus = app.state.bus
        await bus.emit("req-sse", "state", {"from": "IDLE", "to": "REQUEST"})
        response = await stream_feed(request_id="req-sse", db=db, bus=bus)
        payload = _decode(await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1))
        assert payload["event_type"] == "state"
        assert payload["seq"] == 1
        assert payload["payload"]["to"] == "REQUEST"
        await response.body_iterator.aclose()


@pytest.mark.asyncio
async def test_session_feed_follows_new_events(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        db = app.state.db
        bus = app.state.bus
        response = await stream_feed(request_id="req-live", db=db, bus=bus)

        async def emit_events():
            await asyncio.sleep(0.01)
            await bus.emit("req-other", "state", {"to": "BIDDING"})
            await bus.emit("req-live", "bids", {"bids": []})

        task = asyncio.create_task(emit_events())
        payload = _decode(await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1))
        assert payload["event_type"] == "bids"
        assert payload["request_id"] == "req-live"
        await task
        await response.body_iterator.aclose()
        assert "req-live" not in bus.channels()


@pytest.mark.asyncio
async def test_global_feed_receives_every_session(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        bus = app.state.bus
        response = await stream_feed(request_id=None, db=app.state.db, bus=bus)

        async def emit_event():
            await asyncio.sleep(0.01)
            await bus.emit("system", "reset", {"previous_request_id": None, "aborted": False})

        task = asyncio.create_task(emit_event())
        payload = _decode(await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1))
        assert payload["event_type"] == "reset"
        await task
        await response.body_iterator.aclose()
        assert bus.listeners == {}


@pytest.mark.asyncio
async def test_bus_routes_events_by_request_id(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        bus = app.state.bus
        session_queue = bus.subscribe("req-a")
        all_queue = bus.subscribe()

        await bus.emit("req-b", "state", {"to": "BIDDING"})
        await bus.emit("req-a", "bids", {"bids": []})

        assert session_queue.qsize() == 1
        assert session_queue.get_nowait()["event_type"] == "bids"
        assert all_queue.qsize() == 2
        bus.unsubscribe(session_queue)
        bus.unsubscribe(all_queue)
        assert bus.channels() == set()
