import asyncio

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from tests.fakes import ScriptedWorkers, wait_until

BIDS = {"analyst": ("0.0.1001", 60.0), "architect": ("0.0.1002", 40.0)}


@pytest.mark.asyncio
async def test_status_is_idle_before_any_trigger(client):
    res = await client.get("/api/status")
    assert res.status_code == 200
    body = res.json()
    assert body["state"] == "IDLE"
    assert body["running"] is False
    assert body["awaiting"] == {"bid_approval": False, "review": False}
    assert body["roles"] == ["analyst", "architect"]
    assert body["dispatch_enabled"] is False


@pytest.mark.asyncio
async def test_trigger_requires_task_ref_and_positive_budget(client):
    res = await client.post("/api/marketplace/trigger", json={"budget": 100})
    assert res.status_code == 400
    res = await client.post("/api/marketplace/trigger", json={"paperUrl": "https://arxiv.org/abs/1", "budget": 0})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_submissions_without_pending_request_are_noops(client):
    res = await client.post("/api/marketplace/bid-approval", json={"analystAccountId": "0.0.1001"})
    assert res.status_code == 200
    assert res.json()["accepted"] is False

    res = await client.post("/api/marketplace/review", json={"analystApproved": True, "analystScore": 90})
    assert res.status_code == 200
    assert res.json()["accepted"] is False


@pytest.mark.asyncio
async def test_full_session_through_http(app_factory):
    app, _, escrow, reputation = app_factory()
    async with LifespanManager(app):
        workers = ScriptedWorkers(app.state.log, BIDS)
        worker_task = asyncio.create_task(workers.run())
        orchestrator = app.state.orchestrator
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                res = await client.post(
                    "/api/marketplace/trigger",
                    json={"paperUrl": "https://arxiv.org/abs/2401.00001", "budget": 100},
                )
                assert res.status_code == 200
                request_id = res.json()["request_id"]

                await wait_until(lambda: orchestrator.bid_approval.pending)
                status = (await client.get("/api/status")).json()
                assert status["state"] == "AWAITING_BID_APPROVAL"
                assert status["awaiting"]["bid_approval"] is True

                # Prices come from the bids when the flat form omits them.
                res = await client.post(
                    "/api/marketplace/bid-approval",
                    json={"analystAccountId": "0.0.1001", "architectAccountId": "0.0.1002"},
                )
                assert res.json() == {"ok": True, "accepted": True}

                await wait_until(lambda: orchestrator.review.pending)
                res = await client.post(
                    "/api/marketplace/review",
                    json={
                        "analystApproved": True,
                        "analystScore": 100,
                        "architectApproved": "true",
                        "architectScore": 50,
                        "architectFeedback": "Needs diagrams",
                    },
                )
                assert res.json()["accepted"] is True

                await wait_until(lambda: orchestrator.session.state == "COMPLETE")
                session = (await client.get("/api/marketplace/session", params={"request_id": request_id})).json()
                events = (
                    await client.get("/api/marketplace/events", params={"request_id": request_id})
                ).json()["events"]
        finally:
            worker_task.cancel()
            await asyncio.gather(worker_task, return_exceptions=True)

    assert session["accepted"]["analyst"] == {"account": "0.0.1001", "price": 60.0}
    assert {s["role"]: s["amount"] for s in session["settlements"]} == {"analyst": 60.0, "architect": 20.0}
    # Two consultation fees of 5 plus both settlements.
    assert session["escrow_released"] == 90.0
    assert escrow.balances["0.0.1001"] == 60.0
    assert escrow.balances["0.0.1002"] == 20.0
    assert len(reputation.records) == 2
    event_types = [ev["event_type"] for ev in events]
    assert event_types[0] == "state"
    assert "awaiting_bid_approval" in event_types
    assert event_types[-1] == "complete"


@pytest.mark.asyncio
async def test_bid_approval_validation(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        workers = ScriptedWorkers(app.state.log, BIDS)
        worker_task = asyncio.create_task(workers.run())
        orchestrator = app.state.orchestrator
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                await client.post("/api/marketplace/trigger", json={"taskRef": "paper-7", "budget": 50})
                await wait_until(lambda: orchestrator.bid_approval.pending)

                res = await client.post("/api/marketplace/bid-approval", json={"accepted": {}})
                assert res.status_code == 400

                res = await client.post(
                    "/api/marketplace/bid-approval",
                    json={"accepted": {"designer": {"account": "0.0.9", "price": 1}}},
                )
                assert res.status_code == 400
                assert "designer" in res.json()["detail"]

                res = await client.post(
                    "/api/marketplace/bid-approval",
                    json={"analystAccountId": "0.0.1001", "architectAccountId": "0.0.1002"},
                )
                assert res.status_code == 400
                assert "exceed the budget" in res.json()["detail"]
                assert orchestrator.bid_approval.pending

                res = await client.post(
                    "/api/marketplace/bid-approval",
                    json={"accepted": {"analyst": {"account": "0.0.1001", "price": 45}}},
                )
                assert res.json()["accepted"] is True
                await wait_until(lambda: orchestrator.review.pending)
                assert list(orchestrator.session.accepted) == ["analyst"]
        finally:
            worker_task.cancel()
            await asyncio.gather(worker_task, return_exceptions=True)


@pytest.mark.asyncio
async def test_reset_aborts_session_and_keeps_it_queryable(client):
    orchestrator = client.app.state.orchestrator
    res = await client.post("/api/marketplace/trigger", json={"paperUrl": "paper", "budget": 10})
    request_id = res.json()["request_id"]
    await wait_until(lambda: orchestrator.session.state == "BIDDING")

    res = await client.post("/api/marketplace/reset")
    assert res.json() == {"ok": True, "aborted": True}
    assert (await client.get("/api/status")).json()["state"] == "IDLE"

    stored = (await client.get("/api/marketplace/session", params={"request_id": request_id})).json()
    assert stored["state"] == "ERROR"
    assert stored["error"] == "reset"
    latest = (await client.get("/api/marketplace/session")).json()
    assert latest["request_id"] == request_id

    system_events = await client.app.state.db.list_events("system")
    assert system_events[-1]["event_type"] == "reset"
    assert system_events[-1]["payload"]["previous_request_id"] == request_id


@pytest.mark.asyncio
async def test_unknown_session_is_404(client):
    res = await client.get("/api/marketplace/session")
    assert res.status_code == 404
    res = await client.get("/api/marketplace/session", params={"request_id": "req-missing"})
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_log_endpoints_append_and_read(client):
    res = await client.post("/api/log", json={"payload": {"type": "bid", "requestId": "req-x", "price": 3}})
    assert res.status_code == 200
    first = res.json()["sequence_number"]
    res = await client.post("/api/log", json={"raw": "not json"})
    second = res.json()["sequence_number"]
    assert second > first
    assert (await client.post("/api/log", json={})).status_code == 422

    messages = (await client.get("/api/log")).json()["messages"]
    assert [m["sequence_number"] for m in messages] == [first, second]
    assert messages[0]["parsed"]["type"] == "bid"
    assert messages[1]["parsed"] is None

    tail = (await client.get("/api/log", params={"after_seq": first})).json()["messages"]
    assert [m["raw"] for m in tail] == ["not json"]


@pytest.mark.asyncio
async def test_agents_lists_workers_and_advisor(client):
    agents = (await client.get("/api/agents")).json()["agents"]
    assert [a["role"] for a in agents] == ["analyst", "architect", "scholar"]
    assert agents[0]["name"] == "Iris"
    assert agents[2]["account"] == "scholar"
