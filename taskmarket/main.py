import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .config import AppSettings, CONFIG_PATH, _merge_sections, load_settings, save_settings
from .db import Database
from .dispatch import LogWatcher, build_watcher
from .escrow import EscrowService, build_escrow
from .message_log import SqliteMessageLog
from .orchestrator import ALL_EVENTS, SYSTEM_CHANNEL, EventBus, MarketplaceOrchestrator
from .poller import parse_log_message
from .profiles import get_profile
from .reputation import ReputationClient
from .schemas import BidApproval, LogAppendRequest, ReviewSubmission, Session, TriggerRequest
from .session_store import SessionStore
from .settlement import escrow_snapshot


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def normalize_bid_approval_payload(
    payload: Dict[str, Any],
    roles: List[str],
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """Accept {"accepted": {role: {...}}} or the flat form (analystAccountId, analystPrice, ...).

    A missing price is taken from the session's bid by the same account for that role.
    """
    if not isinstance(payload, dict):
        return {"accepted": {}}
    nested = payload.get("accepted")
    raw: Dict[str, Dict[str, Any]] = {}
    if isinstance(nested, dict):
        for role, entry in nested.items():
            if isinstance(entry, dict):
                raw[role] = entry
            elif isinstance(entry, str):
                raw[role] = {"account": entry}
    else:
        for role in roles:
            account = _first(payload, f"{role}AccountId", f"{role}Account", f"{role}_account")
            if account is None:
                continue
            raw[role] = {"account": account, "price": _first(payload, f"{role}Price", f"{role}_price")}

    accepted: Dict[str, Dict[str, Any]] = {}
    for role, entry in raw.items():
        account = _first(entry, "account", "accountId", "sender")
        price = entry.get("price")
        if price is None and session is not None:
            bid = next((b for b in session.bids if b.sender == account and b.role == role), None)
            price = bid.price if bid else None
        accepted[role] = {"account": account, "price": price if price is not None else 0.0}
    return {"accepted": accepted}


def normalize_review_payload(payload: Dict[str, Any], roles: List[str]) -> Dict[str, Any]:
    """Accept {"reviews": {role: {...}}} or the flat form (analystApproved, analystScore, ...)."""
    if not isinstance(payload, dict):
        return {"reviews": {}}
    nested = payload.get("reviews")
    if isinstance(nested, dict):
        return {"reviews": {role: entry for role, entry in nested.items() if isinstance(entry, dict)}}
    reviews: Dict[str, Dict[str, Any]] = {}
    for role in roles:
        approved = _first(payload, f"{role}Approved", f"{role}_approved")
        score = _first(payload, f"{role}Score", f"{role}_score")
        feedback = _first(payload, f"{role}Feedback", f"{role}_feedback")
        if approved is None and score is None and feedback is None:
            continue
        reviews[role] = {
            "approved": approved if approved is not None else False,
            "score": score if score is not None else 0,
            "feedback": feedback or "",
        }
    return {"reviews": reviews}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_orchestrator(request: Request) -> MarketplaceOrchestrator:
    return request.app.state.orchestrator


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_message_log(request: Request):
    return request.app.state.log


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    orchestrator: MarketplaceOrchestrator = Depends(get_orchestrator),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be an object.")
    try:
        new_settings = AppSettings(**_merge_sections(settings.model_dump(), body))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid settings: {exc.errors()}") from exc
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.to_safe_dict())
    request.app.state.settings = new_settings
    # Polls already in progress keep the timeouts they started with.
    orchestrator.settings = new_settings
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/status")
async def get_status(
    settings: AppSettings = Depends(get_settings),
    orchestrator: MarketplaceOrchestrator = Depends(get_orchestrator),
):
    session = orchestrator.session
    return {
        "state": session.state if session else "IDLE",
        "request_id": session.request_id if session else None,
        "running": orchestrator.running,
        "awaiting": {
            "bid_approval": orchestrator.bid_approval.pending,
            "review": orchestrator.review.pending,
        },
        "escrow": escrow_snapshot(session) if session else None,
        "error": session.error if session else None,
        "roles": settings.roles,
        "dispatch_enabled": orchestrator.watcher is not None,
    }


@router.post("/api/marketplace/trigger")
async def trigger_session(
    payload: TriggerRequest,
    orchestrator: MarketplaceOrchestrator = Depends(get_orchestrator),
):
    if not payload.task_ref.strip():
        raise HTTPException(status_code=400, detail="task_ref (or paperUrl) is required.")
    session = await orchestrator.start(payload)
    return {"ok": True, "request_id": session.request_id, "state": session.state}


@router.post("/api/marketplace/reset")
async def reset_session(
    orchestrator: MarketplaceOrchestrator = Depends(get_orchestrator),
    bus: EventBus = Depends(get_event_bus),
):
    previous = orchestrator.session.request_id if orchestrator.session else None
    aborted = await orchestrator.reset()
    await bus.emit(SYSTEM_CHANNEL, "reset", {"previous_request_id": previous, "aborted": aborted})
    return {"ok": True, "aborted": aborted}


@router.post("/api/marketplace/bid-approval")
async def submit_bid_approval(
    payload: Dict[str, Any] = Body(...),
    settings: AppSettings = Depends(get_settings),
    orchestrator: MarketplaceOrchestrator = Depends(get_orchestrator),
):
    if not orchestrator.bid_approval.pending:
        return {"ok": True, "accepted": False, "detail": "No bid approval is pending."}
    session = orchestrator.session
    normalized = normalize_bid_approval_payload(payload, settings.roles, session)
    try:
        approval = BidApproval(**normalized)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid bid approval: {exc.errors()}") from exc
    if not approval.accepted:
        raise HTTPException(status_code=400, detail="No role was accepted.")
    unknown = sorted(set(approval.accepted) - set(settings.roles))
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown roles: {', '.join(unknown)}")
    total = sum(w.price for w in approval.accepted.values())
    if session is not None and total > session.budget:
        raise HTTPException(status_code=400, detail=f"Accepted prices ({total}) exceed the budget ({session.budget}).")
    accepted = orchestrator.submit_bid_approval(approval)
    return {"ok": True, "accepted": accepted}


@router.post("/api/marketplace/review")
async def submit_review(
    payload: Dict[str, Any] = Body(...),
    settings: AppSettings = Depends(get_settings),
    orchestrator: MarketplaceOrchestrator = Depends(get_orchestrator),
):
    if not orchestrator.review.pending:
        return {"ok": True, "accepted": False, "detail": "No review is pending."}
    try:
        submission = ReviewSubmission(**normalize_review_payload(payload, settings.roles))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid review: {exc.errors()}") from exc
    accepted = orchestrator.submit_review(submission)
    return {"ok": True, "accepted": accepted}


@router.get("/api/marketplace/session")
async def get_session(
    request_id: Optional[str] = None,
    orchestrator: MarketplaceOrchestrator = Depends(get_orchestrator),
    store: SessionStore = Depends(get_session_store),
):
    current = orchestrator.session
    if current is not None and (request_id is None or request_id == current.request_id):
        return current.model_dump()
    stored = await store.get(request_id) if request_id else await store.latest()
    if not stored:
        raise HTTPException(status_code=404, detail="Session not found")
    return stored


@router.get("/api/marketplace/events")
async def list_session_events(request_id: str, after_seq: int = 0, db: Database = Depends(get_db)):
    return {"events": await db.list_events(request_id, after_seq=after_seq)}


@router.get("/api/marketplace/feed")
async def stream_feed(
    request_id: Optional[str] = None,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    # With a request id: replay that session's events, then follow it. Otherwise follow everything.
    async def event_generator():
        queue = bus.subscribe(request_id or ALL_EVENTS)
        try:
            if request_id:
                for ev in await db.list_events(request_id):
                    yield sse_format(ev)
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            bus.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/log")
async def read_log(after_seq: int = 0, limit: int = 200, log=Depends(get_message_log)):
    messages = await log.read_since(after_seq)
    items = []
    for msg in messages[: max(0, limit)]:
        items.append(
            {
                "sequence_number": msg.sequence_number,
                "timestamp": msg.timestamp,
                "raw": msg.raw,
                "parsed": parse_log_message(msg),
            }
        )
    return {"messages": items}


@router.post("/api/log")
async def append_log(payload: LogAppendRequest, log=Depends(get_message_log)):
    if payload.payload is not None:
        record = await log.append(payload.payload)
    else:
        record = await log.append_raw(payload.raw)
    return {"ok": True, "sequence_number": record.sequence_number, "timestamp": record.timestamp}


@router.get("/api/agents")
async def list_agents(settings: AppSettings = Depends(get_settings)):
    agents = []
    for role in [*settings.roles, settings.advisor_role]:
        profile = get_profile(role).model_dump()
        if role == settings.advisor_role:
            profile["account"] = settings.accounts.advisor_account
        agents.append(profile)
    return {"agents": agents}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    log: Any = None,
    escrow: Optional[EscrowService] = None,
    reputation: Optional[ReputationClient] = None,
    watcher: Optional[LogWatcher] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            await app.state.orchestrator.reset()
            await app.state.escrow.close()
            await app.state.reputation.close()

    app = FastAPI(title="Task Marketplace Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.log = log or SqliteMessageLog(app.state.db, settings.log_topic)
    app.state.escrow = escrow or build_escrow(settings.escrow, settings.accounts.treasury_account)
    app.state.reputation = reputation or ReputationClient(
        settings.reputation.base_url,
        api_key=settings.reputation.api_key,
        timeout=settings.reputation.timeout_s,
    )
    if watcher is None and settings.dispatch.enabled:
        watcher = build_watcher(settings.dispatch, app.state.log, settings.roles, settings.advisor_role)
    app.state.bus = EventBus(app.state.db)
    app.state.store = SessionStore(app.state.db.path)
    app.state.orchestrator = MarketplaceOrchestrator(
        settings,
        app.state.log,
        app.state.escrow,
        app.state.reputation,
        app.state.bus,
        store=app.state.store,
        watcher=watcher,
    )
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("TASKMARKET_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "taskmarket.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
