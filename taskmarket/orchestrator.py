import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .config import AppSettings
from .consultation import ConsultationProtocol
from .db import Database
from .dispatch import LogWatcher
from .escrow import EscrowError, EscrowService
from .message_log import LogPublisher, MessageLog
from .normalizer import infer_roles, normalize_bid, normalize_deliverable
from .poller import LogFilter, poll_log
from .reputation import ReputationClient
from .schemas import (
    AWAITING_BID_APPROVAL,
    AWAITING_REVIEW,
    BID,
    BID_ACCEPTED,
    BIDDING,
    CLIENT_REVIEW,
    COMPLETE,
    DELIVERABLE,
    ERROR,
    ESCROW_LOCK,
    ESCROW_RELEASE,
    RELEASING,
    REQUEST,
    REVISION_REQUEST,
    TASK_COMPLETE,
    TASK_REQUEST,
    TERMINAL_STATES,
    BidApproval,
    PolledMessage,
    Review,
    ReviewDecision,
    ReviewSubmission,
    Session,
    TriggerRequest,
    working_state,
)
from .session_store import SessionStore
from .settlement import escrow_snapshot, record_reputation, register_agents, settle_role

logger = logging.getLogger("uvicorn.error")

Emit = Callable[[str, Dict[str, Any]], Awaitable[Any]]

SYSTEM_CHANNEL = "system"
ALL_EVENTS = "*"


def new_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:12]}"


class EventBus:
    """Persists every session event, then hands it to the live SSE listeners.

    A listener follows one request id, or every request through ``ALL_EVENTS``.
    """

    def __init__(self, db: Database):
        self.db = db
        self.listeners: Dict[asyncio.Queue, str] = {}

    async def emit(self, request_id: str, event_type: str, payload: dict) -> dict:
        stored = await self.db.add_event(request_id, event_type, {"request_id": request_id, **(payload or {})})
        for queue, channel in list(self.listeners.items()):
            if channel in (request_id, ALL_EVENTS):
                queue.put_nowait(stored)
        return stored

    def subscribe(self, channel: str = ALL_EVENTS) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self.listeners[queue] = channel
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self.listeners.pop(queue, None)

    def channels(self) -> Set[str]:
        return set(self.listeners.values())


class PendingRequest:
    """Single-shot slot for a human decision the session is suspended on.

    Resolving when nothing is outstanding is a no-op, not an error.
    """

    def __init__(self, name: str):
        self.name = name
        self._future: Optional[asyncio.Future] = None

    @property
    def pending(self) -> bool:
        return self._future is not None and not self._future.done()

    def open(self) -> asyncio.Future:
        self.cancel()
        self._future = asyncio.get_running_loop().create_future()
        return self._future

    def resolve(self, value: Any) -> bool:
        if not self.pending:
            logger.info("No pending %s; ignoring submission", self.name)
            return False
        self._future.set_result(value)
        return True

    def cancel(self) -> None:
        if self.pending:
            self._future.cancel()
        self._future = None


class MarketplaceOrchestrator:
    """Runs one marketplace session at a time, from task request to escrow release.

    The session object is owned by the running task and mutated only from it. Human
    input arrives through ``submit_bid_approval`` / ``submit_review``, which complete the
    matching pending slot. Starting a new session cancels the previous one first.
    """

    def __init__(
        self,
        settings: AppSettings,
        log: MessageLog,
        escrow: EscrowService,
        reputation: ReputationClient,
        bus: EventBus,
        store: Optional[SessionStore] = None,
        watcher: Optional[LogWatcher] = None,
    ):
        self.settings = settings
        self.log = log
        self.escrow = escrow
        self.reputation = reputation
        self.bus = bus
        self.store = store
        self.watcher = watcher
        self.session: Optional[Session] = None
        self.task: Optional[asyncio.Task] = None
        self.bid_approval = PendingRequest("bid approval")
        self.review = PendingRequest("review")

    @property
    def roles(self) -> List[str]:
        return list(self.settings.roles)

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    # --- lifecycle ---

    def _open_session(self, trigger: TriggerRequest) -> Session:
        session = Session(
            request_id=new_request_id(),
            task_ref=trigger.task_ref,
            description=trigger.description or "",
            budget=trigger.budget,
        )
        self.session = session
        return session

    async def start(self, trigger: TriggerRequest) -> Session:
        """Tear down any active session and run a new one in the background."""
        await self.abort("superseded by a new trigger")
        session = self._open_session(trigger)
        self.task = asyncio.create_task(self._execute(session))
        return session

    async def run(self, trigger: TriggerRequest) -> Session:
        await self.abort("superseded by a new trigger")
        session = self._open_session(trigger)
        self.task = asyncio.current_task()
        await self._execute(session)
        return session

    async def abort(self, reason: str = "aborted") -> bool:
        task = self.task
        if task is None or task.done() or task is asyncio.current_task():
            return False
        if self.session and self.session.state not in TERMINAL_STATES:
            self.session.error = reason
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.info("Session task cancelled: %s", reason)
        return True

    async def reset(self) -> bool:
        aborted = await self.abort("reset")
        self.session = None
        self.task = None
        return aborted

    def submit_bid_approval(self, approval: BidApproval) -> bool:
        return self.bid_approval.resolve(approval)

    def submit_review(self, submission: ReviewSubmission) -> bool:
        return self.review.resolve(submission)

    # --- plumbing ---

    def _emitter(self, session: Session) -> Emit:
        async def emit(event_type: str, payload: Dict[str, Any]) -> Any:
            return await self.bus.emit(session.request_id, event_type, payload)

        return emit

    async def _persist(self, session: Session) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(session)
        except Exception as exc:
            logger.warning("Could not persist session %s: %s", session.request_id, exc)

    async def _transition(self, session: Session, state: str, emit: Emit) -> None:
        if session.state in TERMINAL_STATES:
            raise RuntimeError(f"Session {session.request_id} is already {session.state}")
        previous = session.state
        session.state = state
        logger.info("Session %s: %s -> %s", session.request_id, previous, state)
        await self._persist(session)
        await emit("state", {"from": previous, "to": state})

    async def _fail(self, session: Session, message: str, emit: Emit) -> None:
        previous = session.state
        session.state = ERROR
        session.error = message
        await self._persist(session)
        await emit("state", {"from": previous, "to": ERROR})
        await emit("error", {"message": message, "state": previous})

    async def _execute(self, session: Session) -> None:
        emit = self._emitter(session)
        try:
            await self._run_session(session, emit)
        except asyncio.CancelledError:
            reason = session.error or "aborted"
            logger.info("Session %s aborted in %s: %s", session.request_id, session.state, reason)
            await self._fail(session, reason, emit)
            raise
        except Exception as exc:
            logger.exception("Session %s failed in %s", session.request_id, session.state)
            await self._fail(session, str(exc) or exc.__class__.__name__, emit)
        finally:
            self.bid_approval.cancel()
            self.review.cancel()
            if self.watcher is not None:
                await self.watcher.stop()

    # --- flow ---

    async def _run_session(self, session: Session, emit: Emit) -> None:
        publisher = LogPublisher(self.log, emit)
        session.observe(await self.log.latest_seq())
        if self.watcher is not None:
            self.watcher.start(after_seq=session.last_seq)

        request = await self._request(session, publisher, emit)
        await self._collect_bids(session, request.sequence_number, emit)

        await self._transition(session, AWAITING_BID_APPROVAL, emit)
        waiter = self.bid_approval.open()
        await emit(
            "awaiting_bid_approval",
            {"bids": [b.model_dump() for b in session.bids], "budget": session.budget},
        )
        approval: BidApproval = await waiter
        self._accept(session, approval)
        await emit("bids_approved", {"accepted": {r: w.model_dump() for r, w in session.accepted.items()}})
        await register_agents(
            session, self.reputation, {role: w.account for role, w in session.accepted.items()}, emit
        )

        # One anchor for every role: a later-polled role may have published first.
        session.deliverable_anchor_seq = max(session.deliverable_anchor_seq, session.last_seq)
        for role, worker in session.accepted.items():
            await publisher.publish(
                session,
                {
                    "type": BID_ACCEPTED,
                    "sender": "server",
                    "role": role,
                    "accountId": worker.account,
                    "price": worker.price,
                    "taskRef": session.task_ref,
                },
            )

        if self.settings.consultation.enabled:
            consultation = ConsultationProtocol(
                self.log,
                publisher,
                self.escrow,
                self.settings.consultation,
                escrow_account=self.settings.accounts.escrow_account,
                advisor_account=self.settings.accounts.advisor_account,
                interval_s=self.settings.polling.interval_s,
                emit=emit,
            )
            # Every worker gets its answer before any round-0 deliverable is awaited.
            for role in session.accepted:
                await self._transition(session, working_state(role), emit)
                await consultation.run(session, role)
        for role in session.accepted:
            await self._work(session, role, 0, emit)

        await self._review_loop(session, publisher, emit)
        await self._release(session, publisher, emit)

    async def _request(self, session: Session, publisher: LogPublisher, emit: Emit) -> PolledMessage:
        await self._transition(session, REQUEST, emit)
        accounts = self.settings.accounts
        try:
            tx_ref = await self.escrow.transfer(accounts.treasury_account, accounts.escrow_account, session.budget)
        except EscrowError as exc:
            raise EscrowError(f"Escrow lock of {session.budget} failed: {exc}") from exc
        session.escrow_locked = session.budget
        request = await publisher.publish(
            session,
            {
                "type": TASK_REQUEST,
                "sender": "server",
                "taskRef": session.task_ref,
                "description": session.description,
                "budget": session.budget,
                "roles": self.roles,
            },
        )
        await publisher.publish(
            session,
            {
                "type": ESCROW_LOCK,
                "sender": "server",
                "amount": session.budget,
                "escrowAccount": accounts.escrow_account,
                "txRef": tx_ref,
            },
        )
        await emit("escrow_update", escrow_snapshot(session))
        return request

    async def _collect_bids(self, session: Session, after_seq: int, emit: Emit) -> None:
        await self._transition(session, BIDDING, emit)
        polling = self.settings.polling
        expected = polling.expected_bids or len(self.roles)
        found = await poll_log(
            self.log,
            LogFilter(type=BID, request_id=session.request_id, after_seq=after_seq),
            expected,
            polling.bid_timeout_s,
            interval_s=polling.interval_s,
            emit=emit,
        )
        for msg in found:
            session.observe(msg.sequence_number)
        session.bids = infer_roles([normalize_bid(m) for m in found], self.roles)
        await emit("bids", {"bids": [b.model_dump() for b in session.bids], "expected": expected})

    def _accept(self, session: Session, approval: BidApproval) -> None:
        # Keep the fixed role order; unknown roles are dropped.
        accepted = {role: approval.accepted[role] for role in self.roles if role in approval.accepted}
        if not accepted:
            raise ValueError("Bid approval accepted no known role")
        session.accepted = accepted
        for role in accepted:
            session.revision_counts.setdefault(role, 0)

    async def _work(self, session: Session, role: str, round_no: int, emit: Emit) -> None:
        await self._transition(session, working_state(role), emit)
        polling = self.settings.polling
        claimed = frozenset(d.seq for d in session.deliverable_history)
        found = await poll_log(
            self.log,
            LogFilter(
                type=DELIVERABLE,
                role=role,
                request_id=session.request_id,
                sender=session.accepted[role].account,
                after_seq=session.deliverable_anchor_seq,
                skip_seqs=claimed,
            ),
            1,
            polling.deliverable_timeout_s,
            interval_s=polling.interval_s,
            emit=emit,
        )
        if not found:
            kept = role in session.deliverables
            logger.warning(
                "No deliverable from %s in round %d of %s (kept previous: %s)",
                role,
                round_no,
                session.request_id,
                kept,
            )
            await emit("deliverable_timeout", {"role": role, "round": round_no, "kept_previous": kept})
            return
        session.observe(found[0].sequence_number)
        deliverable = normalize_deliverable(found[0])
        deliverable = deliverable.model_copy(update={"role": deliverable.role or role, "round": round_no})
        session.deliverables[role] = deliverable
        session.deliverable_history.append(deliverable)
        await emit("deliverable", deliverable.model_dump())

    async def _review_loop(self, session: Session, publisher: LogPublisher, emit: Emit) -> None:
        pending = list(session.accepted)
        round_no = 0
        while pending:
            await self._transition(session, AWAITING_REVIEW, emit)
            waiter = self.review.open()
            await emit(
                "awaiting_review",
                {
                    "round": round_no,
                    "roles": pending,
                    "deliverables": {
                        r: session.deliverables[r].model_dump() for r in pending if r in session.deliverables
                    },
                },
            )
            submission: ReviewSubmission = await waiter

            for role in pending:
                decision = submission.reviews.get(role) or ReviewDecision(feedback="No review submitted")
                review = Review(
                    role=role,
                    round=round_no,
                    approved=decision.approved,
                    score=decision.score,
                    feedback=decision.feedback,
                )
                session.reviews.append(review)
                await publisher.publish(
                    session,
                    {
                        "type": CLIENT_REVIEW,
                        "sender": "server",
                        "role": role,
                        "round": round_no,
                        "approved": review.approved,
                        "score": review.score,
                        "feedback": review.feedback,
                    },
                )
            session.deliverable_anchor_seq = max(session.deliverable_anchor_seq, session.last_seq)

            revise: List[str] = []
            for role in pending:
                review = session.latest_review(role)
                count = session.revision_counts.get(role, 0)
                if review is not None and not review.approved and count < self.settings.max_revisions:
                    session.revision_counts[role] = count + 1
                    revise.append(role)
                    await publisher.publish(
                        session,
                        {
                            "type": REVISION_REQUEST,
                            "sender": "server",
                            "role": role,
                            "revision": count + 1,
                            "feedback": review.feedback,
                        },
                    )
                else:
                    session.final_roles.append(role)
                    await emit(
                        "role_final",
                        {
                            "role": role,
                            "approved": bool(review and review.approved),
                            "revisions": count,
                        },
                    )

            round_no += 1
            for role in revise:
                await self._work(session, role, round_no, emit)
            pending = revise

    async def _balances(self, session: Session) -> Dict[str, Dict[str, Any]]:
        """Post-settlement balances of every worker, the advisor and the escrow account."""
        accounts = self.settings.accounts
        tracked = {role: worker.account for role, worker in session.accepted.items()}
        tracked[self.settings.advisor_role] = accounts.advisor_account
        tracked["escrow"] = accounts.escrow_account
        balances: Dict[str, Dict[str, Any]] = {}
        for label, account in tracked.items():
            try:
                amount = await self.escrow.balance(account)
            except EscrowError as exc:
                logger.warning("Balance lookup for %s (%s) failed: %s", label, account, exc)
                continue
            balances[label] = {"account": account, "balance": amount}
        return balances

    async def _release(self, session: Session, publisher: LogPublisher, emit: Emit) -> None:
        await self._transition(session, RELEASING, emit)
        escrow_account = self.settings.accounts.escrow_account
        for role in session.final_roles:
            settlement = await settle_role(
                session,
                role,
                self.escrow,
                escrow_account,
                exhausted_ratio=self.settings.settlement.exhausted_payment_ratio,
            )
            if settlement is None:
                await emit("settlement_skipped", {"role": role})
                continue
            review = session.latest_review(role)
            await publisher.publish(
                session,
                {
                    "type": ESCROW_RELEASE,
                    "sender": "server",
                    "role": role,
                    "toAccountId": settlement.to_account,
                    "amount": settlement.amount,
                    "txRef": settlement.tx_ref,
                    "score": review.score if review else 0,
                },
            )
            await emit("escrow_update", escrow_snapshot(session))

        reputation: Dict[str, str] = {}
        if self.settings.settlement.record_reputation:
            reputation = await record_reputation(session, self.reputation, emit)

        summary = {
            "totalReleased": session.escrow_released,
            "escrowRemaining": session.escrow_remaining,
            "settlements": [s.model_dump() for s in session.settlements],
            "reputation": reputation,
        }
        await emit("balance", {"balances": await self._balances(session)})
        await publisher.publish(session, {"type": TASK_COMPLETE, "sender": "server", **summary})
        await self._transition(session, COMPLETE, emit)
        await emit("complete", summary)
