import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .escrow import EscrowError, EscrowService
from .profiles import display_name
from .reputation import ReputationClient, ReputationError
from .schemas import Session, Settlement

logger = logging.getLogger("uvicorn.error")

Emit = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class SettlementError(Exception):
    """A payout could not be executed; fatal to the session."""


def calculate_payment(price: float, score: float, approved: bool, *, exhausted_ratio: float = 0.0) -> float:
    """Score-weighted share of the accepted bid price.

    Approved work pays price * score / 100. Work that exhausted its revision budget
    without approval pays the same amount scaled by exhausted_ratio (0 by default).
    """
    price = max(0.0, float(price))
    weight = max(0.0, min(100.0, float(score))) / 100.0
    ratio = 1.0 if approved else max(0.0, min(1.0, float(exhausted_ratio)))
    return round(price * weight * ratio, 2)


def cap_to_escrow(session: Session, amount: float) -> float:
    return round(max(0.0, min(amount, session.escrow_remaining)), 6)


async def settle_role(
    session: Session,
    role: str,
    escrow: EscrowService,
    escrow_account: str,
    *,
    exhausted_ratio: float = 0.0,
) -> Optional[Settlement]:
    """Pay out one final role. Returns None when nothing is owed."""
    accepted = session.accepted.get(role)
    review = session.latest_review(role)
    if accepted is None or review is None:
        return None
    payment = calculate_payment(accepted.price, review.score, review.approved, exhausted_ratio=exhausted_ratio)
    amount = cap_to_escrow(session, payment)
    if amount <= 0:
        return None
    try:
        tx_ref = await escrow.transfer(escrow_account, accepted.account, amount)
    except EscrowError as exc:
        raise SettlementError(f"Escrow release to {role} ({accepted.account}) failed: {exc}") from exc
    settlement = Settlement(role=role, to_account=accepted.account, amount=amount, tx_ref=tx_ref)
    session.settlements.append(settlement)
    session.escrow_released = round(session.escrow_released + amount, 6)
    return settlement


async def register_agents(
    session: Session,
    reputation: ReputationClient,
    accounts: Dict[str, str],
    emit: Optional[Emit] = None,
) -> None:
    if not reputation.enabled:
        return
    for role, account in accounts.items():
        try:
            agent_id = await reputation.register_agent(display_name(role), account, role)
        except ReputationError as exc:
            logger.warning("Reputation registration for %s failed (continuing): %s", role, exc)
            if emit:
                await emit("log", {"level": "warning", "msg": f"Reputation registration for {role} failed: {exc}"})
            continue
        if agent_id:
            session.reputation_ids[role] = agent_id
            if emit:
                await emit("reputation", {"event": "registered", "role": role, "agent_id": agent_id})


async def record_reputation(
    session: Session,
    reputation: ReputationClient,
    emit: Optional[Emit] = None,
) -> Dict[str, str]:
    """Record the final review of each role. Failures are logged and skipped."""
    recorded: Dict[str, str] = {}
    if not reputation.enabled:
        return recorded
    for role in session.accepted:
        agent_id = session.reputation_ids.get(role)
        review = session.latest_review(role)
        if not agent_id or review is None:
            continue
        try:
            tx_ref = await reputation.record(
                agent_id,
                review.score,
                review.feedback,
                {"requestId": session.request_id, "role": role},
            )
        except ReputationError as exc:
            logger.warning("Reputation record for %s failed (continuing): %s", role, exc)
            if emit:
                await emit("log", {"level": "warning", "msg": f"Reputation record for {role} failed: {exc}"})
            continue
        if tx_ref:
            recorded[role] = tx_ref
            if emit:
                await emit(
                    "reputation",
                    {
                        "event": "feedback_recorded",
                        "role": role,
                        "agent_id": agent_id,
                        "score": review.score,
                        "tx_ref": tx_ref,
                    },
                )
    return recorded


def escrow_snapshot(session: Session) -> Dict[str, Any]:
    return {
        "locked": session.escrow_locked,
        "released": session.escrow_released,
        "remaining": session.escrow_remaining,
    }
