"""Tolerant ingestion of worker-authored log messages.

Worker agents are autonomous and do not agree on a schema, so every canonical field is
read from an ordered alias list; the first alias present with a non-null value wins and
a typed default is used when none matches. The first alias of each list is the wire
name written by ``Bid.to_wire`` / ``Deliverable.to_wire``, which keeps normalization
idempotent.
"""

import json
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from .profiles import display_name
from .schemas import Bid, Deliverable, PolledMessage

REQUEST_ID_ALIASES: Tuple[str, ...] = ("requestId", "request_id")
SENDER_ALIASES: Tuple[str, ...] = (
    "sender",
    "bidder",
    "senderAccount",
    "senderAccountId",
    "bidderAccountId",
    "accountId",
)
ROLE_ALIASES: Tuple[str, ...] = ("role", "agentRole", "targetRole")
PRICE_ALIASES: Tuple[str, ...] = ("price", "bidAmount", "amount", "fee")
FEE_ALIASES: Tuple[str, ...] = ("fee", "quotedFee", "price", "amount")
PITCH_ALIASES: Tuple[str, ...] = ("pitch", "proposal", "message")
SENDER_NAME_ALIASES: Tuple[str, ...] = ("senderName", "agentName", "name")
CONTENT_ALIASES: Tuple[str, ...] = ("content", "deliverable", "result", "output")
ANSWER_ALIASES: Tuple[str, ...] = ("answer", "response", "content", "message")
TIMESTAMP_ALIASES: Tuple[str, ...] = ("timestamp", "createdAt")

Raw = Union[Dict[str, Any], PolledMessage]
T = TypeVar("T", Bid, Deliverable)


def _safe_float(val: Any, default: float = 0.0) -> float:
    if isinstance(val, bool):
        return default
    if isinstance(val, str):
        val = val.strip().split()[0] if val.strip() else ""
    try:
        return float(val)
    except (TypeError, ValueError):
        return default


def pick(payload: Dict[str, Any], aliases: Sequence[str]) -> Any:
    for alias in aliases:
        value = payload.get(alias)
        if value is not None:
            return value
    return None


def pick_str(payload: Dict[str, Any], aliases: Sequence[str], default: str = "") -> str:
    value = pick(payload, aliases)
    if value is None:
        return default
    return value if isinstance(value, str) else str(value)


def pick_float(payload: Dict[str, Any], aliases: Sequence[str], default: float = 0.0) -> float:
    value = pick(payload, aliases)
    if value is None:
        return default
    return _safe_float(value, default)


def _unpack(raw: Raw) -> Tuple[Dict[str, Any], int]:
    if isinstance(raw, PolledMessage):
        return raw.parsed, raw.sequence_number
    return raw, 0


def role_of(payload: Dict[str, Any]) -> Optional[str]:
    """Canonical (lower-case) role of a raw payload, read through the role aliases."""
    role = pick_str(payload, ROLE_ALIASES).strip().lower()
    return role or None


def sender_of(payload: Dict[str, Any]) -> Optional[str]:
    sender = pick_str(payload, SENDER_ALIASES).strip()
    return sender or None


def _content(payload: Dict[str, Any]) -> Dict[str, Any]:
    value = pick(payload, CONTENT_ALIASES)
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            return {"text": value}
        return decoded if isinstance(decoded, dict) else {"value": decoded}
    return {"value": value}


def normalize_bid(raw: Raw) -> Bid:
    payload, seq = _unpack(raw)
    role = role_of(payload)
    return Bid(
        request_id=pick_str(payload, REQUEST_ID_ALIASES),
        sender=pick_str(payload, SENDER_ALIASES),
        role=role,
        price=pick_float(payload, PRICE_ALIASES),
        pitch=pick_str(payload, PITCH_ALIASES),
        sender_name=pick_str(payload, SENDER_NAME_ALIASES) or (display_name(role) if role else ""),
        timestamp=pick_str(payload, TIMESTAMP_ALIASES),
        seq=seq or int(payload.get("seq") or 0),
    )


def normalize_deliverable(raw: Raw) -> Deliverable:
    payload, seq = _unpack(raw)
    role = role_of(payload)
    return Deliverable(
        request_id=pick_str(payload, REQUEST_ID_ALIASES),
        sender=pick_str(payload, SENDER_ALIASES),
        role=role,
        content=_content(payload),
        sender_name=pick_str(payload, SENDER_NAME_ALIASES) or (display_name(role) if role else ""),
        timestamp=pick_str(payload, TIMESTAMP_ALIASES),
        seq=seq or int(payload.get("seq") or 0),
    )


def quote_fee(raw: Raw, default: float) -> float:
    payload, _ = _unpack(raw)
    fee = pick_float(payload, FEE_ALIASES, default)
    return fee if fee > 0 else default


def answer_text(raw: Raw) -> str:
    payload, _ = _unpack(raw)
    value = pick(payload, ANSWER_ALIASES)
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=True)


def infer_roles(records: Iterable[T], roles: Sequence[str]) -> List[T]:
    """Fill in missing roles by elimination against the fixed role list.

    The batch is ordered by (seq, sender) first so the assignment does not depend on the
    order the log delivered it in. Explicit roles outside the list count as missing.
    Returns new records; the inputs are not mutated.
    """
    ordered = sorted(records, key=lambda r: (r.seq, r.sender))
    claimed = {r.role for r in ordered if r.role in roles}
    result: List[T] = []
    for record in ordered:
        if record.role in roles:
            result.append(record.model_copy())
            continue
        free = next((role for role in roles if role not in claimed), None)
        updated = record.model_copy(update={"role": free})
        if free is not None:
            claimed.add(free)
            if not updated.sender_name:
                updated.sender_name = display_name(free)
        result.append(updated)
    return result
