import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import AbstractSet, Any, Awaitable, Callable, Dict, List, Optional, Set

from .message_log import MessageLog
from .normalizer import REQUEST_ID_ALIASES, pick_str, role_of, sender_of
from .schemas import LogMessage, PolledMessage

logger = logging.getLogger("uvicorn.error")

Emit = Callable[[str, Dict[str, Any]], Awaitable[Any]]

DEFAULT_POLL_INTERVAL_S = 3.0


@dataclass
class LogFilter:
    type: Optional[str] = None
    role: Optional[str] = None
    request_id: Optional[str] = None
    # Account expected to author role-less messages; other senders are skipped.
    sender: Optional[str] = None
    after_seq: int = 0
    # Sequence numbers already claimed by an earlier poll (e.g. a role-less deliverable).
    skip_seqs: AbstractSet[int] = frozenset()

    def describe(self) -> Dict[str, Any]:
        return {
            "type": self.type or "*",
            "role": self.role or "*",
            "request_id": self.request_id or "*",
            "sender": self.sender or "*",
            "after_seq": self.after_seq,
        }


def parse_log_message(message: LogMessage) -> Optional[Dict[str, Any]]:
    """Decode a log entry into a typed payload, or None when it is not a protocol message."""
    try:
        parsed = json.loads(message.raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, dict) or not parsed.get("type"):
        return None
    return parsed


def matches(parsed: Dict[str, Any], flt: LogFilter) -> bool:
    if flt.type and parsed.get("type") != flt.type:
        return False
    request_id = pick_str(parsed, REQUEST_ID_ALIASES)
    if flt.request_id and request_id and request_id != flt.request_id:
        return False
    role = role_of(parsed)
    if flt.role and role and role != flt.role.lower():
        return False
    # Role-less messages pass so the normalizer can infer the role later, but only
    # from the account the caller expects.
    if flt.sender and role is None:
        sender = sender_of(parsed)
        if sender and sender != flt.sender:
            return False
    return True


async def poll_log(
    log: MessageLog,
    flt: LogFilter,
    expected_count: int,
    timeout_s: float,
    *,
    interval_s: float = DEFAULT_POLL_INTERVAL_S,
    emit: Optional[Emit] = None,
) -> List[PolledMessage]:
    """Collect up to expected_count matching messages newer than flt.after_seq.

    Returns early once enough matches are collected, otherwise whatever arrived before
    the deadline. A shortfall is not an error; callers branch on the result length.
    """
    collected: List[PolledMessage] = []
    seen: Set[int] = set()
    deadline = time.monotonic() + max(0.0, timeout_s)

    if emit:
        await emit("poll_started", {**flt.describe(), "expected": expected_count, "timeout_s": timeout_s})

    while len(collected) < expected_count:
        try:
            messages = await log.read_since(flt.after_seq)
        except Exception as exc:
            logger.warning("Log read failed (%s); retrying on next tick", exc)
            messages = []
        for msg in messages:
            seq = msg.sequence_number
            if seq in seen or seq <= flt.after_seq or seq in flt.skip_seqs:
                continue
            parsed = parse_log_message(msg)
            if parsed is None:
                continue
            if not matches(parsed, flt):
                continue
            seen.add(msg.sequence_number)
            collected.append(
                PolledMessage(
                    sequence_number=msg.sequence_number,
                    timestamp=msg.timestamp,
                    raw=msg.raw,
                    parsed=parsed,
                )
            )
            if emit:
                await emit(
                    "poll_message",
                    {
                        "seq": msg.sequence_number,
                        "type": parsed.get("type"),
                        "collected": len(collected),
                        "expected": expected_count,
                    },
                )
            if len(collected) >= expected_count:
                break
        if len(collected) >= expected_count:
            break
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        await asyncio.sleep(min(interval_s, remaining))

    if len(collected) < expected_count:
        logger.info(
            "Poll for %s timed out with %d/%d messages", flt.type or "*", len(collected), expected_count
        )
        if emit:
            await emit("poll_timeout", {**flt.describe(), "collected": len(collected), "expected": expected_count})
    return collected
