import asyncio
import json
from typing import Any, Dict, List, Optional, Set, Tuple

from taskmarket.db import utc_now
from taskmarket.escrow import EscrowError, LocalEscrow
from taskmarket.reputation import ReputationError
from taskmarket.schemas import LogMessage, LogRecord


class InMemoryLog:
    def __init__(self, duplicate_reads: bool = False) -> None:
        self.entries: List[LogMessage] = []
        self.duplicate_reads = duplicate_reads
        self.fail_reads = 0
        self.reads = 0

    async def append(self, payload: Dict[str, Any]) -> LogRecord:
        return self.append_nowait(payload)

    async def append_raw(self, raw: str) -> LogRecord:
        return self._add(raw)

    def append_nowait(self, payload: Dict[str, Any]) -> LogRecord:
        return self._add(json.dumps(payload))

    def _add(self, raw: str) -> LogRecord:
        seq = len(self.entries) + 1
        ts = utc_now()
        self.entries.append(LogMessage(sequence_number=seq, timestamp=ts, raw=raw))
        return LogRecord(sequence_number=seq, timestamp=ts)

    async def read_since(self, min_seq: int) -> List[LogMessage]:
        self.reads += 1
        if self.fail_reads:
            self.fail_reads -= 1
            raise RuntimeError("log unavailable")
        fresh = [m for m in self.entries if m.sequence_number > min_seq]
        if self.duplicate_reads:
            return fresh + list(reversed(fresh))
        return fresh

    async def latest_seq(self) -> int:
        return self.entries[-1].sequence_number if self.entries else 0

    def parsed(self, msg_type: Optional[str] = None) -> List[Dict[str, Any]]:
        out = []
        for entry in self.entries:
            try:
                payload = json.loads(entry.raw)
            except ValueError:
                continue
            if not isinstance(payload, dict):
                continue
            if msg_type is None or payload.get("type") == msg_type:
                out.append({**payload, "_seq": entry.sequence_number})
        return out


class FakeEscrow(LocalEscrow):
    """Local ledger that can be told to refuse transfers to specific accounts."""

    def __init__(self, balances: Optional[Dict[str, float]] = None, fail_to: Optional[Set[str]] = None) -> None:
        super().__init__(balances)
        self.fail_to: Set[str] = set(fail_to or set())
        self.closed = False

    async def transfer(self, from_account: str, to_account: str, amount: float) -> str:
        if to_account in self.fail_to:
            raise EscrowError(f"transfer to {to_account} rejected")
        return await super().transfer(from_account, to_account, amount)

    async def close(self) -> None:
        self.closed = True


class FakeReputation:
    def __init__(self, enabled: bool = True, fail: bool = False) -> None:
        self.enabled = enabled
        self.fail = fail
        self.registered: List[Tuple[str, str, str]] = []
        self.records: List[Dict[str, Any]] = []

    async def register_agent(self, name: str, account: str, role: str) -> Optional[str]:
        if not self.enabled:
            return None
        if self.fail:
            raise ReputationError("registry down")
        self.registered.append((name, account, role))
        return f"agent-{role}"

    async def record(self, agent_id: str, score: float, feedback: str, context: Optional[dict] = None) -> Optional[str]:
        if not self.enabled:
            return None
        if self.fail:
            raise ReputationError("registry down")
        self.records.append({"agent_id": agent_id, "score": score, "feedback": feedback, "context": context or {}})
        return f"rep-{len(self.records)}"

    async def close(self) -> None:
        return None


class FakeProcess:
    def __init__(self, ignore_terminate: bool = False) -> None:
        self.done = asyncio.Event()
        self.returncode: Optional[int] = None
        self.ignore_terminate = ignore_terminate
        self.terminated = False
        self.killed = False

    def finish(self, code: int = 0) -> None:
        self.returncode = code
        self.done.set()

    async def wait(self) -> int:
        await self.done.wait()
        return self.returncode or 0

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self.finish(-15)

    def kill(self) -> None:
        self.killed = True
        self.finish(-9)


class FakeLauncher:
    def __init__(self, fail: bool = False, auto_exit: bool = False, ignore_terminate: bool = False) -> None:
        self.fail = fail
        self.auto_exit = auto_exit
        self.ignore_terminate = ignore_terminate
        self.launches: List[Tuple[str, str]] = []
        self.processes: List[FakeProcess] = []

    async def launch(self, agent: str, prompt: str) -> FakeProcess:
        if self.fail:
            raise FileNotFoundError("agent binary missing")
        proc = FakeProcess(ignore_terminate=self.ignore_terminate)
        if self.auto_exit:
            proc.finish()
        self.launches.append((agent, prompt))
        self.processes.append(proc)
        return proc

    def agents(self) -> List[str]:
        return [agent for agent, _ in self.launches]

    def triggers(self) -> List[Tuple[str, str]]:
        """(agent, message type) per launch, read back from the prompt."""
        return [(agent, json.loads(prompt.split("\n", 1)[1]).get("type")) for agent, prompt in self.launches]


class ScriptedWorkers:
    """Cooperative worker (and optionally advisor) agents answering on a message log.

    Bids are posted for every role in ``bids`` on a task request; a deliverable is
    posted on each bid acceptance or revision request for roles in ``deliverable_roles``.
    """

    def __init__(
        self,
        log: Any,
        bids: Dict[str, Tuple[str, float]],
        *,
        deliverable_roles: Optional[List[str]] = None,
        advisor: bool = False,
        advisor_fee: float = 3.0,
        omit_bid_roles: bool = False,
        interval_s: float = 0.005,
    ) -> None:
        self.log = log
        self.bids = bids
        self.deliverable_roles = list(bids) if deliverable_roles is None else deliverable_roles
        self.advisor = advisor
        self.advisor_fee = advisor_fee
        self.omit_bid_roles = omit_bid_roles
        self.interval_s = interval_s
        self.after_seq = 0
        self.rounds: Dict[str, int] = {}

    async def run(self) -> None:
        while True:
            for msg in await self.log.read_since(self.after_seq):
                self.after_seq = max(self.after_seq, msg.sequence_number)
                try:
                    payload = json.loads(msg.raw)
                except ValueError:
                    continue
                if isinstance(payload, dict):
                    await self.react(payload)
            await asyncio.sleep(self.interval_s)

    async def react(self, payload: Dict[str, Any]) -> None:
        msg_type = payload.get("type")
        request_id = payload.get("requestId")
        role = payload.get("role")
        if msg_type == "task_request":
            for bid_role, (account, price) in self.bids.items():
                bid = {"type": "bid", "requestId": request_id, "bidder": account, "bidAmount": str(price)}
                if not self.omit_bid_roles:
                    bid["role"] = bid_role
                await self.log.append(bid)
        elif msg_type in ("bid_accepted", "revision_request") and role in self.deliverable_roles:
            round_no = self.rounds.get(role, -1) + 1
            self.rounds[role] = round_no
            account = self.bids[role][0]
            await self.log.append(
                {
                    "type": "deliverable",
                    "requestId": request_id,
                    "sender": account,
                    "role": role,
                    "content": {"summary": f"{role} work", "round": round_no},
                }
            )
        elif self.advisor and msg_type == "consultation_request":
            await self.log.append(
                {"type": "consultation_quote", "requestId": request_id, "role": role, "quotedFee": self.advisor_fee}
            )
        elif self.advisor and msg_type == "consultation_accept":
            await self.log.append(
                {"type": "consultation_response", "requestId": request_id, "role": role, "answer": f"Advice for {role}"}
            )


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(interval)
