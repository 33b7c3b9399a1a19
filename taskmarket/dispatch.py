import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set

from .config import DispatchConfig
from .message_log import MessageLog
from .normalizer import role_of
from .poller import parse_log_message
from .schemas import (
    BID_ACCEPTED,
    CONSULTATION_QUOTE,
    CONSULTATION_REQUEST,
    CONSULTATION_RESPONSE,
    DELIVERABLE,
    IGNORED_MESSAGE_TYPES,
    REVISION_REQUEST,
    TASK_REQUEST,
    PolledMessage,
)

logger = logging.getLogger("uvicorn.error")

WORKER_TYPES = {TASK_REQUEST, BID_ACCEPTED, REVISION_REQUEST, CONSULTATION_QUOTE, CONSULTATION_RESPONSE, DELIVERABLE}
ADVISOR_TYPES = {CONSULTATION_REQUEST}
# Only the worker named by the message's role reacts to these.
ROLE_TARGETED_TYPES = {BID_ACCEPTED, REVISION_REQUEST, CONSULTATION_QUOTE, CONSULTATION_RESPONSE}

DISPATCHED = "dispatched"
QUEUED = "queued"
COOLDOWN = "cooldown"
DUPLICATE = "duplicate"

STOP_WAIT_S = 5.0


class AgentProcess(Protocol):
    returncode: Optional[int]

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class Launcher(Protocol):
    async def launch(self, agent: str, prompt: str) -> AgentProcess: ...


@dataclass
class DispatchTrigger:
    agent: str
    seq: int
    message: Dict[str, Any]

    def prompt(self) -> str:
        msg_type = self.message.get("type") or "message"
        return (
            f"New marketplace message #{self.seq} ({msg_type}). "
            f"Read it and respond on the marketplace log if it concerns you:\n"
            f"{json.dumps(self.message, ensure_ascii=True)}"
        )


@dataclass
class AgentSlot:
    last_dispatch: Optional[float] = None
    in_flight: bool = False
    pending: Optional[DispatchTrigger] = None
    task: Optional[asyncio.Task] = None
    process: Optional[AgentProcess] = None
    dispatched: List[int] = field(default_factory=list)


def route(parsed: Dict[str, Any], roles: Sequence[str], advisor_role: str) -> List[str]:
    """Roles that should wake up for a log message, in role order."""
    msg_type = parsed.get("type")
    if not msg_type or msg_type in IGNORED_MESSAGE_TYPES:
        return []
    if msg_type in ADVISOR_TYPES:
        return [advisor_role]
    if msg_type not in WORKER_TYPES:
        return []
    role = role_of(parsed)
    if msg_type in ROLE_TARGETED_TYPES:
        return [r for r in roles if not role or r == role]
    if msg_type == DELIVERABLE:
        # A deliverable wakes the roles downstream of its author.
        if role not in roles:
            return []
        return list(roles[roles.index(role) + 1:])
    return list(roles)


class DispatchGovernor:
    """Idempotent, rate-limited wake-up of agent processes.

    Per agent: each log sequence number dispatches at most once, one invocation is in
    flight at a time, new triggers within the cooldown are dropped, and triggers that
    arrive while busy collapse into a single pending slot holding only the latest one.
    A queued trigger skips the cooldown when the slot frees up.
    """

    def __init__(
        self,
        launcher: Launcher,
        roles: Sequence[str],
        advisor_role: str,
        *,
        agents: Optional[Dict[str, str]] = None,
        cooldown_s: float = 30.0,
        slot_release_s: float = 45.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.launcher = launcher
        self.roles = list(roles)
        self.advisor_role = advisor_role
        self.agents = dict(agents or {})
        self.cooldown_s = cooldown_s
        self.slot_release_s = slot_release_s
        self.clock = clock
        self.seen: Set[int] = set()
        self.slots: Dict[str, AgentSlot] = {}

    def agent_for(self, role: str) -> str:
        return self.agents.get(role, role)

    def slot(self, agent: str) -> AgentSlot:
        return self.slots.setdefault(agent, AgentSlot())

    async def handle(self, message: PolledMessage) -> Dict[str, str]:
        """Route one log message. Returns agent -> outcome for every agent it concerned."""
        if message.sequence_number in self.seen:
            return {}
        self.seen.add(message.sequence_number)
        outcomes: Dict[str, str] = {}
        for role in route(message.parsed, self.roles, self.advisor_role):
            agent = self.agent_for(role)
            trigger = DispatchTrigger(agent=agent, seq=message.sequence_number, message=message.parsed)
            outcomes[agent] = self.submit(trigger)
        return outcomes

    def submit(self, trigger: DispatchTrigger) -> str:
        slot = self.slot(trigger.agent)
        if trigger.seq in slot.dispatched:
            return DUPLICATE
        if slot.in_flight:
            if slot.pending is not None:
                logger.info("Dispatch: %s replacing queued #%d with #%d", trigger.agent, slot.pending.seq, trigger.seq)
            slot.pending = trigger
            return QUEUED
        now = self.clock()
        if slot.last_dispatch is not None and now - slot.last_dispatch < self.cooldown_s:
            logger.info("Dispatch: %s in cooldown, dropping #%d", trigger.agent, trigger.seq)
            return COOLDOWN
        self._start(slot, trigger)
        return DISPATCHED

    def _start(self, slot: AgentSlot, trigger: DispatchTrigger) -> None:
        slot.in_flight = True
        slot.last_dispatch = self.clock()
        slot.dispatched.append(trigger.seq)
        slot.task = asyncio.create_task(self._run(slot, trigger))

    async def _run(self, slot: AgentSlot, trigger: DispatchTrigger) -> None:
        try:
            slot.process = await self.launcher.launch(trigger.agent, trigger.prompt())
        except OSError as exc:
            logger.warning("Dispatch: launching %s failed: %s", trigger.agent, exc)
        else:
            try:
                code = await asyncio.wait_for(slot.process.wait(), timeout=self.slot_release_s)
                logger.info("Dispatch: %s finished #%d (exit %s)", trigger.agent, trigger.seq, code)
            except asyncio.TimeoutError:
                logger.info("Dispatch: %s still running after %.0fs, stopping it", trigger.agent, self.slot_release_s)
                await self._stop_process(trigger.agent, slot.process)
            except asyncio.CancelledError:
                await self._stop_process(trigger.agent, slot.process)
                raise
        finally:
            slot.in_flight = False
            slot.process = None
        queued, slot.pending = slot.pending, None
        if queued is not None:
            self._start(slot, queued)

    async def _stop_process(self, agent: str, process: Optional[AgentProcess]) -> None:
        if process is None or process.returncode is not None:
            return
        # terminate first, then kill
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=STOP_WAIT_S)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning("Dispatch: %s ignored terminate, killing it", agent)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    def prune(self, through_seq: int) -> None:
        """Forget dedup state for sequence numbers the watcher will never read again."""
        self.seen = {seq for seq in self.seen if seq > through_seq}
        for slot in self.slots.values():
            slot.dispatched = [seq for seq in slot.dispatched if seq > through_seq]

    async def drain(self) -> None:
        tasks = [s.task for s in self.slots.values() if s.task and not s.task.done()]
        while tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            tasks = [s.task for s in self.slots.values() if s.task and not s.task.done()]

    async def cancel(self) -> None:
        """Drop queued triggers and stop every agent process still running."""
        for slot in self.slots.values():
            slot.pending = None
        tasks = [s.task for s in self.slots.values() if s.task and not s.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class SubprocessLauncher:
    """Start an agent CLI built from a command template with {agent} and {prompt} slots."""

    def __init__(self, command: Sequence[str]):
        self.command = list(command)

    def argv(self, agent: str, prompt: str) -> List[str]:
        return [part.replace("{agent}", agent).replace("{prompt}", prompt) for part in self.command]

    async def launch(self, agent: str, prompt: str) -> AgentProcess:
        argv = self.argv(agent, prompt)
        logger.info("Dispatch: starting %s (%s)", agent, argv[0])
        return await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )


class LogWatcher:
    """Tail the message log and feed every protocol message to a governor."""

    def __init__(self, log: MessageLog, governor: DispatchGovernor, interval_s: float = 3.0):
        self.log = log
        self.governor = governor
        self.interval_s = interval_s
        self.after_seq = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, after_seq: int) -> None:
        if self.running:
            return
        self.after_seq = after_seq
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self.governor.cancel()

    async def tick(self) -> int:
        """Read once and dispatch. Returns the number of protocol messages seen."""
        handled = 0
        for msg in await self.log.read_since(self.after_seq):
            self.after_seq = max(self.after_seq, msg.sequence_number)
            parsed = parse_log_message(msg)
            if parsed is None:
                continue
            polled = PolledMessage(
                sequence_number=msg.sequence_number, timestamp=msg.timestamp, raw=msg.raw, parsed=parsed
            )
            await self.governor.handle(polled)
            handled += 1
        self.governor.prune(self.after_seq)
        return handled

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as exc:
                logger.warning("Dispatch watcher read failed (%s); retrying", exc)
            await asyncio.sleep(self.interval_s)


def build_watcher(config: DispatchConfig, log: MessageLog, roles: Sequence[str], advisor_role: str) -> LogWatcher:
    governor = DispatchGovernor(
        SubprocessLauncher(config.command),
        roles,
        advisor_role,
        agents=config.agents,
        cooldown_s=config.cooldown_s,
        slot_release_s=config.slot_release_s,
    )
    return LogWatcher(log, governor, interval_s=config.watch_interval_s)
