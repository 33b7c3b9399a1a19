import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .db import Database, utc_now
from .schemas import LogMessage, LogRecord, PolledMessage, Session

Emit = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class MessageLog(Protocol):
    async def append(self, payload: Dict[str, Any]) -> LogRecord: ...

    async def read_since(self, min_seq: int) -> List[LogMessage]: ...

    async def latest_seq(self) -> int: ...


class SqliteMessageLog:
    """Append-only, sequence-numbered topic log stored in the app database.

    Sequence numbers come from an AUTOINCREMENT key, so they only grow. Workers write
    through the HTTP surface and may post arbitrary text; readers must tolerate it.
    """

    def __init__(self, db: Database, topic: str, page_size: int = 500):
        self.db = db
        self.topic = topic
        self.page_size = page_size

    async def append(self, payload: Dict[str, Any]) -> LogRecord:
        return await self.append_raw(json.dumps(payload, ensure_ascii=True))

    async def append_raw(self, message: str) -> LogRecord:
        seq, created_at = await self.db.append_log_message(self.topic, message)
        return LogRecord(sequence_number=seq, timestamp=created_at)

    async def read_since(self, min_seq: int) -> List[LogMessage]:
        messages: List[LogMessage] = []
        cursor = min_seq
        while True:
            rows = await self.db.list_log_messages(self.topic, after_seq=cursor, limit=self.page_size)
            messages.extend(
                LogMessage(sequence_number=row["seq"], timestamp=row["created_at"], raw=row["message"] or "")
                for row in rows
            )
            if len(rows) < self.page_size:
                return messages
            cursor = rows[-1]["seq"]

    async def latest_seq(self) -> int:
        return await self.db.latest_log_seq(self.topic)


class LogPublisher:
    """Append protocol messages on behalf of a session and mirror them onto the event stream."""

    def __init__(self, log: MessageLog, emit: Optional[Emit] = None):
        self.log = log
        self.emit = emit

    async def publish(self, session: Session, payload: Dict[str, Any]) -> PolledMessage:
        body = {"requestId": session.request_id, **payload}
        body.setdefault("timestamp", utc_now())
        record = await self.log.append(body)
        session.observe(record.sequence_number)
        message = PolledMessage(
            sequence_number=record.sequence_number,
            timestamp=record.timestamp,
            raw=json.dumps(body, ensure_ascii=True),
            parsed=body,
        )
        if self.emit:
            await self.emit("log_message", {"seq": record.sequence_number, "timestamp": record.timestamp, **body})
        return message
