import json
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS log_messages(
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    topic TEXT,
                    message TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_log_messages_topic_seq ON log_messages(topic, seq);
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS sessions(
                    request_id TEXT PRIMARY KEY,
                    state TEXT,
                    session_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def append_log_message(self, topic: str, message: str) -> Tuple[int, str]:
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO log_messages(topic, message, created_at) VALUES (?,?,?)",
                (topic, message, created_at),
            )
            await db.commit()
            return int(cursor.lastrowid), created_at

    async def list_log_messages(self, topic: str, after_seq: int = 0, limit: int = 500) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, message, created_at FROM log_messages WHERE topic=? AND seq>? ORDER BY seq ASC LIMIT ?",
            (topic, after_seq, limit),
        )
        return [{"seq": row["seq"], "message": row["message"], "created_at": row["created_at"]} for row in rows]

    async def latest_log_seq(self, topic: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) as max_seq FROM log_messages WHERE topic=?", (topic,))
        return int(row["max_seq"]) if row and row["max_seq"] is not None else 0

    async def next_event_seq(self, request_id: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) as max_seq FROM events WHERE request_id=?", (request_id,))
        max_seq = row["max_seq"] if row and row["max_seq"] is not None else 0
        return int(max_seq) + 1

    async def add_event(self, request_id: str, event_type: str, payload: dict) -> dict:
        seq = await self.next_event_seq(request_id)
        created_at = utc_now()
        await self.execute(
            "INSERT INTO events(request_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (request_id, seq, event_type, json.dumps(payload), created_at),
        )
        return {"request_id": request_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, request_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE request_id=? AND seq>? ORDER BY seq ASC",
            (request_id, after_seq),
        )
        return [
            {
                "request_id": request_id,
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )
