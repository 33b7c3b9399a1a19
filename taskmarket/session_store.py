import json
from typing import Any, Dict, Optional

import aiosqlite

from .db import utc_now
from .schemas import Session


class SessionStore:
    """Persist session snapshots so the dashboard can query finished sessions."""

    def __init__(self, path: str):
        self.path = path

    async def save(self, session: Session) -> None:
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO sessions(request_id, state, session_json, created_at, updated_at) VALUES (?,?,?,?,?) "
                "ON CONFLICT(request_id) DO UPDATE SET state=excluded.state, session_json=excluded.session_json, "
                "updated_at=excluded.updated_at",
                (session.request_id, session.state, session.model_dump_json(), now, now),
            )
            await db.commit()

    async def get(self, request_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT session_json FROM sessions WHERE request_id=?",
                (request_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return _decode(row)

    async def latest(self) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT session_json FROM sessions ORDER BY updated_at DESC, rowid DESC LIMIT 1"
            )
            row = await cursor.fetchone()
            await cursor.close()
        return _decode(row)


def _decode(row: Optional[aiosqlite.Row]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    try:
        return json.loads(row["session_json"] or "{}")
    except ValueError:
        return None
