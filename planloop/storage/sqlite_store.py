from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Iterable


SCHEMA_VERSION = 1


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def default_db_path() -> str:
    return os.getenv("PLANLOOP_SQLITE_PATH", "data/events.db")


class EventJournal:
    """SQLite journal of trace events, one stream per session.

    - Program-recorded and replayable: every event is `(event_type, payload)`.
    - Attach with `store.subscribe(journal.observer(session_id))`.
    - Ordering is insertion order (`seq`), not wall clock, so events published
      within the same tick keep their mutation order.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Observers fire on whichever thread mutates the store (API or worker).
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _init_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  event_id TEXT NOT NULL UNIQUE,
                  session_id TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  event_type TEXT NOT NULL,
                  payload_json TEXT NOT NULL
                );
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_events_session_seq ON events(session_id, seq);")
            cur.execute(
                "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
                ("schema_version", str(SCHEMA_VERSION)),
            )
            self._conn.commit()

    def observer(self, session_id: str):
        """Observer callable for `SessionStore.subscribe`."""

        def _observe(event_type: str, payload: dict[str, Any]) -> None:
            self.append_event(session_id, event_type, payload)

        return _observe

    def append_event(self, session_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = _new_id("evt")
        created_at = float(payload.get("ts") or _utc_ts())
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO events(event_id, session_id, created_at, event_type, payload_json)
                VALUES(?, ?, ?, ?, ?);
                """,
                (event_id, session_id, created_at, event_type, _json_dumps(payload)),
            )
            self._conn.commit()
        return event_id

    def iter_events(self, session_id: str) -> Iterable[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT created_at, event_type, payload_json FROM events WHERE session_id = ? ORDER BY seq;",
                (session_id,),
            ).fetchall()
        for r in rows:
            yield {
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }

    def count_event_types(self, *, session_id: str) -> dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT event_type, COUNT(*) AS n FROM events WHERE session_id = ? GROUP BY event_type ORDER BY event_type;",
                (session_id,),
            ).fetchall()
        return {str(r["event_type"]): int(r["n"]) for r in rows}

    def list_events_page(
        self,
        *,
        session_id: str,
        limit: int,
        cursor: int | None,
        event_types: list[str] | None,
        include_payload: bool,
    ) -> dict[str, Any]:
        # Cursor is the last seen `seq`; fetch strictly after it.
        where = ["session_id = ?"]
        params: list[Any] = [session_id]

        if event_types:
            where.append("event_type IN (%s)" % ",".join(["?"] * len(event_types)))
            params.extend(event_types)

        if cursor is not None:
            where.append("seq > ?")
            params.append(int(cursor))

        where_sql = " AND ".join(where)
        # Fetch one extra row to determine has_more.
        fetch_n = int(limit) + 1
        sql = (
            "SELECT seq, event_id, session_id, created_at, event_type, payload_json "
            "FROM events "
            f"WHERE {where_sql} "
            "ORDER BY seq ASC "
            "LIMIT ?"
        )
        with self._lock:
            rows = self._conn.execute(sql, (*params, fetch_n)).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items: list[dict[str, Any]] = []
        for r in rows:
            item: dict[str, Any] = {
                "event_id": r["event_id"],
                "session_id": r["session_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
            }
            if include_payload:
                item["payload"] = json.loads(r["payload_json"])
            items.append(item)

        next_cursor: tuple[float, int] | None = None
        if has_more and rows:
            last = rows[-1]
            next_cursor = (float(last["created_at"]), int(last["seq"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def delete_session(self, session_id: str) -> int:
        with self._lock:
            cur = self._conn.execute("DELETE FROM events WHERE session_id = ?;", (session_id,))
            self._conn.commit()
            return int(cur.rowcount)
