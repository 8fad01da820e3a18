"""SQLite persistence: one JSON snapshot per learner plus the durable sync outbox."""

import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from db_pool import SQLiteConnectionPool
from schemas import LearnerState, parse_snapshot

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "drill.db")

_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)
_initialised: set[str] = set()


def configure(path: str) -> None:
    """Point the store at ``path``; idle connections to the previous file are closed."""
    global DB_PATH, _pool
    if path == _pool.database:
        return
    _pool.close_all()
    DB_PATH = path
    _pool = SQLiteConnectionPool(path, max_connections=10)
    logger.info("Using database %s", path)


def close() -> None:
    _pool.close_all()


def _exec(sql: str, params: Iterable = ()) -> int:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        con.commit()
        return cur.rowcount


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        return cur.fetchall()


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def init() -> None:
    """Create tables if they do not exist yet (idempotent)."""
    _exec(
        """
        CREATE TABLE IF NOT EXISTS learner_snapshots (
            learner_id TEXT PRIMARY KEY,
            payload TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    _exec(
        """
        CREATE TABLE IF NOT EXISTS sync_outbox (
            event_id TEXT PRIMARY KEY,
            learner_id TEXT NOT NULL,
            amount INTEGER NOT NULL,
            source TEXT NOT NULL,
            created_at TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            last_attempt_at TEXT
        )
        """
    )
    _exec("CREATE INDEX IF NOT EXISTS idx_sync_outbox_created ON sync_outbox(created_at)")
    _initialised.add(_pool.database)


def _ensure_init() -> None:
    if _pool.database not in _initialised:
        init()


# ---------------------------------------------------------------------------
# snapshots
# ---------------------------------------------------------------------------

def load_snapshot(learner_id: str) -> Optional[str]:
    """Return the raw stored payload for ``learner_id`` or ``None``."""
    _ensure_init()
    rows = _query("SELECT payload FROM learner_snapshots WHERE learner_id = ?", [learner_id])
    if not rows:
        return None
    return rows[0]["payload"]


def save_snapshot(learner_id: str, payload: str) -> None:
    _ensure_init()
    _exec(
        """
        INSERT INTO learner_snapshots (learner_id, payload, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(learner_id) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
        """,
        (learner_id, payload, _utcnow()),
    )


def delete_snapshot(learner_id: str) -> bool:
    _ensure_init()
    return _exec("DELETE FROM learner_snapshots WHERE learner_id = ?", [learner_id]) > 0


def load_learner_state(learner_id: str) -> LearnerState:
    """Load and heal a learner snapshot; storage errors mean "no existing data"."""
    try:
        raw = load_snapshot(learner_id)
    except sqlite3.Error as exc:
        logger.warning("Snapshot read failed for %s, using defaults: %s", learner_id, exc)
        return LearnerState()
    if raw is None:
        logger.info("No snapshot stored for %s; starting from defaults", learner_id)
    return parse_snapshot(raw)


def save_learner_state(learner_id: str, state: LearnerState) -> None:
    save_snapshot(learner_id, state.to_json())


# ---------------------------------------------------------------------------
# sync outbox
# ---------------------------------------------------------------------------

def insert_sync_event(
    event_id: str,
    learner_id: str,
    amount: int,
    source: str,
    created_at: str,
) -> None:
    _ensure_init()
    _exec(
        """
        INSERT OR IGNORE INTO sync_outbox (event_id, learner_id, amount, source, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (event_id, learner_id, int(amount), source, created_at),
    )


def list_pending_sync_events(limit: Optional[int] = None) -> List[Dict[str, Any]]:
    _ensure_init()
    sql = "SELECT * FROM sync_outbox ORDER BY created_at, event_id"
    params: list[Any] = []
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [dict(row) for row in _query(sql, params)]


def count_pending_sync_events(learner_id: Optional[str] = None) -> int:
    _ensure_init()
    if learner_id is None:
        rows = _query("SELECT COUNT(*) AS n FROM sync_outbox")
    else:
        rows = _query("SELECT COUNT(*) AS n FROM sync_outbox WHERE learner_id = ?", [learner_id])
    return int(rows[0]["n"])


def delete_sync_event(event_id: str) -> bool:
    _ensure_init()
    return _exec("DELETE FROM sync_outbox WHERE event_id = ?", [event_id]) > 0


def record_sync_failure(event_id: str, error: str) -> None:
    _ensure_init()
    _exec(
        """
        UPDATE sync_outbox
        SET attempts = attempts + 1, last_error = ?, last_attempt_at = ?
        WHERE event_id = ?
        """,
        (error[:500], _utcnow(), event_id),
    )
