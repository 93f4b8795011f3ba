import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from constants import DEFAULT_DB_PATH
from context_schema import (
    ActionItem,
    CalendarContextObservation,
    Commitment,
    CompletedAction,
    EmailContextObservation,
    ScreenCapture,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS screen_captures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    app_name TEXT,
    window_title TEXT,
    text_content TEXT,
    analysis_json TEXT,
    image_hash TEXT
);
CREATE INDEX IF NOT EXISTS idx_screen_captures_timestamp ON screen_captures(timestamp);

CREATE TABLE IF NOT EXISTS commitments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL,
    type TEXT NOT NULL,
    recipient TEXT,
    deadline INTEGER,
    detected_at INTEGER NOT NULL,
    completed_at INTEGER,
    status TEXT NOT NULL DEFAULT 'pending',
    source_capture_id INTEGER,
    context_json TEXT,
    confidence REAL NOT NULL DEFAULT 0.7,
    synced INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_commitments_status ON commitments(status, detected_at);

CREATE TABLE IF NOT EXISTS action_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'medium',
    source TEXT NOT NULL DEFAULT 'other',
    detected_at INTEGER NOT NULL,
    completed_at INTEGER,
    status TEXT NOT NULL DEFAULT 'pending',
    source_capture_id INTEGER,
    context_json TEXT
);

CREATE TABLE IF NOT EXISTS email_contexts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    app_name TEXT,
    action TEXT NOT NULL,
    recipient TEXT,
    subject TEXT,
    body_preview TEXT,
    has_attachment INTEGER NOT NULL DEFAULT 0,
    source_capture_id INTEGER
);
CREATE INDEX IF NOT EXISTS idx_email_contexts_timestamp ON email_contexts(timestamp);

CREATE TABLE IF NOT EXISTS calendar_contexts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    app_name TEXT,
    action TEXT NOT NULL,
    event_title TEXT,
    event_time TEXT,
    participants_json TEXT,
    source_capture_id INTEGER
);
CREATE INDEX IF NOT EXISTS idx_calendar_contexts_timestamp ON calendar_contexts(timestamp);

CREATE TABLE IF NOT EXISTS completed_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action_type TEXT NOT NULL,
    details_json TEXT,
    timestamp INTEGER NOT NULL,
    app_name TEXT,
    matched_commitment_id INTEGER
);
CREATE INDEX IF NOT EXISTS idx_completed_actions_timestamp ON completed_actions(timestamp);
"""


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.debug("Ignoring malformed JSON column: %.60s", value)
        return None


class ContextStore:
    """
    SQLite persistence for captures, commitments, action items and the
    email/calendar observations the follow-up matcher reads.

    One connection is shared across threads; every statement runs under a
    re-entrant lock. Timestamps are integer milliseconds since the epoch.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = str(db_path or DEFAULT_DB_PATH)
        if self.db_path != ":memory:":
            directory = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self.init_db()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cursor = self._conn.cursor()
            try:
                yield cursor
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            finally:
                cursor.close()

    def init_db(self) -> None:
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _exists(self, sql: str, params: tuple) -> bool:
        with self._lock:
            return self._conn.execute(sql, params).fetchone() is not None

    # Inserts ---------------------------------------------------------------

    def insert_screen_capture(self, capture: ScreenCapture) -> int:
        analysis = capture.analysis.to_dict() if capture.analysis is not None else None
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO screen_captures
                    (timestamp, app_name, window_title, text_content, analysis_json, image_hash)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    capture.timestamp,
                    capture.app_name,
                    capture.window_title,
                    capture.text_content,
                    _dumps(analysis),
                    capture.image_hash,
                ),
            )
            return cur.lastrowid

    def insert_commitment(self, commitment: Commitment) -> int:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO commitments
                    (text, type, recipient, deadline, detected_at, completed_at, status,
                     source_capture_id, context_json, confidence, synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    commitment.text,
                    commitment.type,
                    commitment.recipient,
                    commitment.deadline,
                    commitment.detected_at,
                    commitment.completed_at,
                    commitment.status,
                    commitment.source_capture_id,
                    _dumps(commitment.context),
                    commitment.confidence,
                    int(commitment.synced),
                ),
            )
            return cur.lastrowid

    def insert_action_item(self, item: ActionItem) -> int:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO action_items
                    (text, priority, source, detected_at, completed_at, status, source_capture_id, context_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.text,
                    item.priority,
                    item.source,
                    item.detected_at,
                    item.completed_at,
                    item.status,
                    item.source_capture_id,
                    _dumps(item.context),
                ),
            )
            return cur.lastrowid

    def insert_email_context(self, observation: EmailContextObservation) -> int:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO email_contexts
                    (timestamp, app_name, action, recipient, subject, body_preview, has_attachment, source_capture_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    observation.timestamp,
                    observation.app_name,
                    observation.action,
                    observation.recipient,
                    observation.subject,
                    observation.body_preview,
                    int(observation.has_attachment),
                    observation.source_capture_id,
                ),
            )
            return cur.lastrowid

    def insert_calendar_context(self, observation: CalendarContextObservation) -> int:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO calendar_contexts
                    (timestamp, app_name, action, event_title, event_time, participants_json, source_capture_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    observation.timestamp,
                    observation.app_name,
                    observation.action,
                    observation.event_title,
                    observation.event_time,
                    _dumps(list(observation.participants)),
                    observation.source_capture_id,
                ),
            )
            return cur.lastrowid

    def insert_completed_action(self, action: CompletedAction) -> int:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO completed_actions
                    (action_type, details_json, timestamp, app_name, matched_commitment_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    action.action_type,
                    _dumps(action.details),
                    action.timestamp,
                    action.app_name,
                    action.matched_commitment_id,
                ),
            )
            return cur.lastrowid

    # Commitments ------------------------------------------------------------

    @staticmethod
    def _row_to_commitment(row: sqlite3.Row) -> Commitment:
        return Commitment(
            id=row["id"],
            text=row["text"],
            type=row["type"],
            recipient=row["recipient"],
            deadline=row["deadline"],
            detected_at=row["detected_at"],
            completed_at=row["completed_at"],
            status=row["status"],
            source_capture_id=row["source_capture_id"],
            context=_loads(row["context_json"]),
            confidence=row["confidence"],
            synced=bool(row["synced"]),
        )

    def get_commitment(self, commitment_id: int) -> Optional[Commitment]:
        rows = self._query("SELECT * FROM commitments WHERE id = ?", (commitment_id,))
        return self._row_to_commitment(rows[0]) if rows else None

    def get_commitments(self, status: Optional[str] = None, limit: int = 20) -> List[Commitment]:
        if status:
            rows = self._query(
                "SELECT * FROM commitments WHERE status = ? ORDER BY detected_at DESC, id DESC LIMIT ?",
                (status, limit),
            )
        else:
            rows = self._query(
                "SELECT * FROM commitments ORDER BY detected_at DESC, id DESC LIMIT ?",
                (limit,),
            )
        return [self._row_to_commitment(row) for row in rows]

    def get_pending_commitments_since(self, since_ms: int, commitment_type: Optional[str] = None) -> List[Commitment]:
        sql = "SELECT * FROM commitments WHERE status = 'pending' AND detected_at > ?"
        params: tuple = (since_ms,)
        if commitment_type:
            sql += " AND type = ?"
            params += (commitment_type,)
        sql += " ORDER BY detected_at DESC, id DESC"
        return [self._row_to_commitment(row) for row in self._query(sql, params)]

    def resolve_commitment(self, commitment_id: int, status: str, completed_at: Optional[int] = None) -> bool:
        """Move a pending commitment to `status`. Returns False if it was not pending."""
        if status == "pending":
            raise ValueError("Commitments cannot be moved back to pending.")
        with self._transaction() as cur:
            cur.execute(
                "UPDATE commitments SET status = ?, completed_at = ? WHERE id = ? AND status = 'pending'",
                (status, completed_at, commitment_id),
            )
            return cur.rowcount > 0

    def mark_commitment_synced(self, commitment_id: int) -> None:
        with self._transaction() as cur:
            cur.execute("UPDATE commitments SET synced = 1 WHERE id = ?", (commitment_id,))

    def get_unsynced_commitments(self, limit: int = 50) -> List[Commitment]:
        rows = self._query(
            "SELECT * FROM commitments WHERE synced = 0 ORDER BY detected_at ASC LIMIT ?",
            (limit,),
        )
        return [self._row_to_commitment(row) for row in rows]

    def get_commitments_in_range(self, start_ms: int, end_ms: int) -> List[Commitment]:
        rows = self._query(
            "SELECT * FROM commitments WHERE detected_at >= ? AND detected_at < ? ORDER BY confidence DESC, detected_at DESC",
            (start_ms, end_ms),
        )
        return [self._row_to_commitment(row) for row in rows]

    # Action items -----------------------------------------------------------

    def get_recent_action_items(self, limit: int = 10) -> List[ActionItem]:
        rows = self._query(
            "SELECT * FROM action_items ORDER BY detected_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [
            ActionItem(
                id=row["id"],
                text=row["text"],
                priority=row["priority"],
                source=row["source"],
                detected_at=row["detected_at"],
                completed_at=row["completed_at"],
                status=row["status"],
                source_capture_id=row["source_capture_id"],
                context=_loads(row["context_json"]),
            )
            for row in rows
        ]

    def complete_action_item(self, item_id: int, completed_at: int) -> bool:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE action_items SET status = 'completed', completed_at = ? WHERE id = ? AND status = 'pending'",
                (completed_at, item_id),
            )
            return cur.rowcount > 0

    # Matching evidence -------------------------------------------------------

    def has_calendar_creation_since(self, since_ms: int) -> bool:
        return self._exists(
            "SELECT 1 FROM calendar_contexts WHERE action = 'creating' AND timestamp > ? LIMIT 1",
            (since_ms,),
        )

    def has_email_activity_since(self, since_ms: int) -> bool:
        return self._exists(
            "SELECT 1 FROM email_contexts WHERE action IN ('composing', 'sending', 'sent') AND timestamp > ? LIMIT 1",
            (since_ms,),
        )

    def has_completed_action_since(self, since_ms: int) -> bool:
        return self._exists(
            "SELECT 1 FROM completed_actions WHERE timestamp > ? LIMIT 1",
            (since_ms,),
        )

    def get_completed_actions(self, commitment_id: Optional[int] = None) -> List[CompletedAction]:
        if commitment_id is None:
            rows = self._query("SELECT * FROM completed_actions ORDER BY timestamp DESC")
        else:
            rows = self._query(
                "SELECT * FROM completed_actions WHERE matched_commitment_id = ? ORDER BY timestamp DESC",
                (commitment_id,),
            )
        return [
            CompletedAction(
                id=row["id"],
                action_type=row["action_type"],
                details=_loads(row["details_json"]) or {},
                timestamp=row["timestamp"],
                app_name=row["app_name"],
                matched_commitment_id=row["matched_commitment_id"],
            )
            for row in rows
        ]

    # Captures ---------------------------------------------------------------

    def count_captures(self) -> int:
        rows = self._query("SELECT COUNT(*) AS total FROM screen_captures")
        return int(rows[0]["total"]) if rows else 0

    def get_captures_in_range(self, start_ms: int, end_ms: int) -> List[Dict[str, Any]]:
        """Rows in [start_ms, end_ms) oldest first, with `analysis` decoded from JSON."""
        rows = self._query(
            "SELECT * FROM screen_captures WHERE timestamp >= ? AND timestamp < ? ORDER BY timestamp ASC",
            (start_ms, end_ms),
        )
        return [
            {
                "id": row["id"],
                "timestamp": row["timestamp"],
                "app_name": row["app_name"],
                "window_title": row["window_title"],
                "text_content": row["text_content"],
                "analysis": _loads(row["analysis_json"]),
                "image_hash": row["image_hash"],
            }
            for row in rows
        ]
