"""SQLite request store."""

import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from bookwarden.config import env
from bookwarden.core.logger import setup_logger
from bookwarden.core.requests_service import (
    AUTHOR_BOUND_STATUSES,
    normalize_request_status,
    validate_status_transition,
)

logger = setup_logger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    username      TEXT UNIQUE NOT NULL,
    email         TEXT,
    display_name  TEXT,
    role          TEXT NOT NULL DEFAULT 'user',
    created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS user_settings (
    user_id       INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    settings_json TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS book_requests (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id             INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    book_id             TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending',
    quality_profile_id  INTEGER NOT NULL,
    external_author_id  INTEGER,
    foreign_book_id     TEXT,
    note                TEXT,
    admin_note          TEXT,
    last_failure_reason TEXT,
    processed_by        INTEGER REFERENCES users(id),
    requested_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    processed_at        TIMESTAMP,
    completed_at        TIMESTAMP,
    last_polled_at      TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_book_requests_user_status_requested_at
ON book_requests (user_id, status, requested_at DESC);

CREATE INDEX IF NOT EXISTS idx_book_requests_status_requested_at
ON book_requests (status, requested_at DESC);

CREATE UNIQUE INDEX IF NOT EXISTS idx_book_requests_one_pending
ON book_requests (user_id, book_id) WHERE status = 'pending';

CREATE TABLE IF NOT EXISTS notifications (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id    INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    kind       TEXT NOT NULL,
    title      TEXT NOT NULL,
    message    TEXT NOT NULL,
    link       TEXT,
    is_read    INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_notifications_user_created_at
ON notifications (user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS quality_profile_configs (
    profile_id   INTEGER PRIMARY KEY,
    profile_name TEXT NOT NULL,
    enabled      INTEGER NOT NULL DEFAULT 1,
    order_index  INTEGER NOT NULL,
    updated_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


def get_requests_db_path(config_dir: Optional[str] = None) -> str:
    """Return the configured request database path."""
    root = config_dir or str(env.CONFIG_DIR)
    return os.path.join(root, "bookwarden.db")


class RequestDB:
    """Thread-safe SQLite store for users, requests and in-app notifications."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(_CREATE_TABLES_SQL)
                self._migrate_request_columns(conn)
                conn.commit()
                # WAL mode must be changed outside an open transaction.
                conn.execute("PRAGMA journal_mode=WAL")
            finally:
                conn.close()

    def _migrate_request_columns(self, conn: sqlite3.Connection) -> None:
        """Add columns introduced after the first schema."""
        columns = conn.execute("PRAGMA table_info(book_requests)").fetchall()
        column_names = {str(col["name"]) for col in columns}
        if "foreign_book_id" not in column_names:
            conn.execute("ALTER TABLE book_requests ADD COLUMN foreign_book_id TEXT")
        if "last_failure_reason" not in column_names:
            conn.execute("ALTER TABLE book_requests ADD COLUMN last_failure_reason TEXT")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        role: str = "user",
    ) -> Dict[str, Any]:
        """Create a new user. Raises ValueError if username already exists."""
        if role not in ("user", "admin"):
            raise ValueError(f"Invalid role: {role}")
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    "INSERT INTO users (username, email, display_name, role) VALUES (?, ?, ?, ?)",
                    (username, email, display_name, role),
                )
                conn.commit()
                return self._get_user_by_id(conn, cursor.lastrowid)
            except sqlite3.IntegrityError as e:
                raise ValueError(f"User already exists: {e}")
            finally:
                conn.close()

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            return self._get_user_by_id(conn, user_id)
        finally:
            conn.close()

    def _get_user_by_id(self, conn: sqlite3.Connection, user_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None

    def list_admin_user_ids(self) -> List[int]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT id FROM users WHERE role = 'admin' ORDER BY id").fetchall()
            return [int(r["id"]) for r in rows]
        finally:
            conn.close()

    def get_user_settings(self, user_id: int) -> Dict[str, Any]:
        """Get per-user settings. Returns empty dict if none set."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT settings_json FROM user_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row:
                return json.loads(row["settings_json"])
            return {}
        finally:
            conn.close()

    def set_user_settings(self, user_id: int, settings: Dict[str, Any]) -> None:
        """Merge settings into user's existing settings."""
        with self._lock:
            conn = self._connect()
            try:
                existing = {}
                row = conn.execute(
                    "SELECT settings_json FROM user_settings WHERE user_id = ?", (user_id,)
                ).fetchone()
                if row:
                    existing = json.loads(row["settings_json"])

                existing.update(settings)
                # Remove keys set to None (meaning "clear this override")
                existing = {k: v for k, v in existing.items() if v is not None}
                settings_json = json.dumps(existing)

                conn.execute(
                    """INSERT INTO user_settings (user_id, settings_json) VALUES (?, ?)
                       ON CONFLICT(user_id) DO UPDATE SET settings_json = ?""",
                    (user_id, settings_json, settings_json),
                )
                conn.commit()
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    @staticmethod
    def _check_author_invariant(status: str, external_author_id: Any) -> None:
        has_author = external_author_id is not None
        if status in AUTHOR_BOUND_STATUSES and not has_author:
            raise ValueError(f"status={status} requires external_author_id")
        if status not in AUTHOR_BOUND_STATUSES and has_author:
            raise ValueError(f"status={status} must not carry external_author_id")

    def create_request(
        self,
        *,
        user_id: int,
        book_id: str,
        quality_profile_id: int,
        note: Optional[str] = None,
        requested_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a pending request row and return the created record."""
        if not book_id:
            raise ValueError("book_id is required")
        if not isinstance(quality_profile_id, int) or isinstance(quality_profile_id, bool):
            raise ValueError("quality_profile_id must be an integer")

        with self._lock:
            conn = self._connect()
            try:
                columns = ["user_id", "book_id", "status", "quality_profile_id", "note"]
                values: List[Any] = [user_id, book_id, "pending", quality_profile_id, note]
                if requested_at is not None:
                    columns.append("requested_at")
                    values.append(requested_at)
                placeholders = ", ".join("?" for _ in columns)
                try:
                    cursor = conn.execute(
                        f"INSERT INTO book_requests ({', '.join(columns)}) VALUES ({placeholders})",
                        values,
                    )
                except sqlite3.IntegrityError as e:
                    raise ValueError(f"Could not create request: {e}") from e
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM book_requests WHERE id = ?",
                    (cursor.lastrowid,),
                ).fetchone()
                if row is None:
                    raise ValueError(f"Request {cursor.lastrowid} not found after creation")
                return dict(row)
            finally:
                conn.close()

    def get_request(self, request_id: int) -> Optional[Dict[str, Any]]:
        """Get a request row by ID."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM book_requests WHERE id = ?",
                (request_id,),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def list_requests(
        self,
        *,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
        book_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """List requests with optional user/status/book filters."""
        where_clauses: List[str] = []
        params: List[Any] = []

        if user_id is not None:
            where_clauses.append("user_id = ?")
            params.append(user_id)

        if status is not None:
            where_clauses.append("status = ?")
            params.append(normalize_request_status(status))

        if book_id is not None:
            where_clauses.append("book_id = ?")
            params.append(book_id)

        query = "SELECT * FROM book_requests"
        if where_clauses:
            query += " WHERE " + " AND ".join(where_clauses)
        query += " ORDER BY requested_at DESC, id DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
            if offset:
                query += " OFFSET ?"
                params.append(offset)
        elif offset:
            query += " LIMIT -1 OFFSET ?"
            params.append(offset)

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    _ALLOWED_REQUEST_UPDATE_COLUMNS = {
        "status",
        "external_author_id",
        "foreign_book_id",
        "note",
        "admin_note",
        "last_failure_reason",
        "processed_by",
        "processed_at",
        "completed_at",
        "last_polled_at",
    }

    def update_request(
        self,
        request_id: int,
        expected_current_status: Optional[str] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        """Update request fields and return the updated record.

        Writes are last-write-wins unless ``expected_current_status`` is given,
        in which case the update only applies if the row is still in that state.
        """
        for key in kwargs:
            if key not in self._ALLOWED_REQUEST_UPDATE_COLUMNS:
                raise ValueError(f"Invalid request column: {key}")

        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT * FROM book_requests WHERE id = ?",
                    (request_id,),
                ).fetchone()
                if row is None:
                    raise ValueError(f"Request {request_id} not found")
                current = dict(row)

                if expected_current_status is not None:
                    normalized_expected_status = normalize_request_status(expected_current_status)
                    if current["status"] != normalized_expected_status:
                        raise ValueError("Request state changed before update")

                if not kwargs:
                    return current

                updates = dict(kwargs)
                if "status" in updates:
                    _, updates["status"] = validate_status_transition(
                        current["status"],
                        updates["status"],
                    )

                self._check_author_invariant(
                    updates.get("status", current["status"]),
                    updates["external_author_id"] if "external_author_id" in updates
                    else current["external_author_id"],
                )

                set_clause = ", ".join(f"{column} = ?" for column in updates)
                values = list(updates.values()) + [request_id]
                conn.execute(
                    f"UPDATE book_requests SET {set_clause} WHERE id = ?",
                    values,
                )
                conn.commit()

                updated_row = conn.execute(
                    "SELECT * FROM book_requests WHERE id = ?",
                    (request_id,),
                ).fetchone()
                if updated_row is None:
                    raise ValueError(f"Request {request_id} not found after update")
                return dict(updated_row)
            finally:
                conn.close()

    def delete_request(self, request_id: int) -> bool:
        """Delete a request row. Returns False if it did not exist."""
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM book_requests WHERE id = ?", (request_id,))
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    def count_requests_by_status(self, user_id: Optional[int] = None) -> Dict[str, int]:
        """Count requests grouped by status, optionally for one user."""
        query = "SELECT status, COUNT(*) AS count FROM book_requests"
        params: List[Any] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " GROUP BY status"
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
            return {str(r["status"]): int(r["count"]) for r in rows}
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # In-app notifications
    # ------------------------------------------------------------------

    def create_notification(
        self,
        *,
        user_id: int,
        kind: str,
        title: str,
        message: str,
        link: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    """INSERT INTO notifications (user_id, kind, title, message, link)
                       VALUES (?, ?, ?, ?, ?)""",
                    (user_id, kind, title, message, link),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM notifications WHERE id = ?", (cursor.lastrowid,)
                ).fetchone()
                return self._parse_notification_row(row)
            finally:
                conn.close()

    @staticmethod
    def _parse_notification_row(row: sqlite3.Row) -> Dict[str, Any]:
        payload = dict(row)
        payload["is_read"] = bool(payload.get("is_read"))
        return payload

    def list_notifications(
        self,
        user_id: int,
        *,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        conn = self._connect()
        try:
            rows = conn.execute(query, (user_id, int(limit))).fetchall()
            return [self._parse_notification_row(r) for r in rows]
        finally:
            conn.close()

    def mark_notifications_read(self, user_id: int, notification_id: Optional[int] = None) -> int:
        """Mark one (or all) of a user's notifications read. Returns rows changed."""
        query = "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0"
        params: List[Any] = [user_id]
        if notification_id is not None:
            query += " AND id = ?"
            params.append(notification_id)
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(query, params)
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Quality profile configuration
    # ------------------------------------------------------------------

    def list_quality_profile_configs(self, *, enabled_only: bool = False) -> List[Dict[str, Any]]:
        query = "SELECT * FROM quality_profile_configs"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY order_index, profile_id"
        conn = self._connect()
        try:
            rows = conn.execute(query).fetchall()
            results = []
            for row in rows:
                payload = dict(row)
                payload["enabled"] = bool(payload["enabled"])
                results.append(payload)
            return results
        finally:
            conn.close()

    def upsert_quality_profile_config(
        self,
        profile_id: int,
        *,
        profile_name: Optional[str] = None,
        enabled: Optional[bool] = None,
        order_index: Optional[int] = None,
    ) -> None:
        """Insert a profile config at the end of the ordering, or update fields in place."""
        with self._lock:
            conn = self._connect()
            try:
                existing = conn.execute(
                    "SELECT * FROM quality_profile_configs WHERE profile_id = ?", (profile_id,)
                ).fetchone()
                if existing is None:
                    if profile_name is None:
                        raise ValueError(f"Quality profile {profile_id} not found")
                    if order_index is None:
                        row = conn.execute(
                            "SELECT COALESCE(MAX(order_index), -1) AS max_index FROM quality_profile_configs"
                        ).fetchone()
                        order_index = int(row["max_index"]) + 1
                    conn.execute(
                        """INSERT INTO quality_profile_configs (profile_id, profile_name, enabled, order_index)
                           VALUES (?, ?, ?, ?)""",
                        (profile_id, profile_name, 1 if enabled is None else int(enabled), order_index),
                    )
                else:
                    updates: Dict[str, Any] = {}
                    if profile_name is not None:
                        updates["profile_name"] = profile_name
                    if enabled is not None:
                        updates["enabled"] = int(enabled)
                    if order_index is not None:
                        updates["order_index"] = order_index
                    if updates:
                        set_clause = ", ".join(f"{k} = ?" for k in updates)
                        conn.execute(
                            f"UPDATE quality_profile_configs SET {set_clause}, "
                            "updated_at = CURRENT_TIMESTAMP WHERE profile_id = ?",
                            list(updates.values()) + [profile_id],
                        )
                conn.commit()
            finally:
                conn.close()
