"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from taskbridge.models import Task, User
from taskbridge.permissions import validate_configs

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management.

    Holds users, tasks, disambiguation sessions and per-chat conversation
    history. Every public method opens its own short-lived connection.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                open_id TEXT UNIQUE,
                platform_user_id TEXT,
                name TEXT,
                email TEXT,
                role TEXT NOT NULL DEFAULT 'user',
                configs_json TEXT NOT NULL DEFAULT '{}',
                tags_json TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS users_email_idx ON users(email);
            CREATE INDEX IF NOT EXISTS users_platform_idx ON users(platform_user_id);

            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                creator_id TEXT,
                assignee_id TEXT NOT NULL,
                assignee_open_id TEXT,
                reporter_open_id TEXT,
                deadline TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                priority TEXT NOT NULL DEFAULT 'p1',
                reminder_interval_hours INTEGER NOT NULL DEFAULT 24,
                estimated_hours REAL,
                last_reminded_at TEXT,
                target_tag TEXT,
                proof TEXT,
                note TEXT,
                created_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS tasks_assignee_status_idx ON tasks(assignee_id, status);

            CREATE TABLE IF NOT EXISTS user_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_key TEXT NOT NULL UNIQUE,
                data_json TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS user_sessions_expires_idx ON user_sessions(expires_at);

            CREATE TABLE IF NOT EXISTS conversation_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS conversation_history_chat_idx ON conversation_history(chat_id, id);

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )

    # -- users ---------------------------------------------------------------

    def upsert_user(self, user: User) -> User:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users(user_id, open_id, platform_user_id, name, email, role,
                                  configs_json, tags_json, created_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    open_id=COALESCE(excluded.open_id, users.open_id),
                    platform_user_id=COALESCE(excluded.platform_user_id, users.platform_user_id),
                    name=COALESCE(excluded.name, users.name),
                    email=COALESCE(excluded.email, users.email),
                    role=excluded.role,
                    configs_json=excluded.configs_json,
                    tags_json=excluded.tags_json
                """,
                (
                    user.user_id,
                    user.open_id,
                    user.platform_user_id,
                    user.name,
                    user.email,
                    user.role,
                    json.dumps(validate_configs(user.configs)),
                    json.dumps(sorted(set(user.tags))),
                    _utc_now_iso(),
                ),
            )
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user.user_id,)).fetchone()
        return _row_to_user(row)

    def get_user(self, user_id: str) -> User | None:
        return self._fetch_user("SELECT * FROM users WHERE user_id = ? LIMIT 1", (user_id,))

    def find_user_by_open_id(self, open_id: str | None) -> User | None:
        if not open_id:
            return None
        return self._fetch_user("SELECT * FROM users WHERE open_id = ? LIMIT 1", (open_id,))

    def find_user_by_email(self, email: str | None) -> User | None:
        if not email:
            return None
        return self._fetch_user(
            "SELECT * FROM users WHERE lower(email) = lower(?) LIMIT 1", (email,)
        )

    def find_user_by_platform_id(self, platform_user_id: str | None) -> User | None:
        if not platform_user_id:
            return None
        return self._fetch_user(
            "SELECT * FROM users WHERE platform_user_id = ? LIMIT 1", (platform_user_id,)
        )

    def search_users_by_name(self, query: str, limit: int = 5) -> list[User]:
        pattern = f"%{_escape_like(query)}%"
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM users
                WHERE name LIKE ? ESCAPE '\\'
                ORDER BY length(name) ASC, user_id ASC
                LIMIT ?
                """,
                (pattern, limit),
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def list_users(self, limit: int = 100) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at ASC, user_id ASC LIMIT ?", (limit,)
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def list_users_by_tag(self, tag: str) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM users
                WHERE EXISTS (SELECT 1 FROM json_each(users.tags_json) WHERE value = ?)
                ORDER BY user_id ASC
                """,
                (tag,),
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def enrich_user(self, user_id: str, **fields: str | None) -> User | None:
        """Fill NULL identity columns without overwriting known values."""

        allowed = ("open_id", "platform_user_id", "name", "email")
        updates = {k: v for k, v in fields.items() if k in allowed and v}
        if updates:
            assignments = ", ".join(f"{k} = COALESCE({k}, ?)" for k in updates)
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE users SET {assignments} WHERE user_id = ?",
                    (*updates.values(), user_id),
                )
        return self.get_user(user_id)

    def _fetch_user(self, query: str, params: tuple[Any, ...]) -> User | None:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return _row_to_user(row) if row else None

    # -- tasks ---------------------------------------------------------------

    def create_task(
        self,
        title: str,
        assignee_id: str,
        assignee_open_id: str | None = None,
        reporter_open_id: str | None = None,
        deadline: datetime | None = None,
        note: str | None = None,
        creator_id: str | None = None,
        priority: str = "p1",
        reminder_interval_hours: int = 24,
        estimated_hours: float | None = None,
        target_tag: str | None = None,
    ) -> Task:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO tasks(title, creator_id, assignee_id, assignee_open_id, reporter_open_id,
                                  deadline, priority, reminder_interval_hours, estimated_hours,
                                  target_tag, note, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    title,
                    creator_id,
                    assignee_id,
                    assignee_open_id,
                    reporter_open_id,
                    _iso(deadline) if deadline else None,
                    priority,
                    reminder_interval_hours,
                    estimated_hours,
                    target_tag,
                    note,
                    _utc_now_iso(),
                ),
            )
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (cur.lastrowid,)).fetchone()
        return _row_to_task(row)

    def get_task(self, task_id: int) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def get_pending_tasks(self, assignee_id: str | None, assignee_open_id: str | None = None) -> list[Task]:
        """Pending tasks for one assignee, deadline ascending (nulls last), then creation order."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tasks
                WHERE status = 'pending'
                  AND (assignee_id = ? OR (? IS NOT NULL AND assignee_open_id = ?))
                ORDER BY deadline IS NULL, deadline ASC, created_at ASC, id ASC
                """,
                (assignee_id, assignee_open_id, assignee_open_id),
            ).fetchall()
        return [_row_to_task(row) for row in rows]

    def complete_task(self, task_id: int, proof: str | None, completed_at: datetime | None = None) -> Task | None:
        """Flip a pending task to completed. Returns None if absent or already completed."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE tasks
                SET status = 'completed', proof = ?, completed_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (proof or None, _iso(completed_at or datetime.now(timezone.utc)), task_id),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row)

    def get_workload(self, assignee_id: str | None, assignee_open_id: str | None = None) -> float:
        """Sum of estimated hours (1.0 when unset) over pending tasks."""

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(COALESCE(estimated_hours, 1.0)), 0.0) AS score
                FROM tasks
                WHERE status = 'pending'
                  AND (assignee_id = ? OR (? IS NOT NULL AND assignee_open_id = ?))
                """,
                (assignee_id, assignee_open_id, assignee_open_id),
            ).fetchone()
        return float(row["score"])

    # -- sessions ------------------------------------------------------------

    def upsert_session(self, key: str, data: dict[str, Any], expires_at: datetime) -> datetime:
        """Write or overwrite a session. Returns the stored expiry.

        The stored expiry never moves backwards for a key that is rewritten.
        """

        with self._connect() as conn:
            row = conn.execute(
                "SELECT expires_at FROM user_sessions WHERE session_key = ?", (key,)
            ).fetchone()
            if row is not None:
                previous = datetime.fromisoformat(row["expires_at"])
                if expires_at <= previous:
                    expires_at = previous + _ONE_MICROSECOND
            conn.execute(
                """
                INSERT INTO user_sessions(session_key, data_json, expires_at, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(session_key) DO UPDATE SET
                    data_json=excluded.data_json,
                    expires_at=excluded.expires_at,
                    created_at=excluded.created_at
                """,
                (key, json.dumps(data, ensure_ascii=False), _iso(expires_at), _utc_now_iso()),
            )
        return expires_at

    def get_session(self, key: str, now: datetime) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT data_json, expires_at, created_at FROM user_sessions
                WHERE session_key = ? AND expires_at > ?
                """,
                (key, _iso(now)),
            ).fetchone()
        if row is None:
            return None
        return {
            "data": json.loads(row["data_json"]),
            "expires_at": datetime.fromisoformat(row["expires_at"]),
            "created_at": datetime.fromisoformat(row["created_at"]),
        }

    def delete_session(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM user_sessions WHERE session_key = ?", (key,))

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM user_sessions WHERE expires_at <= ?", (_iso(now),))
            return cur.rowcount

    # -- conversation history ------------------------------------------------

    def append_history(self, chat_id: str, role: str, content: Any, keep: int) -> None:
        """Append one message and prune the chat to its most recent `keep` rows.

        Insert and prune share one write transaction so concurrent writers on
        the same chat cannot interleave between them.
        """

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "INSERT INTO conversation_history(chat_id, role, content_json, created_at) VALUES (?, ?, ?, ?)",
                (chat_id, role, json.dumps(content, ensure_ascii=False), _utc_now_iso()),
            )
            conn.execute(
                """
                DELETE FROM conversation_history
                WHERE chat_id = ?
                  AND id NOT IN (
                      SELECT id FROM conversation_history
                      WHERE chat_id = ?
                      ORDER BY id DESC
                      LIMIT ?
                  )
                """,
                (chat_id, chat_id, keep),
            )

    def get_recent_history(self, chat_id: str, limit: int) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content_json
                FROM conversation_history
                WHERE chat_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (chat_id, limit),
            ).fetchall()
        ordered = list(reversed(rows))
        return [{"role": row["role"], "content": json.loads(row["content_json"])} for row in ordered]

    def count_history(self, chat_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM conversation_history WHERE chat_id = ?", (chat_id,)
            ).fetchone()
        return int(row["n"])

    # -- tool audit ----------------------------------------------------------

    def log_tool_execution(
        self,
        chat_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(chat_id, tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    chat_id,
                    tool_name,
                    json.dumps(tool_input, ensure_ascii=False, default=str),
                    json.dumps(tool_output, ensure_ascii=False, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, chat_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tool_name, succeeded FROM tool_executions WHERE chat_id = ? ORDER BY id ASC",
                (chat_id,),
            ).fetchall()
        return [dict(row) for row in rows]


_ONE_MICROSECOND = datetime.resolution


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _utc_now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        user_id=row["user_id"],
        open_id=row["open_id"],
        platform_user_id=row["platform_user_id"],
        name=row["name"],
        email=row["email"],
        role=row["role"],
        configs=json.loads(row["configs_json"] or "{}"),
        tags=json.loads(row["tags_json"] or "[]"),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=int(row["id"]),
        title=row["title"],
        assignee_id=row["assignee_id"],
        status=row["status"],
        assignee_open_id=row["assignee_open_id"],
        reporter_open_id=row["reporter_open_id"],
        deadline=_parse_dt(row["deadline"]),
        priority=row["priority"],
        reminder_interval_hours=int(row["reminder_interval_hours"]),
        estimated_hours=row["estimated_hours"],
        last_reminded_at=_parse_dt(row["last_reminded_at"]),
        note=row["note"],
        proof=row["proof"],
        creator_id=row["creator_id"],
        target_tag=row["target_tag"],
        created_at=_parse_dt(row["created_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )
