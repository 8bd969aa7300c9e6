from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Collection, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent
from typing import Any, TypeVar

from pydantic import BaseModel

from clawbridge.models import Chat, NewMessage, ScheduledTask, TaskRunLog

log = logging.getLogger(__name__)

GROUP_SYNC_JID = "__group_sync__"
TELEGRAM_JID_PREFIX = "telegram:"


class ThreadSafeConnection:
    """Thin wrapper around :class:`sqlite3.Connection` that serialises access
    with a :class:`threading.Lock`.

    All public methods that touch the underlying connection acquire the lock
    first, making it safe to share a single instance between the event loop
    thread and the worker threads that bridges hand storage calls off to.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def execute(self, sql: str, parameters: Any = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, parameters)

    def executescript(self, sql_script: str) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executescript(sql_script)

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Acquire lock, yield raw connection, commit on success / rollback on error.

        The lock is held for the entire transaction so that multiple
        statements execute without another thread interleaving between them.

        Yields:
            The raw sqlite3.Connection object.

        Raises:
            Any exception raised within the context will trigger a rollback.
        """
        self._lock.acquire()
        try:
            yield self._conn
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


DbConnection = sqlite3.Connection | ThreadSafeConnection

ModelT = TypeVar("ModelT", bound=BaseModel)


def _rows_to(model: type[ModelT], rows: list[sqlite3.Row]) -> list[ModelT]:
    """Convert a list of sqlite3.Row objects to a list of model instances.

    Args:
        model: The Pydantic model class to instantiate
        rows: List of sqlite3.Row objects from database query

    Returns:
        List of model instances
    """
    return [model(**row) for row in rows]


def format_timestamp(when: datetime) -> str:
    """Render *when* in the store's timestamp format, ``2024-01-01T09:00:00.000Z``.

    All times are stored as fixed-width UTC strings so that comparing them as
    text orders them chronologically.
    """
    return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


# Columns added after the first schema revision.  Each statement is applied
# on every boot; "duplicate column name" means it already ran.
COLUMN_MIGRATIONS = [
    "ALTER TABLE messages ADD COLUMN sender_name TEXT",
    "ALTER TABLE messages ADD COLUMN media_type TEXT",
    "ALTER TABLE messages ADD COLUMN media_data TEXT",
    "ALTER TABLE messages ADD COLUMN media_filename TEXT",
    "ALTER TABLE scheduled_tasks ADD COLUMN context_mode TEXT DEFAULT 'isolated'",
]


def apply_migration(db: DbConnection, sql: str) -> bool:
    """Run one DDL script, tolerating an already-applied column addition.

    Returns ``True`` when the statement changed the schema, ``False`` when
    it was skipped because the column already exists.  Any other error is
    raised.
    """
    try:
        db.executescript(sql)
    except sqlite3.OperationalError as exc:
        if "duplicate column name" not in str(exc):
            raise
        return False
    return True


def migrate(db: DbConnection) -> None:
    db.executescript(
        dedent("""\
        CREATE TABLE IF NOT EXISTS chats (
            jid TEXT PRIMARY KEY,
            name TEXT,
            last_message_time TEXT
        );

        CREATE TABLE IF NOT EXISTS messages (
            id TEXT,
            chat_jid TEXT,
            sender TEXT,
            sender_name TEXT,
            content TEXT,
            timestamp TEXT,
            is_from_me INTEGER,
            media_type TEXT,
            media_data TEXT,
            media_filename TEXT,
            PRIMARY KEY (id, chat_jid),
            FOREIGN KEY (chat_jid) REFERENCES chats(jid)
        );

        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id TEXT PRIMARY KEY,
            group_folder TEXT NOT NULL,
            chat_jid TEXT NOT NULL,
            prompt TEXT NOT NULL,
            schedule_type TEXT NOT NULL,
            schedule_value TEXT NOT NULL,
            context_mode TEXT DEFAULT 'isolated',
            next_run TEXT,
            last_run TEXT,
            last_result TEXT,
            status TEXT DEFAULT 'active',
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS task_run_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            status TEXT NOT NULL,
            result TEXT,
            error TEXT,
            FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id)
        );

        CREATE INDEX IF NOT EXISTS idx_timestamp ON messages(timestamp);
        CREATE INDEX IF NOT EXISTS idx_next_run ON scheduled_tasks(next_run);
        CREATE INDEX IF NOT EXISTS idx_status ON scheduled_tasks(status);
        CREATE INDEX IF NOT EXISTS idx_task_run_logs ON task_run_logs(task_id, run_at);
    """)
    )

    for sql in COLUMN_MIGRATIONS:
        if apply_migration(db, sql):
            log.info("Applied schema migration: %s", sql)

    db.commit()


def init_db(db_path: Path) -> ThreadSafeConnection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    raw = sqlite3.connect(str(db_path), check_same_thread=False)
    raw.row_factory = sqlite3.Row
    db = ThreadSafeConnection(raw)
    migrate(db)
    return db


# Chat directory


def store_chat_metadata(
    db: DbConnection, chat_jid: str, timestamp: str, name: str | None = None
) -> None:
    """Record that *chat_jid* was seen at *timestamp*.

    Used for every chat, retained or not, so chats can be discovered without
    storing message content.  Without *name* an existing display name is kept;
    the last activity time never moves backwards.
    """
    if name:
        db.execute(
            dedent("""\
            INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
            ON CONFLICT(jid) DO UPDATE SET
                name = excluded.name,
                last_message_time = MAX(
                    COALESCE(last_message_time, ''), excluded.last_message_time
                )
        """),
            (chat_jid, name, timestamp),
        )
    else:
        db.execute(
            dedent("""\
            INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
            ON CONFLICT(jid) DO UPDATE SET
                last_message_time = MAX(
                    COALESCE(last_message_time, ''), excluded.last_message_time
                )
        """),
            (chat_jid, chat_jid, timestamp),
        )
    db.commit()


def update_chat_name(db: DbConnection, chat_jid: str, name: str) -> None:
    """Set the display name learned from a group metadata sync."""
    db.execute(
        dedent("""\
        INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
        ON CONFLICT(jid) DO UPDATE SET
            name = excluded.name,
            last_message_time = MAX(
                COALESCE(last_message_time, ''), excluded.last_message_time
            )
    """),
        (chat_jid, name, _now()),
    )
    db.commit()


def get_all_chats(db: DbConnection) -> list[Chat]:
    rows = db.execute(
        dedent("""\
        SELECT jid, name, last_message_time FROM chats
        WHERE jid != ?
        ORDER BY last_message_time DESC
    """),
        (GROUP_SYNC_JID,),
    ).fetchall()
    return _rows_to(Chat, rows)


def get_last_group_sync(db: DbConnection) -> str | None:
    row = db.execute(
        "SELECT last_message_time FROM chats WHERE jid = ?", (GROUP_SYNC_JID,)
    ).fetchone()
    return row["last_message_time"] if row else None


def set_last_group_sync(db: DbConnection) -> None:
    db.execute(
        "INSERT OR REPLACE INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)",
        (GROUP_SYNC_JID, GROUP_SYNC_JID, _now()),
    )
    db.commit()


# Message ledger


def _body_field(kind: str, field: str) -> Callable[[Mapping[str, Any]], Any]:
    def extract(body: Mapping[str, Any]) -> Any:
        return (body.get(kind) or {}).get(field)

    return extract


# Tried in order; the first non-empty value is the message text.
CONTENT_EXTRACTORS: tuple[Callable[[Mapping[str, Any]], Any], ...] = (
    lambda body: body.get("conversation"),
    _body_field("extendedTextMessage", "text"),
    _body_field("imageMessage", "caption"),
    _body_field("videoMessage", "caption"),
    _body_field("documentMessage", "caption"),
)


def extract_content(body: Mapping[str, Any] | None) -> str:
    if not body:
        return ""
    for extractor in CONTENT_EXTRACTORS:
        text = extractor(body)
        if text:
            return text
    return ""


def message_timestamp(msg: Mapping[str, Any]) -> str:
    """Convert a WhatsApp ``messageTimestamp`` (epoch seconds) to ISO 8601."""
    seconds = int(msg.get("messageTimestamp") or 0)
    return format_timestamp(datetime.fromtimestamp(seconds, timezone.utc))


def store_message(
    db: DbConnection,
    msg: Mapping[str, Any],
    chat_jid: str,
    is_from_me: bool,
    push_name: str | None = None,
    media_type: str | None = None,
    media_data: str | None = None,
    media_filename: str | None = None,
) -> None:
    """Store a WhatsApp web message with full content.

    Only call this for chats whose history is retained.  A redelivered
    message replaces the earlier row for the same ``(id, chat_jid)``.
    """
    key = msg.get("key")
    if not key:
        return

    content = extract_content(msg.get("message"))
    timestamp = message_timestamp(msg)
    sender = key.get("participant") or key.get("remoteJid") or ""
    sender_name = push_name or sender.split("@")[0]

    db.execute(
        dedent("""\
        INSERT OR REPLACE INTO messages
            (id, chat_jid, sender, sender_name, content, timestamp, is_from_me,
             media_type, media_data, media_filename)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        (
            key.get("id") or "",
            chat_jid,
            sender,
            sender_name,
            content,
            timestamp,
            int(is_from_me),
            media_type,
            media_data,
            media_filename,
        ),
    )
    db.commit()


def store_telegram_message(
    db: DbConnection,
    *,
    message_id: int,
    chat_id: int,
    user_id: int,
    username: str | None,
    content: str,
    timestamp: datetime,
    is_from_bot: bool,
    media_type: str | None = None,
    media_data: str | None = None,
) -> None:
    db.execute(
        dedent("""\
        INSERT OR REPLACE INTO messages
            (id, chat_jid, sender, sender_name, content, timestamp, is_from_me,
             media_type, media_data)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        (
            f"tg_{message_id}",
            f"{TELEGRAM_JID_PREFIX}{chat_id}",
            f"{TELEGRAM_JID_PREFIX}{user_id}",
            username or str(user_id),
            content,
            format_timestamp(timestamp),
            int(is_from_bot),
            media_type,
            media_data,
        ),
    )
    db.commit()


_MESSAGE_COLUMNS = (
    "id, chat_jid, sender, sender_name, content, timestamp, "
    "media_type, media_data, media_filename"
)

# Bot replies go out through the same account the user types from, so
# is_from_me can't tell them apart.  The "<prefix>:" marker the bot writes
# into its own messages can.
_NOT_OWN_MESSAGE = "substr(content, 1, length(?)) != ?"


def get_new_messages(
    db: DbConnection, jids: Collection[str], last_timestamp: str, bot_prefix: str
) -> tuple[list[NewMessage], str]:
    """Return messages newer than *last_timestamp* across *jids* and the new cursor."""
    if not jids:
        return [], last_timestamp

    marker = f"{bot_prefix}:"
    placeholders = ", ".join("?" for _ in jids)
    rows = db.execute(
        dedent(f"""\
        SELECT {_MESSAGE_COLUMNS}
        FROM messages
        WHERE timestamp > ? AND chat_jid IN ({placeholders}) AND {_NOT_OWN_MESSAGE}
        ORDER BY timestamp
    """),
        (last_timestamp, *jids, marker, marker),
    ).fetchall()
    messages = _rows_to(NewMessage, rows)

    new_timestamp = last_timestamp
    for message in messages:
        if message.timestamp > new_timestamp:
            new_timestamp = message.timestamp
    return messages, new_timestamp


def get_messages_since(
    db: DbConnection, chat_jid: str, since_timestamp: str, bot_prefix: str
) -> list[NewMessage]:
    marker = f"{bot_prefix}:"
    rows = db.execute(
        dedent(f"""\
        SELECT {_MESSAGE_COLUMNS}
        FROM messages
        WHERE chat_jid = ? AND timestamp > ? AND {_NOT_OWN_MESSAGE}
        ORDER BY timestamp
    """),
        (chat_jid, since_timestamp, marker, marker),
    ).fetchall()
    return _rows_to(NewMessage, rows)


# Scheduled tasks


def create_task(
    db: DbConnection,
    *,
    task_id: str,
    group_folder: str,
    chat_jid: str,
    prompt: str,
    schedule_type: str,
    schedule_value: str,
    next_run: str | None,
    context_mode: str = "isolated",
    status: str = "active",
) -> None:
    db.execute(
        dedent("""\
        INSERT INTO scheduled_tasks
            (id, group_folder, chat_jid, prompt, schedule_type, schedule_value,
             context_mode, next_run, status, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        (
            task_id,
            group_folder,
            chat_jid,
            prompt,
            schedule_type,
            schedule_value,
            context_mode,
            next_run,
            status,
            _now(),
        ),
    )
    db.commit()


def get_task(db: DbConnection, task_id: str) -> ScheduledTask | None:
    row = db.execute(
        "SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)
    ).fetchone()
    return ScheduledTask(**row) if row else None


def get_tasks_for_group(db: DbConnection, group_folder: str) -> list[ScheduledTask]:
    rows = db.execute(
        "SELECT * FROM scheduled_tasks WHERE group_folder = ? ORDER BY created_at DESC",
        (group_folder,),
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def get_all_tasks(db: DbConnection) -> list[ScheduledTask]:
    rows = db.execute(
        "SELECT * FROM scheduled_tasks ORDER BY created_at DESC"
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def update_task(db: DbConnection, task_id: str, **updates: object) -> None:
    fields = []
    values = []

    for key in ["prompt", "schedule_type", "schedule_value", "next_run", "status"]:
        if key in updates:
            fields.append(f"{key} = ?")
            values.append(updates[key])

    if not fields:
        return

    values.append(task_id)
    db.execute(f"UPDATE scheduled_tasks SET {', '.join(fields)} WHERE id = ?", values)
    db.commit()


def delete_task(db: DbConnection, task_id: str) -> None:
    # Run logs go first; there is no ON DELETE CASCADE.
    if isinstance(db, ThreadSafeConnection):
        with db.transaction() as conn:
            conn.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
            conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
    else:
        db.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
        db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        db.commit()


def get_due_tasks(db: DbConnection) -> list[ScheduledTask]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM scheduled_tasks
        WHERE status = 'active' AND next_run IS NOT NULL AND next_run <= ?
        ORDER BY next_run
    """),
        (_now(),),
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def update_task_after_run(
    db: DbConnection, task_id: str, next_run: str | None, last_result: str
) -> None:
    db.execute(
        dedent("""\
        UPDATE scheduled_tasks
        SET next_run = ?, last_run = ?, last_result = ?,
            status = CASE WHEN ? IS NULL THEN 'completed' ELSE status END
        WHERE id = ?
    """),
        (next_run, _now(), last_result, next_run, task_id),
    )
    db.commit()


def log_task_run(
    db: DbConnection,
    *,
    task_id: str,
    run_at: str,
    duration_ms: int,
    status: str,
    result: str | None = None,
    error: str | None = None,
) -> None:
    db.execute(
        dedent("""\
        INSERT INTO task_run_logs (task_id, run_at, duration_ms, status, result, error)
        VALUES (?, ?, ?, ?, ?, ?)
    """),
        (task_id, run_at, duration_ms, status, result, error),
    )
    db.commit()


def get_task_run_logs(
    db: DbConnection, task_id: str, limit: int = 10
) -> list[TaskRunLog]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM task_run_logs
        WHERE task_id = ?
        ORDER BY run_at DESC
        LIMIT ?
    """),
        (task_id, limit),
    ).fetchall()
    return _rows_to(TaskRunLog, rows)
