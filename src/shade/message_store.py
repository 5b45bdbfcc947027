"""
Shade - Message Lifecycle Store.

Persists direct messages and owns their lifecycle:

    create -> (toggle_save <-> ...) -> bulk_delete | nuke | expiry sweep

Unsaved messages expire 48 hours after creation. Saving clears the expiry;
unsaving restores ``createdAt + 48h`` (never a fresh grant). Deletes are
idempotent because the expiry sweep and explicit deletes race on the same
rows.

Thread safety:
- All database operations are protected by a threading.Lock
- Async wrappers run the SQLite work in a worker thread so a connection
  handler never blocks the event loop on another connection's I/O
"""

import asyncio
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from .constants import MESSAGE_TTL_HOURS, MESSAGE_TYPE_TEXT
from .errors import PersistenceFailure
from .message import Message, compute_expire_at
from .utils import format_display_time, utc_now

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Unsaved rows past their expiry are treated as gone until the sweep removes them
_LIVE = "(expire_at IS NULL OR expire_at > ?)"


def _to_micros(dt: datetime) -> int:
    # Integer microseconds keep createdAt + 48h exact across round trips
    return (dt - _EPOCH) // timedelta(microseconds=1)


def _from_micros(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return _EPOCH + timedelta(microseconds=value)


class MessageStore:
    """
    SQLite-backed store for direct messages.

    Thread Safety:
        All database operations are protected by a threading.Lock to prevent
        concurrent access to the shared connection.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        ttl_hours: int = MESSAGE_TTL_HOURS,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize message store.

        Args:
            db_path: Path to SQLite database file (or ":memory:")
            ttl_hours: Lifetime of unsaved messages
            clock: Source of the current UTC time
        """
        self.db_path = str(db_path)
        self.ttl_hours = ttl_hours
        self.clock = clock
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn: Optional[sqlite3.Connection] = None
        self._db_lock = threading.Lock()

        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._db_lock:
            try:
                self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
                self.conn.row_factory = sqlite3.Row
                cursor = self.conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        sender_id TEXT NOT NULL,
                        recipient_id TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        type TEXT NOT NULL DEFAULT 'text',
                        time TEXT NOT NULL,
                        is_saved INTEGER DEFAULT 0,
                        created_at INTEGER NOT NULL,
                        expire_at INTEGER
                    )
                """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_pair ON messages (sender_id, recipient_id)
                """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_expire ON messages (expire_at)
                """
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise PersistenceFailure(f"Cannot open message store: {e}") from e

        logger.info(f"Message store initialized: {self.db_path}")

    def _cursor(self) -> sqlite3.Cursor:
        if self.conn is None:
            raise PersistenceFailure("Message store is closed")
        return self.conn.cursor()

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            sender_id=row["sender_id"],
            recipient_id=row["recipient_id"],
            payload=row["payload"],
            message_type=row["type"],
            time=row["time"],
            message_id=row["id"],
            # Anything other than an explicit 1 counts as unsaved
            is_saved=row["is_saved"] == 1,
            created_at=_from_micros(row["created_at"]),
            expire_at=_from_micros(row["expire_at"]),
        )

    def create(
        self,
        sender_id: str,
        recipient_id: str,
        payload: str,
        message_type: str = MESSAGE_TYPE_TEXT,
        time: Optional[str] = None,
    ) -> Message:
        """
        Persist a new unsaved message.

        Returns:
            The canonical record with its assigned id

        Raises:
            PersistenceFailure: If the database write fails
        """
        created_at = self.clock()
        expire_at = compute_expire_at(created_at, self.ttl_hours)
        display_time = time or format_display_time(created_at)

        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute(
                    """
                    INSERT INTO messages
                    (sender_id, recipient_id, payload, type, time, is_saved, created_at, expire_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                    (
                        sender_id,
                        recipient_id,
                        payload,
                        message_type,
                        display_time,
                        _to_micros(created_at),
                        _to_micros(expire_at),
                    ),
                )
                self.conn.commit()
                message_id = cursor.lastrowid
        except sqlite3.Error as e:
            logger.error(f"Failed to persist message: {e}", exc_info=True)
            raise PersistenceFailure(f"Cannot persist message: {e}") from e

        logger.debug(f"Stored message {message_id} {sender_id} -> {recipient_id}")

        return Message(
            sender_id=sender_id,
            recipient_id=recipient_id,
            payload=payload,
            message_type=message_type,
            time=display_time,
            message_id=message_id,
            is_saved=False,
            created_at=created_at,
            expire_at=expire_at,
        )

    def get(self, message_id: int) -> Optional[Message]:
        """Fetch one live message by id, or None if it is gone or expired."""
        now = _to_micros(self.clock())
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute(
                    f"SELECT * FROM messages WHERE id = ? AND {_LIVE}", (message_id, now)
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read message: {e}") from e

        return self._row_to_message(row) if row else None

    def get_many(self, message_ids: Iterable[int]) -> List[Message]:
        """Fetch the live messages among the given ids."""
        ids = list(message_ids)
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        now = _to_micros(self.clock())
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute(
                    f"SELECT * FROM messages WHERE id IN ({placeholders}) AND {_LIVE} "
                    "ORDER BY id ASC",
                    [*ids, now],
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read messages: {e}") from e

        return [self._row_to_message(row) for row in rows]

    def get_messages_for(self, identity: str) -> List[Message]:
        """
        History for one identity: every live message it sent or received,
        oldest first. Expired rows the sweep has not reached yet are skipped.
        """
        now = _to_micros(self.clock())
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute(
                    f"""
                    SELECT * FROM messages
                    WHERE (sender_id = ? OR recipient_id = ?)
                    AND {_LIVE}
                    ORDER BY id ASC
                """,
                    (identity, identity, now),
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read history: {e}") from e

        return [self._row_to_message(row) for row in rows]

    def get_conversation(self, identity_a: str, identity_b: str) -> List[Message]:
        """All stored messages between two identities, oldest first."""
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute(
                    """
                    SELECT * FROM messages
                    WHERE (sender_id = ? AND recipient_id = ?)
                    OR (sender_id = ? AND recipient_id = ?)
                    ORDER BY id ASC
                """,
                    (identity_a, identity_b, identity_b, identity_a),
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read conversation: {e}") from e

        return [self._row_to_message(row) for row in rows]

    def toggle_save(self, message_id: int) -> Optional[Message]:
        """
        Flip the saved flag of a message.

        Saving clears expireAt. Unsaving restores createdAt + TTL, so a
        message never earns a fresh lifetime by being toggled.

        Returns:
            The updated record, or None if the message is gone or expired
        """
        now = _to_micros(self.clock())
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute(
                    f"SELECT * FROM messages WHERE id = ? AND {_LIVE}", (message_id, now)
                )
                row = cursor.fetchone()
                if row is None:
                    return None

                message = self._row_to_message(row)
                message.is_saved = not message.is_saved
                if message.is_saved:
                    message.expire_at = None
                else:
                    message.expire_at = compute_expire_at(message.created_at, self.ttl_hours)

                cursor.execute(
                    "UPDATE messages SET is_saved = ?, expire_at = ? WHERE id = ?",
                    (
                        1 if message.is_saved else 0,
                        _to_micros(message.expire_at) if message.expire_at else None,
                        message_id,
                    ),
                )
                self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot toggle save: {e}") from e

        logger.debug(f"Message {message_id} saved={message.is_saved}")
        return message

    def bulk_delete(self, message_ids: Iterable[int]) -> int:
        """
        Permanently delete the given ids regardless of save state.

        Ids that are already gone are ignored.

        Returns:
            Number of rows actually removed
        """
        ids = list(message_ids)
        if not ids:
            return 0

        placeholders = ", ".join("?" for _ in ids)
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute(f"DELETE FROM messages WHERE id IN ({placeholders})", ids)
                removed = cursor.rowcount
                self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot delete messages: {e}") from e

        logger.info(f"Bulk delete removed {removed} of {len(ids)} messages")
        return removed

    def nuke(self, identity_a: str, identity_b: str) -> int:
        """
        Delete every unsaved message between two identities.

        Rows whose saved flag is anything but an explicit 1 (including NULL)
        are purged. Saved messages are left untouched.

        Returns:
            Number of rows removed
        """
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute(
                    """
                    DELETE FROM messages
                    WHERE ((sender_id = ? AND recipient_id = ?)
                        OR (sender_id = ? AND recipient_id = ?))
                    AND is_saved IS NOT 1
                """,
                    (identity_a, identity_b, identity_b, identity_a),
                )
                removed = cursor.rowcount
                self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot nuke conversation: {e}") from e

        logger.info(f"Nuked {removed} messages between {identity_a} and {identity_b}")
        return removed

    def cleanup_expired(self) -> int:
        """
        Remove messages whose expireAt has elapsed.

        Returns:
            Number of messages removed
        """
        now = _to_micros(self.clock())
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute(
                    "DELETE FROM messages WHERE expire_at IS NOT NULL AND expire_at <= ?", (now,)
                )
                removed = cursor.rowcount
                self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot sweep expired messages: {e}") from e

        if removed > 0:
            logger.info(f"Expiry sweep removed {removed} messages")
        return removed

    def count(self) -> int:
        """Total number of stored messages."""
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute("SELECT COUNT(*) FROM messages")
                return cursor.fetchone()[0]
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot count messages: {e}") from e

    def close(self) -> None:
        """Close database connection."""
        with self._db_lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.debug("Message store database closed")

    def __enter__(self) -> "MessageStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    # Async wrappers for use in the relay server

    async def create_async(
        self,
        sender_id: str,
        recipient_id: str,
        payload: str,
        message_type: str = MESSAGE_TYPE_TEXT,
        time: Optional[str] = None,
    ) -> Message:
        return await asyncio.to_thread(
            self.create, sender_id, recipient_id, payload, message_type, time
        )

    async def get_async(self, message_id: int) -> Optional[Message]:
        return await asyncio.to_thread(self.get, message_id)

    async def get_many_async(self, message_ids: Iterable[int]) -> List[Message]:
        return await asyncio.to_thread(self.get_many, list(message_ids))

    async def get_messages_for_async(self, identity: str) -> List[Message]:
        return await asyncio.to_thread(self.get_messages_for, identity)

    async def toggle_save_async(self, message_id: int) -> Optional[Message]:
        return await asyncio.to_thread(self.toggle_save, message_id)

    async def bulk_delete_async(self, message_ids: Iterable[int]) -> int:
        return await asyncio.to_thread(self.bulk_delete, list(message_ids))

    async def nuke_async(self, identity_a: str, identity_b: str) -> int:
        return await asyncio.to_thread(self.nuke, identity_a, identity_b)

    async def cleanup_expired_async(self) -> int:
        return await asyncio.to_thread(self.cleanup_expired)
