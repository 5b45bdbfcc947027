"""
Shade - Account store.

Identities, passwords, friend codes, contact lists and public keys.

Passwords are hashed with Argon2id. A user may escrow their private key,
sealed under the account password, so another device can recover it at
login. Escrow weakens confidentiality (the sealed blob can be attacked
offline) and is flagged in the register response so front-ends can warn.

Thread safety:
- All database operations are protected by a threading.Lock
"""

import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    MIN_PASSWORD_LENGTH,
)
from .crypto import load_public_key
from .errors import AccountError, ErrorCode, PersistenceFailure
from .utils import generate_friend_code, normalize_friend_code, utc_now, validate_username

logger = logging.getLogger(__name__)

_FRIEND_CODE_ATTEMPTS = 10


class AccountStore:
    """
    SQLite-backed account store.

    Thread Safety:
        All database operations are protected by a threading.Lock.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        password_hasher: Optional[PasswordHasher] = None,
    ):
        """
        Initialize account store.

        Args:
            db_path: Path to SQLite database file (or ":memory:")
            password_hasher: Argon2 hasher, defaults to Argon2id with the
                application's cost parameters
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.hasher = password_hasher or PasswordHasher(
            time_cost=ARGON2_TIME_COST,
            memory_cost=ARGON2_MEMORY_COST,
            parallelism=ARGON2_PARALLELISM,
        )
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
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        username TEXT NOT NULL UNIQUE,
                        password_hash TEXT NOT NULL,
                        public_key TEXT NOT NULL,
                        private_key_escrow TEXT,
                        friend_code TEXT NOT NULL UNIQUE,
                        created_at TEXT NOT NULL
                    )
                """
                )
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS contacts (
                        owner_id TEXT NOT NULL,
                        contact_id TEXT NOT NULL,
                        PRIMARY KEY (owner_id, contact_id)
                    )
                """
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise PersistenceFailure(f"Cannot open account store: {e}") from e

        logger.info(f"Account store initialized: {self.db_path}")

    def _cursor(self) -> sqlite3.Cursor:
        if self.conn is None:
            raise PersistenceFailure("Account store is closed")
        return self.conn.cursor()

    def _fetch_user(self, cursor: sqlite3.Cursor, column: str, value: str) -> Optional[sqlite3.Row]:
        cursor.execute(f"SELECT * FROM users WHERE {column} = ?", (value,))
        return cursor.fetchone()

    def _contact_usernames(self, cursor: sqlite3.Cursor, user_id: str) -> List[str]:
        cursor.execute(
            """
            SELECT u.username FROM contacts c JOIN users u ON u.id = c.contact_id
            WHERE c.owner_id = ? ORDER BY u.username
        """,
            (user_id,),
        )
        return [row["username"] for row in cursor.fetchall()]

    @staticmethod
    def _public_profile(row: sqlite3.Row) -> Dict[str, Any]:
        return {"id": row["id"], "username": row["username"], "publicKey": row["public_key"]}

    def register(
        self,
        username: str,
        password: str,
        public_key: Union[Dict[str, Any], str],
        private_key: Optional[Union[Dict[str, Any], str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a new account.

        Args:
            username: Unique username
            password: Account password (hashed with Argon2id)
            public_key: Identity public key as JWK
            private_key: Optional escrow blob (private key sealed under the
                password on the client)

        Returns:
            {id, username, friendCode, escrowed}

        Raises:
            AccountError: If the input is invalid or the username is taken
        """
        if not validate_username(username):
            raise AccountError(
                ErrorCode.E305_INVALID_ACCOUNT,
                "Username must be 3-32 letters, digits, dots, dashes or underscores",
                {"username": username},
            )
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise AccountError(
                ErrorCode.E305_INVALID_ACCOUNT,
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            )

        public_key_json = public_key if isinstance(public_key, str) else json.dumps(public_key)
        try:
            load_public_key(public_key_json)
        except (ValueError, KeyError, TypeError) as e:
            raise AccountError(ErrorCode.E305_INVALID_ACCOUNT, f"Invalid public key: {e}") from e

        escrow_json = None
        if private_key is not None:
            escrow_json = private_key if isinstance(private_key, str) else json.dumps(private_key)
            logger.warning(
                f"Account {username} escrows its private key on the server; "
                "it can be attacked offline if the database leaks"
            )

        user_id = uuid.uuid4().hex
        password_hash = self.hasher.hash(password)

        try:
            with self._db_lock:
                cursor = self._cursor()
                if self._fetch_user(cursor, "username", username):
                    raise AccountError(
                        ErrorCode.E302_ACCOUNT_ALREADY_EXISTS,
                        f"Username already taken: {username}",
                        {"username": username},
                    )

                for _ in range(_FRIEND_CODE_ATTEMPTS):
                    friend_code = generate_friend_code()
                    if not self._fetch_user(cursor, "friend_code", friend_code):
                        break
                else:
                    raise AccountError(
                        ErrorCode.E300_ACCOUNT_ERROR, "Could not allocate a friend code"
                    )

                cursor.execute(
                    """
                    INSERT INTO users
                    (id, username, password_hash, public_key, private_key_escrow,
                     friend_code, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        user_id,
                        username,
                        password_hash,
                        public_key_json,
                        escrow_json,
                        friend_code,
                        utc_now().isoformat(),
                    ),
                )
                self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot create account: {e}") from e

        logger.info(f"Registered account {username} ({user_id})")
        return {
            "id": user_id,
            "username": username,
            "friendCode": friend_code,
            "escrowed": escrow_json is not None,
        }

    def login(self, username: str, password: str) -> Dict[str, Any]:
        """
        Verify credentials.

        Returns:
            {id, username, friendCode, contacts, publicKey} plus privateKey
            when the account escrowed one

        Raises:
            AccountError: E306 for an unknown user or wrong password
        """
        try:
            with self._db_lock:
                cursor = self._cursor()
                row = self._fetch_user(cursor, "username", username)
                if row is None:
                    raise AccountError(
                        ErrorCode.E306_INVALID_CREDENTIALS, "Invalid username or password"
                    )

                try:
                    self.hasher.verify(row["password_hash"], password)
                except (VerifyMismatchError, VerificationError, InvalidHashError) as e:
                    raise AccountError(
                        ErrorCode.E306_INVALID_CREDENTIALS, "Invalid username or password"
                    ) from e

                if self.hasher.check_needs_rehash(row["password_hash"]):
                    cursor.execute(
                        "UPDATE users SET password_hash = ? WHERE id = ?",
                        (self.hasher.hash(password), row["id"]),
                    )
                    self.conn.commit()

                contacts = self._contact_usernames(cursor, row["id"])
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read account: {e}") from e

        result = {
            "id": row["id"],
            "username": row["username"],
            "friendCode": row["friend_code"],
            "contacts": contacts,
            "publicKey": row["public_key"],
        }
        if row["private_key_escrow"] is not None:
            result["privateKey"] = row["private_key_escrow"]

        logger.info(f"Login: {username}")
        return result

    def add_contact(self, self_username: str, friend_code: str) -> Dict[str, Any]:
        """
        Add the owner of a friend code as a contact.

        Adding is mutual (both contact lists gain the other) and idempotent.

        Returns:
            The new contact's {id, username, publicKey}

        Raises:
            AccountError: E401 when no account has the code, E409 when the
                code is the caller's own
        """
        code = normalize_friend_code(friend_code)
        try:
            with self._db_lock:
                cursor = self._cursor()
                me = self._fetch_user(cursor, "username", self_username)
                if me is None:
                    raise AccountError(
                        ErrorCode.E305_INVALID_ACCOUNT, f"Unknown account: {self_username}"
                    )

                other = self._fetch_user(cursor, "friend_code", code)
                if other is None:
                    raise AccountError(
                        ErrorCode.E401_CONTACT_NOT_FOUND,
                        "No user with that friend code",
                        {"friendCode": code},
                    )
                if other["id"] == me["id"]:
                    raise AccountError(ErrorCode.E409_SELF_ADD, "You cannot add yourself")

                cursor.executemany(
                    "INSERT OR IGNORE INTO contacts (owner_id, contact_id) VALUES (?, ?)",
                    [(me["id"], other["id"]), (other["id"], me["id"])],
                )
                self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot add contact: {e}") from e

        logger.info(f"{self_username} and {other['username']} are now contacts")
        return self._public_profile(other)

    def get_contacts(self, username: str) -> List[Dict[str, Any]]:
        """Contacts of a user with their public keys."""
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute(
                    """
                    SELECT u.* FROM contacts c
                    JOIN users u ON u.id = c.contact_id
                    JOIN users me ON me.id = c.owner_id
                    WHERE me.username = ? ORDER BY u.username
                """,
                    (username,),
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read contacts: {e}") from e

        return [self._public_profile(row) for row in rows]

    def list_users(self) -> List[Dict[str, Any]]:
        """All registered users with their public keys."""
        try:
            with self._db_lock:
                cursor = self._cursor()
                cursor.execute("SELECT * FROM users ORDER BY username")
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot list users: {e}") from e

        return [self._public_profile(row) for row in rows]

    def get_public_key(self, user_id: str) -> Optional[str]:
        """Public key JWK (JSON) of a user id, or None."""
        try:
            with self._db_lock:
                row = self._fetch_user(self._cursor(), "id", user_id)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read public key: {e}") from e

        return row["public_key"] if row else None

    def close(self) -> None:
        """Close database connection."""
        with self._db_lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    # Async wrappers; Argon2 hashing is CPU heavy and must stay off the loop

    async def register_async(self, *args: Any, **kwargs: Any) -> Dict[str, Any]:
        return await asyncio.to_thread(self.register, *args, **kwargs)

    async def login_async(self, username: str, password: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.login, username, password)

    async def add_contact_async(self, self_username: str, friend_code: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.add_contact, self_username, friend_code)

    async def get_contacts_async(self, username: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.get_contacts, username)

    async def list_users_async(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.list_users)
