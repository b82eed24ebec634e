"""
datavault.py
-------------------
Persistent SQLite datastore for the chat server.

Tables:
  users(id, username, salt, iterations, password_hash, public_key_pem, created_at)
  devices(id, user_id, device_id, public_key_pem, created_at, last_seen_at)
  conversations(id, title, created_at)
  conversation_members(conversation_id, user_id, added_at)
  messages(id, conversation_id, sender_id, device_id, body, body_hash, signature,
           client_timestamp, client_ts_ms, nonce, created_at)

messages.body_hash and messages.nonce are each UNIQUE. A violation on insert
is reported as ReplayError: it is the final word on duplicates, whatever the
pre-check said.

Run as a script for demo administration (--init, --add-user, --dump, ...).
"""

import argparse
import asyncio
import hmac
import json
import logging
import os
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from errors import InternalError, ReplayError

log = logging.getLogger("chat.vault")

DB_PATH = "chat_vault.sqlite"
PBKDF2_ITERATIONS = 150_000

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    salt BLOB NOT NULL,
    iterations INTEGER NOT NULL,
    password_hash BLOB NOT NULL,
    public_key_pem TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS devices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    device_id TEXT NOT NULL,
    public_key_pem TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    last_seen_at INTEGER,
    UNIQUE (user_id, device_id)
);

CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS conversation_members (
    conversation_id INTEGER NOT NULL REFERENCES conversations(id),
    user_id INTEGER NOT NULL REFERENCES users(id),
    added_at INTEGER NOT NULL,
    PRIMARY KEY (conversation_id, user_id)
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL REFERENCES conversations(id),
    sender_id INTEGER NOT NULL REFERENCES users(id),
    device_id TEXT,
    body TEXT NOT NULL,
    body_hash BLOB NOT NULL,
    signature BLOB NOT NULL,
    client_timestamp TEXT NOT NULL,
    client_ts_ms INTEGER NOT NULL,
    nonce BLOB NOT NULL,
    created_at INTEGER NOT NULL,
    CONSTRAINT uq_messages_body_hash UNIQUE (body_hash),
    CONSTRAINT uq_messages_nonce UNIQUE (nonce)
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id, id);
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


def hash_password(password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return kdf.derive(password.encode("utf-8"))


@dataclass
class MessageRecord:
    conversation_id: int
    sender_id: int
    body: str
    body_hash: bytes
    signature: bytes
    client_timestamp: str
    client_ts_ms: int
    nonce: bytes
    device_id: Optional[str] = None


class DataVault:
    def __init__(self, db_path: str = DB_PATH, clock: Callable[[], int] = _now_ms):
        self.db_path = db_path
        self.clock = clock
        self._lock = asyncio.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    # ---------------------------------------------------------------------
    # Initialization
    # ---------------------------------------------------------------------
    def init_db(self) -> None:
        """Create tables if not already present."""
        with closing(self._connect()) as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    # ---------------------------------------------------------------------
    # Users
    # ---------------------------------------------------------------------
    async def register_user(self, username: str, password: str,
                            public_key_pem: Optional[str] = None) -> int:
        """Insert a user; ValueError if the username is taken."""
        salt = os.urandom(16)
        # PBKDF2 runs off the event loop
        pwd_hash = await asyncio.get_event_loop().run_in_executor(None, hash_password, password, salt)
        async with self._lock:
            try:
                with closing(self._connect()) as conn, conn:
                    cur = conn.execute(
                        """
                        INSERT INTO users
                        (username, salt, iterations, password_hash, public_key_pem, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (username, salt, PBKDF2_ITERATIONS, pwd_hash, public_key_pem, self.clock()),
                    )
                    return cur.lastrowid
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Username '{username}' already exists") from e

    async def set_user_public_key(self, user_id: int, public_key_pem: str) -> None:
        async with self._lock:
            with closing(self._connect()) as conn, conn:
                conn.execute("UPDATE users SET public_key_pem=? WHERE id=?", (public_key_pem, user_id))

    async def verify_user_password(self, username: str, password: str) -> Optional[Dict[str, Any]]:
        """Return {id, username} on a correct password, else None."""
        async with self._lock:
            with closing(self._connect()) as conn:
                row = conn.execute(
                    "SELECT id, username, salt, iterations, password_hash FROM users WHERE username=?",
                    (username,),
                ).fetchone()
        if not row:
            return None
        uid, uname, salt, iterations, stored = row
        candidate = await asyncio.get_event_loop().run_in_executor(None, hash_password, password, salt, iterations)
        if not hmac.compare_digest(candidate, stored):
            return None
        return {"id": uid, "username": uname}

    async def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            with closing(self._connect()) as conn:
                row = conn.execute("SELECT id, username FROM users WHERE username=?", (username,)).fetchone()
        return {"id": row[0], "username": row[1]} if row else None

    async def get_user_public_key(self, user_id: int) -> Optional[str]:
        async with self._lock:
            with closing(self._connect()) as conn:
                row = conn.execute("SELECT public_key_pem FROM users WHERE id=?", (user_id,)).fetchone()
        return row[0] if row and row[0] else None

    async def list_users(self) -> Dict[int, str]:
        """Return {user_id: username} for all users."""
        async with self._lock:
            with closing(self._connect()) as conn:
                return dict(conn.execute("SELECT id, username FROM users ORDER BY id").fetchall())

    # ---------------------------------------------------------------------
    # Devices
    # ---------------------------------------------------------------------
    async def enroll_device(self, user_id: int, device_id: str, public_key_pem: str) -> None:
        """Create the (user, device) key, or replace it on re-enrollment."""
        now = self.clock()
        async with self._lock:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    """
                    INSERT INTO devices (user_id, device_id, public_key_pem, created_at, last_seen_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, device_id)
                    DO UPDATE SET public_key_pem=excluded.public_key_pem,
                                  last_seen_at=excluded.last_seen_at
                    """,
                    (user_id, device_id, public_key_pem, now, now),
                )

    async def get_device_public_key(self, user_id: int, device_id: str) -> Optional[str]:
        async with self._lock:
            with closing(self._connect()) as conn:
                row = conn.execute(
                    "SELECT public_key_pem FROM devices WHERE user_id=? AND device_id=?",
                    (user_id, device_id),
                ).fetchone()
        return row[0] if row else None

    async def touch_device(self, user_id: int, device_id: str) -> None:
        async with self._lock:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    "UPDATE devices SET last_seen_at=? WHERE user_id=? AND device_id=?",
                    (self.clock(), user_id, device_id),
                )

    async def list_devices(self, user_id: int) -> List[Dict[str, Any]]:
        async with self._lock:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    "SELECT device_id, created_at, last_seen_at FROM devices WHERE user_id=? ORDER BY id",
                    (user_id,),
                ).fetchall()
        return [{"deviceId": d, "createdAt": c, "lastSeenAt": s} for d, c, s in rows]

    # ---------------------------------------------------------------------
    # Conversations / membership
    # ---------------------------------------------------------------------
    async def create_conversation(self, title: Optional[str],
                                  member_ids: Iterable[int]) -> Tuple[Dict[str, Any], List[int]]:
        """
        Create a conversation and add every existing user among member_ids.
        Unknown ids are skipped. Returns (conversation, added member ids).
        """
        now = self.clock()
        wanted = list(dict.fromkeys(int(m) for m in member_ids))
        async with self._lock:
            with closing(self._connect()) as conn, conn:
                cur = conn.execute(
                    "INSERT INTO conversations (title, created_at) VALUES (?, ?)", (title, now)
                )
                conv_id = cur.lastrowid
                added = []
                for uid in wanted:
                    if not conn.execute("SELECT 1 FROM users WHERE id=?", (uid,)).fetchone():
                        continue
                    conn.execute(
                        "INSERT OR IGNORE INTO conversation_members (conversation_id, user_id, added_at)"
                        " VALUES (?, ?, ?)",
                        (conv_id, uid, now),
                    )
                    added.append(uid)
        return {"id": conv_id, "title": title, "createdAt": now}, added

    async def add_member(self, conversation_id: int,
                         user_id: int) -> Tuple[Optional[Dict[str, Any]], bool]:
        """
        Add an existing user to an existing conversation.
        Returns (conversation, newly added); (None, False) if either is unknown.
        """
        async with self._lock:
            with closing(self._connect()) as conn, conn:
                conv = conn.execute(
                    "SELECT id, title, created_at FROM conversations WHERE id=?", (conversation_id,)
                ).fetchone()
                if conv is None or not conn.execute("SELECT 1 FROM users WHERE id=?", (user_id,)).fetchone():
                    return None, False
                cur = conn.execute(
                    "INSERT OR IGNORE INTO conversation_members (conversation_id, user_id, added_at)"
                    " VALUES (?, ?, ?)",
                    (conversation_id, user_id, self.clock()),
                )
                return {"id": conv[0], "title": conv[1], "createdAt": conv[2]}, cur.rowcount == 1

    async def is_member(self, conversation_id: int, user_id: int) -> bool:
        async with self._lock:
            with closing(self._connect()) as conn:
                row = conn.execute(
                    "SELECT 1 FROM conversation_members WHERE conversation_id=? AND user_id=?",
                    (conversation_id, user_id),
                ).fetchone()
        return row is not None

    async def list_conversations(self, user_id: int) -> List[Dict[str, Any]]:
        async with self._lock:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    """
                    SELECT c.id, c.title, c.created_at
                    FROM conversations c
                    JOIN conversation_members m ON m.conversation_id = c.id
                    WHERE m.user_id = ?
                    ORDER BY c.id DESC
                    """,
                    (user_id,),
                ).fetchall()
        return [{"id": i, "title": t, "createdAt": c} for i, t, c in rows]

    # ---------------------------------------------------------------------
    # Messages
    # ---------------------------------------------------------------------
    async def find_existing_by_hash_or_nonce(self, body_hash: bytes, nonce: bytes) -> bool:
        async with self._lock:
            with closing(self._connect()) as conn:
                row = conn.execute(
                    "SELECT 1 FROM messages WHERE body_hash=? OR nonce=? LIMIT 1",
                    (body_hash, nonce),
                ).fetchone()
        return row is not None

    async def persist_message(self, record: MessageRecord) -> Tuple[int, int]:
        """Insert a verified message; returns (id, created_at ms)."""
        created_at = self.clock()
        async with self._lock:
            try:
                with closing(self._connect()) as conn, conn:
                    cur = conn.execute(
                        """
                        INSERT INTO messages
                        (conversation_id, sender_id, device_id, body, body_hash, signature,
                         client_timestamp, client_ts_ms, nonce, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (record.conversation_id, record.sender_id, record.device_id, record.body,
                         record.body_hash, record.signature, record.client_timestamp,
                         record.client_ts_ms, record.nonce, created_at),
                    )
                    return cur.lastrowid, created_at
            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e).upper():
                    raise ReplayError(str(e)) from e
                raise InternalError(f"message insert failed: {e}") from e

    async def list_messages(self, conversation_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent `limit` messages of a conversation, oldest first."""
        async with self._lock:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    """
                    SELECT id, sender_id, body, client_timestamp, nonce, created_at,
                           body_hash, signature
                    FROM messages WHERE conversation_id=?
                    ORDER BY id DESC LIMIT ?
                    """,
                    (conversation_id, limit),
                ).fetchall()
        rows.reverse()
        return [
            {
                "id": mid,
                "senderId": sender,
                "body": body,
                "clientTimestamp": cts,
                "nonce": nonce,
                "createdAt": created,
                "bodyHashHex": bytes(bh).hex(),
                "signature": bytes(sig),
            }
            for mid, sender, body, cts, nonce, created, bh, sig in rows
        ]

    async def count_messages(self) -> int:
        async with self._lock:
            with closing(self._connect()) as conn:
                return conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    # ---------------------------------------------------------------------
    # Debug / Dump
    # ---------------------------------------------------------------------
    def dump_vault(self) -> Dict[str, List[Dict[str, Any]]]:
        """Current DB state as plain dicts (binary columns hex-encoded)."""
        data: Dict[str, List[Dict[str, Any]]] = {
            "users": [], "devices": [], "conversations": [],
            "conversation_members": [], "messages": [],
        }
        with closing(self._connect()) as conn:
            for table in data:
                cur = conn.execute(f"SELECT * FROM {table}")
                cols = [c[0] for c in cur.description]
                for row in cur.fetchall():
                    item = dict(zip(cols, row))
                    for k in ("salt", "password_hash"):
                        item.pop(k, None)
                    for k, v in item.items():
                        if isinstance(v, bytes):
                            item[k] = v.hex()
                    data[table].append(item)
        return data


def main():
    parser = argparse.ArgumentParser(description="Chat vault administration")
    parser.add_argument("--db", default=DB_PATH, help="SQLite file")
    parser.add_argument("--init", action="store_true", help="Create tables")
    parser.add_argument("--add-user", metavar="USERNAME")
    parser.add_argument("--password")
    parser.add_argument("--pubkey-file", help="PEM public key for the account-scoped variant")
    parser.add_argument("--create-conversation", metavar="TITLE")
    parser.add_argument("--members", default="", help="Comma separated user ids")
    parser.add_argument("--dump", action="store_true", help="Print all tables as JSON")
    args = parser.parse_args()

    vault = DataVault(args.db)
    vault.init_db()

    if args.add_user:
        if not args.password:
            parser.error("--add-user needs --password")
        pem = None
        if args.pubkey_file:
            with open(args.pubkey_file, "r") as f:
                pem = f.read()
        uid = asyncio.run(vault.register_user(args.add_user, args.password, pem))
        print(f"[vault] user {args.add_user} -> id {uid}")

    if args.create_conversation:
        ids = [int(x) for x in args.members.split(",") if x.strip()]
        conv, added = asyncio.run(vault.create_conversation(args.create_conversation, ids))
        print(f"[vault] conversation {conv['id']} '{conv['title']}' members={added}")

    if args.dump:
        print(json.dumps(vault.dump_vault(), indent=2))

    if args.init:
        print("[vault] Database initialized successfully.")


if __name__ == "__main__":
    main()
