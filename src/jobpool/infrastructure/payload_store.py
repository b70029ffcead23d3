"""Stores used to hand job payloads to worker processes.

The pool never sends payload bytes over a worker's stdin. It writes a
`PayloadRecord` into a store and sends the record's key instead; the worker
fetches the record by key. The pool only ever writes and removes entries.

Two implementations are provided:

- `InMemoryPayloadStore` for tests and for embedding applications that
  provide their own transport.
- `SqlitePayloadStore`, a table in a SQLite database that worker processes
  can open by path.
"""

import hashlib
import logging
import pickle
import sqlite3
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from attrs import field, frozen

if TYPE_CHECKING:
    from jobpool.infrastructure.config import PayloadStoreConfig

logger = logging.getLogger(__name__)


@frozen
class PayloadRecord:
    """A job payload together with a unique identifier."""

    payload: bytes
    id: str = field(factory=lambda: str(uuid.uuid4()))

    def key(self) -> str:
        """Store key derived from the record's content."""
        digest = hashlib.sha1()
        digest.update(self.id.encode("utf-8"))
        digest.update(self.payload)
        return digest.hexdigest()


class PayloadStore(Protocol):
    def set(self, key: str, record: PayloadRecord) -> None: ...

    def remove(self, key: str) -> None: ...


class InMemoryPayloadStore:
    """Dictionary-backed payload store."""

    def __init__(self) -> None:
        self.records: dict[str, PayloadRecord] = {}

    def set(self, key: str, record: PayloadRecord) -> None:
        self.records[key] = record

    def remove(self, key: str) -> None:
        self.records.pop(key, None)

    def get(self, key: str) -> PayloadRecord | None:
        return self.records.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self.records

    def __len__(self) -> int:
        return len(self.records)


class SqlitePayloadStore:
    """Payload store in a SQLite database.

    Records are pickled into a BLOB column. The store can be used as a context
    manager; otherwise the connection is opened on first use.

    Usage:
        with SqlitePayloadStore(db_path) as store:
            store.set(record.key(), record)
            ...
            store.remove(record.key())
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.conn: sqlite3.Connection | None = None

    def __enter__(self) -> "SqlitePayloadStore":
        self._connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _connect(self) -> sqlite3.Connection:
        if self.conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            # Workers read from the same database while the pool writes
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")
            self.conn.execute("PRAGMA busy_timeout=30000")
            self._init_table()
            logger.debug(f"Opened payload store: {self.db_path}")
        return self.conn

    def _init_table(self) -> None:
        assert self.conn is not None, "Connection not initialized"
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS payloads (
                key TEXT PRIMARY KEY,
                record BLOB NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        self.conn.commit()

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def set(self, key: str, record: PayloadRecord) -> None:
        conn = self._connect()
        conn.execute(
            "INSERT OR REPLACE INTO payloads (key, record) VALUES (?, ?)",
            (key, pickle.dumps(record)),
        )
        conn.commit()

    def remove(self, key: str) -> None:
        conn = self._connect()
        conn.execute("DELETE FROM payloads WHERE key = ?", (key,))
        conn.commit()

    def get(self, key: str) -> PayloadRecord | None:
        """Fetch a record; used by worker processes."""
        conn = self._connect()
        row = conn.execute("SELECT record FROM payloads WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return pickle.loads(row[0])

    def keys(self) -> list[str]:
        conn = self._connect()
        return [row[0] for row in conn.execute("SELECT key FROM payloads ORDER BY created_at")]


def create_payload_store(config: "PayloadStoreConfig") -> PayloadStore:
    """Build the payload store selected by the configuration."""
    if config.backend == "memory":
        return InMemoryPayloadStore()
    if config.backend == "sqlite":
        return SqlitePayloadStore(config.db_path)
    raise ValueError(f"Unknown payload store backend: {config.backend}")
