"""
SQLite Storage Base — thread-safe connection handling shared by the stores.

Every store (ledger, learning, memory, heartbeat tasks, autonomy settings)
subclasses SQLiteStore and declares its schema. Stores may share one
database file; each only creates its own tables.

Features:
- Thread-local connections with WAL journaling and a busy timeout
- Lazy schema creation guarded by a lock
- Transaction context manager that rolls back and re-raises on error
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_DB_FILE = "autonomy.sqlite"


def generate_id() -> str:
    """Generate a short unique identifier."""
    return uuid.uuid4().hex[:16]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dump_json(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


def load_json(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    return json.loads(value)


def pack_vector(vector: Optional[np.ndarray]) -> Optional[bytes]:
    """Serialize an embedding as float32 bytes for a BLOB column."""
    if vector is None:
        return None
    return np.asarray(vector, dtype=np.float32).tobytes()


def unpack_vector(blob: Optional[bytes]) -> Optional[np.ndarray]:
    if not blob:
        return None
    return np.frombuffer(blob, dtype=np.float32)


class SQLiteStore:
    """Base class for SQLite-backed stores.

    Subclasses set SCHEMA to a script of CREATE statements.
    """

    SCHEMA = ""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=30000")
            self._local.connection = conn
        return conn

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        with self._init_lock:
            if self._initialized:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect()
            conn.executescript(self.SCHEMA)
            conn.commit()
            self._initialized = True
            logger.debug("%s initialized at %s", type(self).__name__, self.db_path)

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        if not self._initialized:
            self.initialize()
        yield self._connect()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction; commits on success, rolls back on error."""
        if not self._initialized:
            self.initialize()
        conn = self._connect()
        with self._write_lock:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def close(self) -> None:
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None
