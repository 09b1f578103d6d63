"""SQLite-backed key/value store for persisted resilience state.

Each persisted record (event log, security events, session credential, focus
samples, insights) is a single JSON document under its own key.  All queries
are parameterized.  The store itself raises on I/O errors; callers decide how
to degrade (the resilience components never let a persistence error escape).
"""

import logging
import sqlite3
import threading
from datetime import UTC, datetime
from typing import TypeVar

from pydantic import TypeAdapter, ValidationError

from src.observability.metrics import PERSISTENCE_ERRORS_TOTAL

logger = logging.getLogger(__name__)

T = TypeVar("T")

EVENT_LOG_KEY = "event_log"
SECURITY_EVENTS_KEY = "security_events"
SESSION_CREDENTIAL_KEY = "session_credential"
FOCUS_SAMPLES_KEY = "focus_samples"
INSIGHTS_KEY = "insights"

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS kv_state (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrent reads.

    Args:
        db_path: Path to the database file, or ":memory:" for an in-memory database.

    Returns:
        A new sqlite3.Connection with row_factory set to sqlite3.Row.
    """
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create the state table if it doesn't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


class StateStore:
    """Thread-safe JSON document store over one long-lived SQLite connection.

    An empty ``db_path`` means an in-memory database: state survives for the
    lifetime of this object only.
    """

    def __init__(self, db_path: str = "") -> None:
        self.db_path = db_path or ":memory:"
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = get_connection(self.db_path)
            init_schema(conn)
            self._conn = conn
            logger.debug("Opened state store at %s", self.db_path)
        return self._conn

    def read(self, key: str) -> str | None:
        """Return the raw JSON document stored under ``key``, or None if absent."""
        with self._lock:
            row = self._connection().execute("SELECT value FROM kv_state WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return row["value"]

    def write(self, key: str, value: str) -> None:
        """Insert or replace the JSON document stored under ``key``."""
        now = datetime.now(UTC).isoformat()
        with self._lock:
            conn = self._connection()
            conn.execute(
                """INSERT INTO kv_state (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
                (key, value, now),
            )
            conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


# ---------------------------------------------------------------------------
# Never-raise helpers used by the resilience components
# ---------------------------------------------------------------------------


def load_state(store: StateStore, key: str, adapter: TypeAdapter[T]) -> T | None:
    """Load and validate the document under ``key``. Never raises.

    Returns None when the key is absent, unreadable or corrupt.  Failures are
    logged and counted in ``resilience_persistence_errors_total``.
    """
    try:
        raw = store.read(key)
    except Exception:
        logger.exception("Failed to read persisted state '%s'", key)
        PERSISTENCE_ERRORS_TOTAL.labels(key=key, operation="read").inc()
        return None
    if raw is None:
        return None
    try:
        return adapter.validate_json(raw)
    except ValidationError:
        logger.warning("Discarding corrupt persisted state '%s'", key)
        PERSISTENCE_ERRORS_TOTAL.labels(key=key, operation="decode").inc()
        return None


def save_state(store: StateStore, key: str, adapter: TypeAdapter[T], value: T) -> bool:
    """Serialize and persist ``value`` under ``key``. Never raises; returns success."""
    try:
        store.write(key, adapter.dump_json(value).decode())
    except Exception:
        logger.exception("Failed to persist state '%s'", key)
        PERSISTENCE_ERRORS_TOTAL.labels(key=key, operation="write").inc()
        return False
    return True
