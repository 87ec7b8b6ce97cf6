"""
Chatbot Persistence

Stores conversation records, feedback, saved answers and user
entitlements. Two interchangeable implementations:

- InMemoryStore: process-local, thread-safe; the default when no
  database is configured and the store used by the tests.
- PostgresStore: PostgreSQL via psycopg2 with a threaded connection pool,
  self-initializing schema and one retry on stale connections.

Records cross the store boundary as plain dicts; the conversation layer
owns their meaning.
"""

import os
import copy
import uuid
import logging
import threading
from typing import Optional
from datetime import datetime, timezone
from dataclasses import dataclass

import psycopg2
import psycopg2.extras
import psycopg2.pool

logger = logging.getLogger(__name__)

MAX_SAVED_PAGE_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# In-memory store
# =============================================================================

class InMemoryStore:
    """Thread-safe dict-backed store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._conversations: dict[str, dict] = {}
        self._feedback: list[dict] = []
        self._saved: dict[str, dict] = {}
        self._entitlements: dict[tuple[str, str], Optional[datetime]] = {}

    # ---- conversations ----------------------------------------------------

    def get_conversation(self, token: str) -> Optional[dict]:
        with self._lock:
            record = self._conversations.get(token)
            return copy.deepcopy(record) if record else None

    def insert_conversation(self, record: dict) -> bool:
        """Insert a new conversation. Returns False if the token is taken."""
        with self._lock:
            if record["token"] in self._conversations:
                return False
            self._conversations[record["token"]] = copy.deepcopy(record)
            return True

    def save_conversation(self, record: dict) -> None:
        with self._lock:
            self._conversations[record["token"]] = copy.deepcopy(record)

    def touch_conversation(self, token: str, expires_at: datetime) -> None:
        with self._lock:
            if token in self._conversations:
                self._conversations[token]["expires_at"] = expires_at

    def delete_expired_conversations(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        with self._lock:
            expired = [t for t, r in self._conversations.items() if r["expires_at"] < now]
            for token in expired:
                del self._conversations[token]
            return len(expired)

    # ---- feedback ---------------------------------------------------------

    def add_feedback(self, record: dict) -> str:
        with self._lock:
            stored = dict(record, id=str(uuid.uuid4()), created_at=_utcnow())
            self._feedback.append(stored)
            return stored["id"]

    # ---- saved answers ----------------------------------------------------

    def create_saved_answer(self, owner_id: str, record: dict) -> str:
        with self._lock:
            stored = dict(copy.deepcopy(record), id=str(uuid.uuid4()), owner_id=owner_id, created_at=_utcnow())
            self._saved[stored["id"]] = stored
            return stored["id"]

    def list_saved_answers(
        self,
        owner_id: str,
        category: Optional[str] = None,
        limit: int = 50,
    ) -> list[dict]:
        limit = max(1, min(limit, MAX_SAVED_PAGE_SIZE))
        with self._lock:
            rows = [
                r for r in self._saved.values()
                if r["owner_id"] == owner_id and (not category or r.get("category") == category)
            ]
            # Insertion order is creation order
            rows.reverse()
            return copy.deepcopy(rows[:limit])

    def saved_answer_categories(self, owner_id: str) -> list[str]:
        with self._lock:
            return sorted({
                r["category"] for r in self._saved.values()
                if r["owner_id"] == owner_id and r.get("category")
            })

    def delete_saved_answer(self, owner_id: str, answer_id: str) -> bool:
        with self._lock:
            record = self._saved.get(answer_id)
            if record is None or record["owner_id"] != owner_id:
                return False
            del self._saved[answer_id]
            return True

    # ---- entitlements -----------------------------------------------------

    def grant_entitlement(self, user_id: str, entitlement: str, expires_at: Optional[datetime] = None) -> None:
        with self._lock:
            self._entitlements[(user_id, entitlement)] = expires_at

    def revoke_entitlement(self, user_id: str, entitlement: str) -> None:
        with self._lock:
            self._entitlements.pop((user_id, entitlement), None)

    def has_entitlement(self, user_id: str, entitlement: str) -> bool:
        with self._lock:
            key = (user_id, entitlement)
            if key not in self._entitlements:
                return False
            expires_at = self._entitlements[key]
            return expires_at is None or expires_at > _utcnow()

    def close(self) -> None:
        pass


# =============================================================================
# PostgreSQL store
# =============================================================================

@dataclass
class PostgresStoreConfig:
    """Configuration for the PostgreSQL store."""
    connection_string: Optional[str] = None
    pool_min_connections: int = 1
    pool_max_connections: int = 10


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chatbot_conversations (
    token VARCHAR(64) PRIMARY KEY,
    user_id VARCHAR(64),
    language VARCHAR(2) NOT NULL DEFAULT 'nl',
    messages JSONB NOT NULL DEFAULT '[]'::jsonb,
    context_identifiers JSONB NOT NULL DEFAULT '[]'::jsonb,
    last_question TEXT,
    message_count INT NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chatbot_conversations_expires
    ON chatbot_conversations(expires_at);

CREATE TABLE IF NOT EXISTS chatbot_feedbacks (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    question TEXT NOT NULL,
    answer TEXT NOT NULL,
    feedback_type VARCHAR(16) NOT NULL,
    language VARCHAR(5),
    source VARCHAR(32),
    user_id VARCHAR(64),
    ip_hash VARCHAR(64),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_chatbot_feedbacks_created
    ON chatbot_feedbacks(created_at DESC);

CREATE TABLE IF NOT EXISTS saved_answers (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    owner_id VARCHAR(64) NOT NULL,
    question TEXT NOT NULL,
    answer TEXT NOT NULL,
    sources JSONB,
    language VARCHAR(5) NOT NULL DEFAULT 'nl',
    title TEXT,
    category VARCHAR(100),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_saved_answers_owner_time
    ON saved_answers(owner_id, created_at DESC);

CREATE TABLE IF NOT EXISTS user_entitlements (
    user_id VARCHAR(64) NOT NULL,
    entitlement VARCHAR(32) NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    expires_at TIMESTAMPTZ,
    PRIMARY KEY (user_id, entitlement)
);
"""


class PostgresStore:
    """
    PostgreSQL-backed store.

    Usage:
        store = PostgresStore()
        store.connect()
        store.initialize_schema()
    """

    def __init__(self, config: Optional[PostgresStoreConfig] = None):
        self.config = config or PostgresStoreConfig()
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("DATABASE_URL") or
            os.getenv("POSTGRES_URL") or
            "postgresql://localhost:5432/legal_chatbot"
        )

    def connect(self) -> None:
        """Create the connection pool."""
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=self.config.pool_min_connections,
                maxconn=self.config.pool_max_connections,
                dsn=self._connection_string,
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
            logger.info(
                f"Connection pool initialized (min={self.config.pool_min_connections}, "
                f"max={self.config.pool_max_connections})"
            )
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        if self._pool is None:
            self.connect()
        return self._pool.getconn()

    def _release_connection(self, conn) -> None:
        if self._pool and conn:
            self._pool.putconn(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._get_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._pool.putconn(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")

    def initialize_schema(self) -> None:
        """Create chatbot tables if they do not exist."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")
                cur.execute(SCHEMA_SQL)
                conn.commit()

        self._execute_with_retry(_op, "initialize_schema")
        logger.info("Chatbot schema initialized")

    # =========================================================================
    # Conversations
    # =========================================================================

    @staticmethod
    def _conversation_from_row(row: dict) -> dict:
        return {
            "token": row["token"],
            "user_id": row.get("user_id"),
            "language": row["language"],
            "messages": row.get("messages") or [],
            "context_identifiers": row.get("context_identifiers") or [],
            "last_question": row.get("last_question"),
            "created_at": row["created_at"],
            "expires_at": row["expires_at"],
        }

    def get_conversation(self, token: str) -> Optional[dict]:
        sql = """
        SELECT token, user_id, language, messages, context_identifiers,
               last_question, created_at, expires_at
        FROM chatbot_conversations WHERE token = %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (token,))
                row = cur.fetchone()
            return self._conversation_from_row(row) if row else None

        return self._execute_with_retry(_op, "get_conversation")

    def insert_conversation(self, record: dict) -> bool:
        sql = """
        INSERT INTO chatbot_conversations
            (token, user_id, language, messages, context_identifiers,
             last_question, message_count, created_at, expires_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (token) DO NOTHING
        RETURNING token
        """
        params = (
            record["token"],
            record.get("user_id"),
            record["language"],
            psycopg2.extras.Json(record.get("messages") or []),
            psycopg2.extras.Json(record.get("context_identifiers") or []),
            record.get("last_question"),
            len(record.get("messages") or []),
            record["created_at"],
            record["expires_at"],
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                conn.commit()
            return row is not None

        return self._execute_with_retry(_op, "insert_conversation")

    def save_conversation(self, record: dict) -> None:
        sql = """
        UPDATE chatbot_conversations
        SET messages = %s, context_identifiers = %s, last_question = %s,
            message_count = %s, expires_at = %s
        WHERE token = %s
        """
        params = (
            psycopg2.extras.Json(record.get("messages") or []),
            psycopg2.extras.Json(record.get("context_identifiers") or []),
            record.get("last_question"),
            len(record.get("messages") or []),
            record["expires_at"],
            record["token"],
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                conn.commit()

        self._execute_with_retry(_op, "save_conversation")

    def touch_conversation(self, token: str, expires_at: datetime) -> None:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE chatbot_conversations SET expires_at = %s WHERE token = %s",
                    (expires_at, token),
                )
                conn.commit()

        self._execute_with_retry(_op, "touch_conversation")

    def delete_expired_conversations(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("DELETE FROM chatbot_conversations WHERE expires_at < %s", (now,))
                deleted = cur.rowcount
                conn.commit()
            return deleted

        return self._execute_with_retry(_op, "delete_expired_conversations")

    # =========================================================================
    # Feedback
    # =========================================================================

    def add_feedback(self, record: dict) -> str:
        sql = """
        INSERT INTO chatbot_feedbacks
            (question, answer, feedback_type, language, source, user_id, ip_hash)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """
        params = (
            record["question"],
            record["answer"],
            record["feedback_type"],
            record.get("language"),
            record.get("source"),
            record.get("user_id"),
            record.get("ip_hash"),
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                conn.commit()
            return str(row["id"])

        return self._execute_with_retry(_op, "add_feedback")

    # =========================================================================
    # Saved answers
    # =========================================================================

    def create_saved_answer(self, owner_id: str, record: dict) -> str:
        sql = """
        INSERT INTO saved_answers (owner_id, question, answer, sources, language, title, category)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """
        params = (
            owner_id,
            record["question"],
            record["answer"],
            psycopg2.extras.Json(record.get("sources")) if record.get("sources") is not None else None,
            record.get("language") or "nl",
            record.get("title"),
            record.get("category"),
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                conn.commit()
            return str(row["id"])

        return self._execute_with_retry(_op, "create_saved_answer")

    def list_saved_answers(
        self,
        owner_id: str,
        category: Optional[str] = None,
        limit: int = 50,
    ) -> list[dict]:
        limit = max(1, min(limit, MAX_SAVED_PAGE_SIZE))
        sql = """
        SELECT id, owner_id, question, answer, sources, language, title, category, created_at
        FROM saved_answers
        WHERE owner_id = %s
        """
        params = [owner_id]
        if category:
            sql += " AND category = %s"
            params.append(category)
        sql += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall()
            return [dict(row, id=str(row["id"])) for row in rows]

        return self._execute_with_retry(_op, "list_saved_answers")

    def saved_answer_categories(self, owner_id: str) -> list[str]:
        sql = """
        SELECT DISTINCT category FROM saved_answers
        WHERE owner_id = %s AND category IS NOT NULL
        ORDER BY category
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (owner_id,))
                rows = cur.fetchall()
            return [row["category"] for row in rows]

        return self._execute_with_retry(_op, "saved_answer_categories")

    def delete_saved_answer(self, owner_id: str, answer_id: str) -> bool:
        try:
            uuid.UUID(str(answer_id))
        except ValueError:
            return False

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM saved_answers WHERE id = %s::uuid AND owner_id = %s",
                    (answer_id, owner_id),
                )
                deleted = cur.rowcount > 0
                conn.commit()
            return deleted

        return self._execute_with_retry(_op, "delete_saved_answer")

    # =========================================================================
    # Entitlements
    # =========================================================================

    def grant_entitlement(self, user_id: str, entitlement: str, expires_at: Optional[datetime] = None) -> None:
        sql = """
        INSERT INTO user_entitlements (user_id, entitlement, is_active, expires_at)
        VALUES (%s, %s, TRUE, %s)
        ON CONFLICT (user_id, entitlement)
        DO UPDATE SET is_active = TRUE, expires_at = EXCLUDED.expires_at
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, entitlement, expires_at))
                conn.commit()

        self._execute_with_retry(_op, "grant_entitlement")

    def revoke_entitlement(self, user_id: str, entitlement: str) -> None:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE user_entitlements SET is_active = FALSE WHERE user_id = %s AND entitlement = %s",
                    (user_id, entitlement),
                )
                conn.commit()

        self._execute_with_retry(_op, "revoke_entitlement")

    def has_entitlement(self, user_id: str, entitlement: str) -> bool:
        sql = """
        SELECT 1 AS ok FROM user_entitlements
        WHERE user_id = %s AND entitlement = %s AND is_active
          AND (expires_at IS NULL OR expires_at > NOW())
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, entitlement))
                return cur.fetchone() is not None

        return self._execute_with_retry(_op, "has_entitlement")


def create_store(database_url: Optional[str] = None):
    """Pick the store implementation for the configured database."""
    if not database_url:
        logger.info("No DATABASE_URL configured, using in-memory chatbot store")
        return InMemoryStore()
    store = PostgresStore(PostgresStoreConfig(connection_string=database_url))
    store.connect()
    store.initialize_schema()
    return store
