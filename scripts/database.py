"""
Database schema and row operations for per-user channel, video and comment storage.

Supports multiple backends:
- Turso (libSQL) - Cloud SQLite with edge replication
- PostgreSQL - Traditional database with excellent concurrency
- Local SQLite file (for development/testing)

Configuration can be set via config/settings.yaml settings section or environment variables:
- database_backend: "turso" (default) or "postgres"
- database_url: Connection URL for Turso/libsql
- TURSO_AUTH_TOKEN: Auth token (environment variable only, for security)
- POSTGRES_URL: PostgreSQL connection string (environment variable only)

Every write is a single-row statement followed by a commit. Nothing here
wraps a channel's or a video's processing in one transaction.
"""

import json
import os
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from config import get_config
from logger import get_logger

log = get_logger("database")


# ============================================================================
# TRANSIENT ERROR HANDLING
# ============================================================================

# Turso-specific error patterns that are retryable
RETRYABLE_ERROR_PATTERNS = [
    "502 Bad Gateway",
    "503 Service Unavailable",
    "504 Gateway Timeout",
    "Connection reset",
    "Connection refused",
    "Connection timed out",
    "Temporary failure",
    "Too many requests",
    "SQLITE_BUSY",
    "database is locked",
    "stream not found",
    "Stream already in use",
]

# Hrana stream errors need a fresh connection, not just another attempt
CONNECTION_REFRESH_PATTERNS = [
    "stream not found",
    "Stream already in use",
]


def _matches(error: Exception, patterns: list[str]) -> bool:
    error_str = str(error).lower()
    return any(pattern.lower() in error_str for pattern in patterns)


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable based on known patterns."""
    return _matches(error, RETRYABLE_ERROR_PATTERNS)


def needs_connection_refresh(error: Exception) -> bool:
    """Check if an error indicates the connection needs to be recreated."""
    return _matches(error, CONNECTION_REFRESH_PATTERNS)


def _backoff_delay(attempt: int) -> float:
    cfg = get_config()
    return min(cfg.db_base_delay * (cfg.db_exponential_base ** attempt), cfg.db_max_delay)


class TursoConnection:
    """
    Wrapper around a libsql connection with automatic retry logic.

    Provides resilient execute() and commit() methods that handle
    transient Turso errors with exponential backoff, and recreates the
    connection on stream errors.
    """

    def __init__(self, conn, url: str = None, auth_token: str = None):
        self._conn = conn
        self._url = url
        self._auth_token = auth_token
        self._lock = threading.Lock()

    def _refresh_connection(self):
        """Recreate the underlying connection after stream errors."""
        if not self._url:
            log.warning("Cannot refresh connection: no URL stored")
            return

        import libsql

        log.info("Refreshing database connection after stream error")
        with self._lock:
            self._conn = _connect_libsql(libsql, self._url, self._auth_token)

    def _execute_with_refresh(self, method_name: str, *args):
        """Run a connection method, retrying transient errors.

        Looks the method up by name on every attempt so a refreshed
        connection is actually used.
        """
        max_retries = get_config().db_max_retries
        last_exception = None

        for attempt in range(max_retries + 1):
            try:
                method = getattr(self._conn, method_name)
                return method(*args)
            except Exception as e:
                if not is_retryable_error(e):
                    log.error(f"Non-retryable database error: {e}")
                    raise
                last_exception = e
                if attempt >= max_retries:
                    log.error(f"Database operation failed after {max_retries + 1} attempts: {e}")
                    raise
                delay = _backoff_delay(attempt)
                log.warning(f"Database error (attempt {attempt + 1}/{max_retries + 1}), "
                            f"retrying in {delay:.1f}s: {e}")
                time.sleep(delay)
                if needs_connection_refresh(e):
                    self._refresh_connection()

        raise last_exception

    def execute(self, sql: str, parameters: tuple = None):
        """Execute SQL with automatic retry and connection refresh on stream errors."""
        if parameters:
            return self._execute_with_refresh("execute", sql, parameters)
        return self._execute_with_refresh("execute", sql)

    def commit(self):
        """Commit with automatic retry and connection refresh."""
        return self._execute_with_refresh("commit")

    def __getattr__(self, name):
        """Delegate other attributes to underlying connection."""
        return getattr(self._conn, name)


class PostgresConnection:
    """
    Wrapper around a psycopg connection with automatic retry logic.

    Converts the SQLite dialect used throughout this module:
    - ? placeholders become %s
    - INSERT OR IGNORE becomes INSERT ... ON CONFLICT DO NOTHING
    """

    PG_RETRYABLE_PATTERNS = [
        "connection refused",
        "connection reset",
        "connection timed out",
        "too many connections",
        "server closed the connection",
        "SSL connection has been closed",
        "could not connect to server",
        "temporary failure",
    ]

    def __init__(self, conn_string: str):
        self._conn_string = conn_string
        self._conn = None
        self._lock = threading.Lock()
        self._connect()

    def _connect(self):
        import psycopg

        log.debug("Creating PostgreSQL connection")
        self._conn = psycopg.connect(self._conn_string, autocommit=False)

    def _is_retryable(self, error: Exception) -> bool:
        return _matches(error, self.PG_RETRYABLE_PATTERNS)

    @staticmethod
    def convert_sql(sql: str) -> str:
        """Convert SQLite SQL syntax to PostgreSQL."""
        result = sql.replace("?", "%s")
        if "INSERT OR IGNORE" in result.upper():
            result = result.replace("INSERT OR IGNORE", "INSERT").replace("insert or ignore", "INSERT")
            result = result.rstrip()
            if "ON CONFLICT" not in result.upper() and result.endswith(")"):
                result += " ON CONFLICT DO NOTHING"
        return result

    def _execute_with_retry(self, method_name: str, sql: str = None, parameters=None):
        max_retries = get_config().db_max_retries
        last_exception = None

        for attempt in range(max_retries + 1):
            try:
                with self._lock:
                    method = getattr(self._conn, method_name)
                    if sql is None:
                        return method()
                    converted = self.convert_sql(sql)
                    if parameters:
                        return method(converted, parameters)
                    return method(converted)
            except Exception as e:
                if not self._is_retryable(e):
                    log.error(f"Non-retryable PostgreSQL error: {e}")
                    # Leave the connection usable for the next statement
                    self.rollback()
                    raise
                last_exception = e
                if attempt >= max_retries:
                    log.error(f"PostgreSQL operation failed after {max_retries + 1} attempts: {e}")
                    raise
                delay = _backoff_delay(attempt)
                log.warning(f"PostgreSQL error (attempt {attempt + 1}/{max_retries + 1}), "
                            f"retrying in {delay:.1f}s: {e}")
                time.sleep(delay)
                try:
                    self._connect()
                except Exception as conn_err:
                    log.warning(f"Reconnection failed: {conn_err}")

        raise last_exception

    def execute(self, sql: str, parameters: tuple = None):
        """Execute SQL with automatic retry and placeholder conversion."""
        return self._execute_with_retry("execute", sql, parameters)

    def commit(self):
        """Commit transaction with automatic retry."""
        return self._execute_with_retry("commit")

    def rollback(self):
        """Rollback the current transaction to reset connection state."""
        try:
            if self._conn:
                self._conn.rollback()
        except Exception as e:
            log.warning(f"Rollback failed: {e}")

    def close(self):
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __getattr__(self, name):
        return getattr(self._conn, name)


def is_postgres() -> bool:
    """Check if using PostgreSQL backend."""
    return get_config().database_backend.lower() == "postgres"


def _connect_libsql(libsql, url: str, auth_token: str = None):
    if url.startswith("libsql://") or url.startswith("https://"):
        return libsql.connect(database=url, auth_token=auth_token)
    if url.startswith("file:"):
        filepath = url[5:]
        os.makedirs(os.path.dirname(filepath) or ".", exist_ok=True)
    return libsql.connect(database=url)


def get_connection():
    """
    Get a resilient connection to the database.

    Returns a connection wrapper appropriate for the configured backend.
    """
    cfg = get_config()

    if is_postgres():
        conn_string = cfg.postgres_url
        if not conn_string:
            raise ValueError("POSTGRES_URL environment variable required for postgres backend")

        log.debug(f"Connecting to PostgreSQL: {conn_string[:30]}...")
        return PostgresConnection(conn_string)

    import libsql

    url = cfg.database_url
    log.debug(f"Connecting to database: {url[:30]}...")
    conn = _connect_libsql(libsql, url, cfg.database_auth_token)
    return TursoConnection(conn, url=url, auth_token=cfg.database_auth_token)


# ============================================================================
# SCHEMA
# ============================================================================

def init_database(conn) -> None:
    """Create tables and indexes if they do not exist.

    The counter column type differs per backend; everything else is shared.
    """
    counter = "BIGINT" if is_postgres() else "INTEGER"

    conn.execute("""
        CREATE TABLE IF NOT EXISTS youtube_channels (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            channel_id TEXT,
            user_id TEXT NOT NULL,
            created_at TEXT,
            updated_at TEXT
        )
    """)

    # UNIQUE(user_id, video_id) is the dedup key insert_video_if_absent relies on
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS videos (
            id TEXT PRIMARY KEY,
            video_id TEXT NOT NULL,
            title TEXT,
            description TEXT,
            published_at TEXT,
            thumbnail_url TEXT,
            channel_id TEXT,
            channel_title TEXT,
            user_id TEXT NOT NULL,
            view_count {counter} DEFAULT 0,
            like_count {counter} DEFAULT 0,
            dislike_count {counter} DEFAULT 0,
            comment_count {counter} DEFAULT 0,
            created_at TEXT,
            updated_at TEXT,
            UNIQUE (user_id, video_id)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS video_comments (
            id TEXT PRIMARY KEY,
            video_id TEXT NOT NULL REFERENCES videos(id),
            user_id TEXT NOT NULL,
            comment_text TEXT,
            like_count INTEGER DEFAULT 0,
            dislike_count INTEGER DEFAULT 0,
            published_at TEXT,
            created_at TEXT,
            updated_at TEXT
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS quota_usage (
            date TEXT PRIMARY KEY,
            used INTEGER,
            operations TEXT,
            last_updated TEXT
        )
    """)

    conn.execute("CREATE INDEX IF NOT EXISTS idx_channels_user ON youtube_channels(user_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_videos_user ON videos(user_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_comments_video ON video_comments(video_id)")

    conn.commit()


# ============================================================================
# HELPERS
# ============================================================================

def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _fetch_dicts(cursor) -> list[dict]:
    columns = [desc[0] for desc in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _fetch_one_dict(cursor) -> Optional[dict]:
    rows = _fetch_dicts(cursor)
    return rows[0] if rows else None


# ============================================================================
# CHANNELS
# ============================================================================

def add_channel_for_user(conn, user_id: str, name: str) -> dict:
    """Register a channel name for a user. The upstream id is resolved later."""
    now = utc_now()
    row = {
        "id": new_id(),
        "name": name,
        "channel_id": None,
        "user_id": user_id,
        "created_at": now,
        "updated_at": now,
    }
    conn.execute("""
        INSERT INTO youtube_channels (id, name, channel_id, user_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (row["id"], row["name"], row["channel_id"], row["user_id"], row["created_at"], row["updated_at"]))
    conn.commit()
    return row


def remove_channel_for_user(conn, user_id: str, channel_row_id: str) -> None:
    """Delete one of the user's channel rows. Stored videos are left alone."""
    conn.execute("""
        DELETE FROM youtube_channels WHERE id = ? AND user_id = ?
    """, (channel_row_id, user_id))
    conn.commit()


def get_channels_for_user(conn, user_id: str) -> list[dict]:
    cursor = conn.execute("""
        SELECT id, name, channel_id, user_id, created_at, updated_at
        FROM youtube_channels
        WHERE user_id = ?
        ORDER BY created_at, id
    """, (user_id,))
    return _fetch_dicts(cursor)


def set_channel_upstream_id(conn, user_id: str, channel_row_id: str, channel_id: str) -> None:
    """Persist a resolved upstream channel id.

    Only fills an empty slot: once set, the id is kept for that row.
    """
    conn.execute("""
        UPDATE youtube_channels
        SET channel_id = ?, updated_at = ?
        WHERE id = ? AND user_id = ? AND channel_id IS NULL
    """, (channel_id, utc_now(), channel_row_id, user_id))
    conn.commit()


# ============================================================================
# VIDEOS
# ============================================================================

VIDEO_COLUMNS = (
    "id, video_id, title, description, published_at, thumbnail_url, channel_id, "
    "channel_title, user_id, view_count, like_count, dislike_count, comment_count, "
    "created_at, updated_at"
)


def get_video_by_upstream_id(conn, user_id: str, video_id: str) -> Optional[dict]:
    cursor = conn.execute(f"""
        SELECT {VIDEO_COLUMNS} FROM videos WHERE user_id = ? AND video_id = ?
    """, (user_id, video_id))
    return _fetch_one_dict(cursor)


def get_videos_for_user(conn, user_id: str) -> list[dict]:
    cursor = conn.execute(f"""
        SELECT {VIDEO_COLUMNS} FROM videos
        WHERE user_id = ?
        ORDER BY published_at DESC, id
    """, (user_id,))
    return _fetch_dicts(cursor)


def insert_video_if_absent(conn, user_id: str, channel_id: str, video: dict) -> tuple[dict, bool]:
    """
    Insert a video for a user unless one with the same upstream id exists.

    The UNIQUE(user_id, video_id) constraint decides; two concurrent runs
    cannot both create a row for the same dedup key.

    Args:
        conn: Database connection
        user_id: Owning user
        channel_id: Resolved upstream channel id the video was listed under
        video: Normalised video record from YouTubeFetcher

    Returns:
        Tuple of (stored row, True if this call created it)
    """
    now = utc_now()
    row_id = new_id()
    conn.execute(f"""
        INSERT OR IGNORE INTO videos ({VIDEO_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        row_id,
        video["video_id"],
        video.get("title"),
        video.get("description"),
        video.get("published_at"),
        video.get("thumbnail_url"),
        channel_id,
        video.get("channel_title"),
        user_id,
        video.get("view_count", 0),
        video.get("like_count", 0),
        video.get("dislike_count", 0),
        video.get("comment_count", 0),
        now,
        now,
    ))
    conn.commit()

    row = get_video_by_upstream_id(conn, user_id, video["video_id"])
    if row is None:
        raise LookupError(f"Video {video['video_id']} missing after insert for user {user_id}")
    return row, row["id"] == row_id


def update_video_counters(conn, row_id: str, counters: dict) -> None:
    """Overwrite the four counters and updated_at. Nothing else is touched."""
    conn.execute("""
        UPDATE videos
        SET view_count = ?, like_count = ?, dislike_count = ?, comment_count = ?, updated_at = ?
        WHERE id = ?
    """, (
        counters.get("view_count", 0),
        counters.get("like_count", 0),
        counters.get("dislike_count", 0),
        counters.get("comment_count", 0),
        utc_now(),
        row_id,
    ))
    conn.commit()


# ============================================================================
# COMMENTS
# ============================================================================

def insert_comment(conn, user_id: str, video_row_id: str, comment: dict) -> dict:
    """Insert one comment under a stored video. No dedup: every call adds a row."""
    now = utc_now()
    row = {
        "id": new_id(),
        "video_id": video_row_id,
        "user_id": user_id,
        "comment_text": comment.get("text"),
        "like_count": comment.get("like_count", 0),
        # Upstream does not expose comment dislikes
        "dislike_count": 0,
        "published_at": comment.get("published_at"),
        "created_at": now,
        "updated_at": now,
    }
    conn.execute("""
        INSERT INTO video_comments (
            id, video_id, user_id, comment_text, like_count, dislike_count,
            published_at, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, tuple(row.values()))
    conn.commit()
    return row


def get_comments_for_video(conn, video_row_id: str) -> list[dict]:
    cursor = conn.execute("""
        SELECT id, video_id, user_id, comment_text, like_count, dislike_count,
               published_at, created_at, updated_at
        FROM video_comments
        WHERE video_id = ?
        ORDER BY published_at DESC
    """, (video_row_id,))
    return _fetch_dicts(cursor)


# ============================================================================
# QUOTA TRACKING - Persist across runs
# ============================================================================

def get_quota_usage(conn, date_str: str) -> Optional[dict]:
    """
    Get quota usage for a specific date.

    Returns:
        Dict with 'used' and 'operations' or None if not found
    """
    result = conn.execute("""
        SELECT used, operations FROM quota_usage WHERE date = ?
    """, (date_str,)).fetchone()

    if result:
        return {
            'used': result[0],
            'operations': json.loads(result[1]) if result[1] else {}
        }
    return None


def save_quota_usage(conn, date_str: str, used: int, operations: dict) -> None:
    conn.execute("""
        INSERT INTO quota_usage (date, used, operations, last_updated)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(date) DO UPDATE SET
            used = excluded.used,
            operations = excluded.operations,
            last_updated = excluded.last_updated
    """, (date_str, used, json.dumps(operations), utc_now()))
    conn.commit()
