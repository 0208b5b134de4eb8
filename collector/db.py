import logging
import sqlite3
import time
from contextlib import contextmanager

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def connect(path: str) -> sqlite3.Connection:
    db = sqlite3.connect(path, timeout=10)
    db.row_factory = sqlite3.Row
    return db


@contextmanager
def transaction(db: sqlite3.Connection):
    """
    BEGIN IMMEDIATE ... COMMIT; the write lock is held from the first
    statement. Rolls back on any exception.
    """
    if db.in_transaction:
        db.commit()
    db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        db.rollback()
        raise
    db.commit()


# -----------------------------------------------------------------------------
# Schema
# -----------------------------------------------------------------------------
EVENT_COLUMNS = [
    "timestamp INTEGER",
    "event_type TEXT",
    "event_name TEXT",
    "session_id TEXT",
    "visitor_hash TEXT",
    "domain TEXT",
    "url TEXT",
    "path TEXT",
    "referrer TEXT",
    "utm_source TEXT",
    "utm_medium TEXT",
    "utm_campaign TEXT",
    "ua_browser TEXT",
    "ua_os TEXT",
    "country TEXT",
    "bot_score INTEGER DEFAULT 0",
    "bot_signals TEXT DEFAULT '[]'",
    "bot_category TEXT DEFAULT 'human'",
    "has_scroll INTEGER DEFAULT 0",
    "has_mouse_move INTEGER DEFAULT 0",
    "has_click INTEGER DEFAULT 0",
    "has_touch INTEGER DEFAULT 0",
    "click_x INTEGER",
    "click_y INTEGER",
    "page_duration INTEGER",
    "datacenter_ip INTEGER DEFAULT 0",
]


def ensure_schema(db: sqlite3.Connection):
    """
    Create tables if missing and try to backfill new columns.
    Safe to run every request.
    """
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp INTEGER NOT NULL,
            event_type TEXT NOT NULL,
            session_id TEXT NOT NULL,
            domain TEXT NOT NULL
        );
        """
    )

    # one row per behavioral pattern already applied to an event
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS event_patterns (
            event_id INTEGER NOT NULL,
            pattern TEXT NOT NULL,
            applied_at INTEGER NOT NULL,
            PRIMARY KEY (event_id, pattern)
        );
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS campaigns (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            utm_source TEXT,
            utm_medium TEXT,
            utm_campaign TEXT,
            cpc REAL DEFAULT 0,
            cpm REAL DEFAULT 0,
            budget REAL DEFAULT 0,
            start_date INTEGER,
            end_date INTEGER,
            created_at INTEGER NOT NULL
        );
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS visitor_sessions (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            visitor_hash TEXT,
            domain TEXT NOT NULL,
            start_time INTEGER,
            end_time INTEGER,
            duration INTEGER,
            pageviews INTEGER,
            entry_url TEXT,
            exit_url TEXT,
            is_bounce INTEGER,
            bot_score INTEGER,
            bot_category TEXT,
            UNIQUE (session_id, domain)
        );
        """
    )

    # try to add missing columns on upgrade
    for coldef in EVENT_COLUMNS:
        colname = coldef.split()[0]
        try:
            db.execute(f"SELECT {colname} FROM events LIMIT 1;")
        except sqlite3.OperationalError:
            db.execute(f"ALTER TABLE events ADD COLUMN {coldef};")

    for index in (
        "CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp)",
        "CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id, domain)",
        "CREATE INDEX IF NOT EXISTS idx_events_domain ON events(domain)",
        "CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type)",
        "CREATE INDEX IF NOT EXISTS idx_events_bot_category ON events(bot_category)",
        "CREATE INDEX IF NOT EXISTS idx_campaigns_utm ON campaigns(utm_source, utm_medium, utm_campaign)",
        "CREATE INDEX IF NOT EXISTS idx_visitor_sessions_domain ON visitor_sessions(domain)",
    ):
        db.execute(index)

    db.commit()


def purge_expired(db: sqlite3.Connection, retention_days: int, now=None) -> int:
    """
    Delete events, applied-pattern rows and materialized sessions older than
    the retention period. Returns the number of events removed.
    """
    cutoff = (now if now is not None else now_ms()) - retention_days * DAY_MS
    with db:
        db.execute(
            """
            DELETE FROM event_patterns
            WHERE event_id IN (SELECT id FROM events WHERE timestamp < ?)
            """,
            (cutoff,),
        )
        cur = db.execute("DELETE FROM events WHERE timestamp < ?", (cutoff,))
        db.execute("DELETE FROM visitor_sessions WHERE end_time < ?", (cutoff,))
    if cur.rowcount:
        logger.info("Retention purge removed %d events older than %d days", cur.rowcount, retention_days)
    return cur.rowcount


def domain_clause(domain: str, column: str = "domain"):
    """
    Optional "AND domain = ?" fragment plus its args.
    """
    if domain:
        return f" AND {column} = ?", [domain]
    return "", []
