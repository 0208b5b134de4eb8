import pytest

from collector import db as store
from collector.app import app as flask_app

NOW = store.now_ms()
TOKEN = "test-token"

EVENT_DEFAULTS = {
    "event_type": "pageview",
    "session_id": "s1",
    "visitor_hash": "v1",
    "domain": "example.com",
    "url": "https://example.com/",
    "path": "/",
    "bot_score": 0,
    "bot_signals": "[]",
    "bot_category": "human",
    "has_scroll": 0,
    "has_mouse_move": 0,
    "has_click": 0,
    "has_touch": 0,
}


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "analytics.sqlite3")


@pytest.fixture
def db(db_path):
    conn = store.connect(db_path)
    store.ensure_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def add_event(db):
    """Insert one event row; keyword arguments override the defaults."""
    def _add(**fields):
        row = dict(EVENT_DEFAULTS, timestamp=NOW - 60_000)
        row.update(fields)
        columns = list(row)
        with db:
            cur = db.execute(
                f"INSERT INTO events ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                [row[c] for c in columns],
            )
        return cur.lastrowid
    return _add


@pytest.fixture
def event_row(db):
    def _get(event_id):
        return db.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
    return _get


@pytest.fixture
def app(db_path):
    flask_app.config.update(TESTING=True, DB_PATH=db_path, DASH_TOKEN=TOKEN)
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()
