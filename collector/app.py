import logging
import time
from urllib.parse import parse_qs, urlparse

import click
from flask import Flask, Response, abort, current_app, g, jsonify, request

from collector import db as store
from collector.campaigns import (
    CampaignNotFound,
    create_campaign,
    delete_campaign,
    get_campaign,
    get_campaign_report,
    list_campaigns,
)
from collector.config import (
    CORS_ALLOW_ORIGINS,
    DASH_TOKEN,
    DB_PATH,
    RECLASSIFY_ENABLED,
    RECLASSIFY_INTERVAL_SECONDS,
    RECLASSIFY_WINDOW_SECONDS,
    RETENTION_DAYS,
    setup_logging,
)
from collector.fraud import cutoff_for, get_fraud_summary
from collector.privacy import (
    client_ip,
    fallback_session_id,
    get_country_from_ip,
    is_datacenter_ip,
    parse_user_agent,
    sanitize_referrer,
    visitor_hash,
)
from collector.quality import get_source_quality
from collector.reclassifier import Reclassifier, materialize_sessions
from collector.scoring import ClientSignals, apply_path_signal, score, score_suspicious_path

logger = logging.getLogger(__name__)

EVENT_TYPES = ("pageview", "click", "custom")
MAX_EVENTS_PER_REQUEST = 50
PURGE_EVERY_SECONDS = 3600
SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1

# 1x1 transparent gif bytes (tracking pixel)
PIXEL_BYTES = (
    b"GIF89a"
    b"\x01\x00\x01\x00"
    b"\x80"
    b"\x00"
    b"\x00"
    b"\x00\x00\x00"
    b"\xff\xff\xff"
    b"\x21\xf9\x04\x01\x00\x00\x00\x00"
    b"\x2c\x00\x00\x00\x00\x01\x00\x01\x00\x00"
    b"\x02\x02\x44\x01\x00"
    b"\x3b"
)

setup_logging()

app = Flask(__name__)
app.config["DB_PATH"] = DB_PATH
app.config["DASH_TOKEN"] = DASH_TOKEN
app.config["RETENTION_DAYS"] = RETENTION_DAYS

_last_purge = {"at": 0.0}


# -----------------------------------------------------------------------------
# DB helpers
# -----------------------------------------------------------------------------
def get_db():
    if "db" not in g:
        g.db = store.connect(current_app.config["DB_PATH"])
    return g.db

@app.teardown_appcontext
def close_db(exc):
    db = g.pop("db", None)
    if db:
        db.close()

@app.before_request
def before():
    db = get_db()
    store.ensure_schema(db)

    # retention cleanup, at most hourly
    if time.time() - _last_purge["at"] > PURGE_EVERY_SECONDS:
        _last_purge["at"] = time.time()
        store.purge_expired(db, current_app.config["RETENTION_DAYS"])


# -----------------------------------------------------------------------------
# Request helpers
# -----------------------------------------------------------------------------
def require_token():
    token = request.args.get("token") or request.headers.get("X-Dashboard-Token", "")
    if token != current_app.config["DASH_TOKEN"]:
        abort(403)

def days_param(default=7):
    try:
        days = int(request.args.get("days", default))
    except ValueError:
        return default
    return days if 1 <= days <= 365 else default

def domain_param():
    return request.args.get("domain", "").strip()

def pick_cors_origin(request_origin: str | None) -> str | None:
    """
    Return allowed origin if it matches our allowlist.
    """
    if not request_origin:
        return None
    for allowed in CORS_ALLOW_ORIGINS:
        if request_origin == allowed:
            return allowed
    return None

@app.after_request
def add_cors_headers(resp):
    """
    Attach CORS headers if this was a cross-origin call from an allowed Origin.
    """
    origin = pick_cors_origin(request.headers.get("Origin"))

    if origin:
        req_method = request.headers.get("Access-Control-Request-Method", "GET,POST,OPTIONS")
        req_headers = request.headers.get("Access-Control-Request-Headers", "Content-Type")

        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Credentials"] = "false"
        resp.headers["Access-Control-Allow-Methods"] = req_method
        resp.headers["Access-Control-Allow-Headers"] = req_headers
        resp.headers["Access-Control-Max-Age"] = "600"
    return resp

@app.errorhandler(CampaignNotFound)
def campaign_not_found(exc):
    return jsonify({"error": "Campaign not found"}), 404


# -----------------------------------------------------------------------------
# Ingestion
# -----------------------------------------------------------------------------
def _flag(value) -> int:
    return 1 if value in (True, 1, "1", "true") else 0

def _opt_int(value):
    """
    Integer or None; None also for values SQLite can't store (64-bit signed).
    """
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    if not SQLITE_INT_MIN <= number <= SQLITE_INT_MAX:
        return None
    return number

def _clip(value, length):
    if value is None:
        return None
    value = str(value).strip()
    return value[:length] or None

def request_context(req):
    """
    Per-request enrichment shared by every event in the request.
    """
    src_ip = client_ip(req)
    user_agent = req.headers.get("User-Agent", "")
    ua_browser, ua_os = parse_user_agent(user_agent)
    return {
        "ip": src_ip,
        "user_agent": user_agent,
        "headers": dict(req.headers),
        "datacenter_ip": is_datacenter_ip(src_ip),
        "country": get_country_from_ip(src_ip),
        "ua_browser": ua_browser,
        "ua_os": ua_os,
        "referrer": sanitize_referrer(req.headers.get("Referer")),
        "origin_host": sanitize_referrer(req.headers.get("Origin")),
    }

def build_event(data: dict, ctx: dict):
    """
    Turn one posted event into a row for the events table, scored.
    Returns None for events without a resolvable domain.
    """
    url = str(data.get("url") or "")
    try:
        parsed = urlparse(url)
        url_host = parsed.hostname
    except ValueError:
        # unparseable url (e.g. broken IPv6 literal): keep the event, drop the url
        url, parsed, url_host = "", urlparse(""), None

    domain = (url_host or ctx["origin_host"] or "").lower()
    if not domain:
        return None
    path = parsed.path or str(data.get("page") or "/")
    query = parse_qs(parsed.query)

    event_type = str(data.get("type") or "pageview")
    if event_type not in EVENT_TYPES:
        event_type = "custom"

    client_signals = ClientSignals.from_payload(data.get("bot_signals"))
    result = score(ctx["user_agent"], client_signals, ctx["datacenter_ip"], ctx["headers"])
    result = apply_path_signal(result, score_suspicious_path(path))

    visitor = visitor_hash(ctx["ip"], ctx["user_agent"])
    session_id = _clip(data.get("session_id"), 64) or fallback_session_id(visitor, domain)

    def utm(name):
        return _clip(data.get(name) or (query.get(name) or [None])[0], 255)

    return {
        "timestamp": store.now_ms(),
        "event_type": event_type,
        "event_name": _clip(data.get("name") or data.get("target"), 100),
        "session_id": session_id,
        "visitor_hash": visitor,
        "domain": domain[:255],
        "url": url[:1000] or None,
        "path": path[:500],
        "referrer": ctx["referrer"],
        "utm_source": utm("utm_source"),
        "utm_medium": utm("utm_medium"),
        "utm_campaign": utm("utm_campaign"),
        "ua_browser": ctx["ua_browser"],
        "ua_os": ctx["ua_os"],
        "country": ctx["country"],
        "bot_score": result.score,
        "bot_signals": result.signals_json(),
        "bot_category": result.category,
        "has_scroll": _flag(data.get("has_scroll")),
        "has_mouse_move": _flag(data.get("has_mouse_move")),
        "has_click": _flag(data.get("has_click")),
        "has_touch": _flag(data.get("has_touch")),
        "click_x": _opt_int(data.get("click_x")),
        "click_y": _opt_int(data.get("click_y")),
        "page_duration": _opt_int(data.get("page_duration")),
        "datacenter_ip": 1 if ctx["datacenter_ip"] else 0,
    }

def insert_events(db, rows):
    if not rows:
        return
    columns = list(rows[0].keys())
    placeholders = ", ".join("?" for _ in columns)
    with db:
        db.executemany(
            f"INSERT INTO events ({', '.join(columns)}) VALUES ({placeholders})",
            [tuple(row[c] for c in columns) for row in rows],
        )


@app.route("/px.gif")
def pixel():
    """
    Tracking pixel endpoint, records a pageview scored from headers alone.
      <img src="/analytics/px.gif?u=https://example.com/path">
    """
    ctx = request_context(request)
    url = request.args.get("u") or request.headers.get("Referer", "")
    row = build_event({"type": "pageview", "url": url}, ctx)
    if row is not None:
        insert_events(get_db(), [row])

    resp = Response(PIXEL_BYTES, mimetype="image/gif")
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    resp.headers["Pragma"] = "no-cache"
    resp.headers["Expires"] = "0"
    return resp


@app.route("/event", methods=["POST", "OPTIONS"])
def event():
    """
    Event endpoint. Body is one event or a list of them:
      { "type": "click",
        "url": "https://example.com/pricing?utm_source=ads",
        "session_id": "k3j4...",
        "click_x": 120, "click_y": 48,
        "has_scroll": 1, "page_duration": 5300,
        "bot_signals": {"webdriver": 0, "plugins": 3, "languages": 2,
                        "screen_width": 1440, "screen_height": 900} }
    """
    if request.method == "OPTIONS":
        return ("", 200)

    data = request.get_json(silent=True)
    items = data if isinstance(data, list) else [data]
    items = [item for item in items[:MAX_EVENTS_PER_REQUEST] if isinstance(item, dict)]
    if not items:
        return jsonify({"ok": False, "error": "no events"}), 400

    ctx = request_context(request)
    rows = [row for row in (build_event(item, ctx) for item in items) if row is not None]
    insert_events(get_db(), rows)

    return jsonify({"ok": True, "stored": len(rows)})


# -----------------------------------------------------------------------------
# Analytics API
# -----------------------------------------------------------------------------
@app.route("/api/bots")
def bot_stats():
    """
    Bot traffic breakdown: categories, score histogram, daily series.
    """
    require_token()
    db = get_db()
    cutoff = cutoff_for(days_param())
    where, args = store.domain_clause(domain_param())

    categories = db.execute(
        f"""
        SELECT bot_category AS category, COUNT(*) AS events,
               COUNT(DISTINCT visitor_hash) AS visitors
        FROM events
        WHERE timestamp >= ?{where}
        GROUP BY bot_category
        ORDER BY events DESC
        """,
        [cutoff] + args,
    ).fetchall()

    histogram = db.execute(
        f"""
        SELECT
            CASE
                WHEN bot_score <= 10 THEN '0-10'
                WHEN bot_score <= 20 THEN '11-20'
                WHEN bot_score <= 30 THEN '21-30'
                WHEN bot_score <= 40 THEN '31-40'
                WHEN bot_score <= 50 THEN '41-50'
                WHEN bot_score <= 60 THEN '51-60'
                WHEN bot_score <= 70 THEN '61-70'
                WHEN bot_score <= 80 THEN '71-80'
                WHEN bot_score <= 90 THEN '81-90'
                ELSE '91-100'
            END AS score_range,
            COUNT(*) AS count
        FROM events
        WHERE timestamp >= ?{where}
        GROUP BY score_range
        ORDER BY score_range
        """,
        [cutoff] + args,
    ).fetchall()

    by_day = db.execute(
        f"""
        SELECT
            date(timestamp / 1000, 'unixepoch') AS period,
            SUM(CASE WHEN bot_category = 'human' THEN 1 ELSE 0 END) AS humans,
            SUM(CASE WHEN bot_category = 'suspicious' THEN 1 ELSE 0 END) AS suspicious,
            SUM(CASE WHEN bot_category = 'bad_bot' THEN 1 ELSE 0 END) AS bad_bots,
            SUM(CASE WHEN bot_category = 'good_bot' THEN 1 ELSE 0 END) AS good_bots
        FROM events
        WHERE timestamp >= ?{where}
        GROUP BY period
        ORDER BY period
        """,
        [cutoff] + args,
    ).fetchall()

    return jsonify({
        "categories": [dict(row) for row in categories],
        "score_distribution": [{"range": r["score_range"], "count": r["count"]} for r in histogram],
        "timeseries": [dict(row) for row in by_day],
    })


@app.route("/api/fraud")
def fraud_summary():
    require_token()
    summary = get_fraud_summary(get_db(), domain_param(), days_param())
    return jsonify(summary.to_dict())


@app.route("/api/fraud/sources")
def source_quality():
    require_token()
    sources = get_source_quality(get_db(), domain_param(), days_param())
    return jsonify([sq.to_dict() for sq in sources])


@app.route("/api/campaigns", methods=["GET", "POST"])
def campaigns():
    require_token()
    db = get_db()
    if request.method == "GET":
        return jsonify([c.to_dict() for c in list_campaigns(db)])

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid request body"}), 400
    try:
        campaign = create_campaign(db, payload)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    logger.info("Created campaign %s (%s)", campaign.id, campaign.name)
    return jsonify(campaign.to_dict()), 201


@app.route("/api/campaigns/<campaign_id>", methods=["GET", "DELETE"])
def campaign_detail(campaign_id):
    require_token()
    db = get_db()
    if request.method == "DELETE":
        delete_campaign(db, campaign_id)
        logger.info("Deleted campaign %s", campaign_id)
        return ("", 204)
    return jsonify(get_campaign(db, campaign_id).to_dict())


@app.route("/api/campaigns/<campaign_id>/report")
def campaign_report(campaign_id):
    require_token()
    report = get_campaign_report(get_db(), campaign_id, domain_param())
    return jsonify(report.to_dict())


# -----------------------------------------------------------------------------
# health
# -----------------------------------------------------------------------------
@app.route("/healthz")
def healthz():
    return "ok", 200


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
def make_reclassifier():
    return Reclassifier(
        current_app.config["DB_PATH"],
        interval=RECLASSIFY_INTERVAL_SECONDS,
        window=RECLASSIFY_WINDOW_SECONDS,
    )

@app.cli.command("reclassify")
@click.option("--loop", is_flag=True, help="Keep running every interval until interrupted.")
def reclassify_command(loop):
    """Run the behavioral bot reclassification (once, or periodically with --loop).

    Ignores RECLASSIFY_ENABLED, which only applies to the dev server.
    """
    reclassifier = make_reclassifier()
    if not loop:
        click.echo(f"updated {reclassifier.run_once()} events")
        return
    reclassifier.start()
    try:
        while reclassifier.running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        reclassifier.stop()

@app.cli.command("materialize-sessions")
@click.option("--minutes", default=60, show_default=True, help="Rebuild sessions active in this many minutes.")
def materialize_command(minutes):
    """Rebuild the visitor_sessions summary table."""
    db = get_db()
    store.ensure_schema(db)
    count = materialize_sessions(db, store.now_ms() - minutes * 60 * 1000)
    click.echo(f"materialized {count} sessions")


if __name__ == "__main__":
    # Dev mode, container uses gunicorn plus `flask reclassify --loop`
    with app.app_context():
        reclassifier = make_reclassifier()
    if RECLASSIFY_ENABLED:
        reclassifier.start()
    try:
        app.run(host="0.0.0.0", port=8000)
    finally:
        reclassifier.stop()
