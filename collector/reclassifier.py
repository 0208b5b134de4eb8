"""
Behavioral reclassification of recently stored sessions.

Some bots only show up across several events: a single sub-second pageview
with no interaction, dozens of pageviews in a few seconds, clicks fired on a
metronome. A background job looks at the trailing window of events every
tick and escalates the stored score/category of every event in a matching
session. Scores only ever go up and categories only move towards bad_bot.

Each applied pattern is recorded in event_patterns, so overlapping windows
and repeated ticks never count the same pattern twice for an event.
"""

import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from collector import db as store
from collector import signals as sig
from collector.config import RECLASSIFY_INTERVAL_SECONDS, RECLASSIFY_WINDOW_SECONDS

logger = logging.getLogger(__name__)

ZERO_INTERACTION_MAX_PRIOR_SCORE = 75
IMPOSSIBLE_SPEED_PAGEVIEWS = 50
IMPOSSIBLE_SPEED_SPAN_MS = 10_000
PERFECT_TIMING_MIN_CLICKS = 10
PERFECT_TIMING_INTERVAL_MS = 100


@dataclass(frozen=True)
class Rule:
    name: str
    weight: int
    # SELECT session_id, domain ... with a single "since" placeholder
    candidates_sql: str
    category: Callable[[int], str]
    max_prior_score: Optional[int] = None


def _perfect_timing_category(new_score: int) -> str:
    return sig.BAD_BOT if new_score > sig.SUSPICIOUS_MAX_SCORE else sig.SUSPICIOUS


RULES = (
    Rule(
        name="zero_interaction",
        weight=sig.WEIGHT_ZERO_INTERACTION,
        candidates_sql="""
            SELECT session_id, domain
            FROM events
            WHERE timestamp >= ?
            GROUP BY session_id, domain
            HAVING
                COUNT(*) = 1
                AND SUM(CASE WHEN event_type = 'pageview' THEN 1 ELSE 0 END) = 1
                AND SUM(COALESCE(has_scroll, 0)) = 0
                AND SUM(COALESCE(has_mouse_move, 0)) = 0
                AND SUM(COALESCE(has_click, 0)) = 0
                AND COALESCE(MAX(page_duration), 0) < 1000
        """,
        category=sig.category_for_score,
        max_prior_score=ZERO_INTERACTION_MAX_PRIOR_SCORE,
    ),
    Rule(
        name="impossible_speed",
        weight=sig.WEIGHT_IMPOSSIBLE_SPEED,
        candidates_sql=f"""
            SELECT session_id, domain
            FROM events
            WHERE timestamp >= ?
                AND event_type = 'pageview'
            GROUP BY session_id, domain
            HAVING
                COUNT(*) > {IMPOSSIBLE_SPEED_PAGEVIEWS}
                AND MAX(timestamp) - MIN(timestamp) < {IMPOSSIBLE_SPEED_SPAN_MS}
        """,
        category=lambda new_score: sig.BAD_BOT,
    ),
    Rule(
        name="perfect_timing",
        weight=sig.WEIGHT_PERFECT_TIMING,
        candidates_sql=f"""
            SELECT session_id, domain
            FROM events
            WHERE timestamp >= ?
                AND event_type = 'click'
            GROUP BY session_id, domain
            HAVING
                COUNT(*) >= {PERFECT_TIMING_MIN_CLICKS}
                AND CAST(MAX(timestamp) - MIN(timestamp) AS REAL) / COUNT(*) < {PERFECT_TIMING_INTERVAL_MS}
        """,
        category=_perfect_timing_category,
    ),
)


def escalate(score: int, category: str, weight: int, rule_category: Callable[[int], str]):
    """
    New (score, category) after applying a pattern. Never lowers either.
    """
    score = score or 0
    new_score = sig.clamp_score(max(score, score + weight))
    new_category = sig.escalate_category(category or sig.HUMAN, rule_category(new_score))
    return new_score, new_category


def apply_rule(db: sqlite3.Connection, rule: Rule, since: int, now=None) -> int:
    """
    Escalate every not-yet-marked event of every session matching the rule.
    Returns the number of events updated.
    """
    applied_at = now if now is not None else store.now_ms()
    updated = 0

    with store.transaction(db):
        sessions = db.execute(rule.candidates_sql, (since,)).fetchall()
        for session in sessions:
            rows = db.execute(
                """
                SELECT e.id, e.bot_score, e.bot_category, e.bot_signals
                FROM events e
                WHERE e.session_id = ?
                    AND e.domain = ?
                    AND COALESCE(e.bot_category, 'human') != 'good_bot'
                    AND NOT EXISTS (
                        SELECT 1 FROM event_patterns p
                        WHERE p.event_id = e.id AND p.pattern = ?
                    )
                """,
                (session["session_id"], session["domain"], rule.name),
            ).fetchall()

            for row in rows:
                old_score = row["bot_score"] or 0
                if rule.max_prior_score is not None and old_score >= rule.max_prior_score:
                    continue

                new_score, new_category = escalate(old_score, row["bot_category"], rule.weight, rule.category)
                found = sig.signals_from_json(row["bot_signals"])
                found.append(sig.Signal(rule.name, rule.weight))

                db.execute(
                    """
                    UPDATE events
                    SET bot_score = ?, bot_category = ?, bot_signals = ?
                    WHERE id = ?
                    """,
                    (new_score, new_category, sig.signals_to_json(found), row["id"]),
                )
                db.execute(
                    "INSERT INTO event_patterns (event_id, pattern, applied_at) VALUES (?, ?, ?)",
                    (row["id"], rule.name, applied_at),
                )
                updated += 1

    return updated


def run_rules(db: sqlite3.Connection, since: int, now=None) -> int:
    """
    Apply every behavioral rule over events newer than `since`. A failing
    rule is logged and skipped; the others still run.
    """
    total = 0
    for rule in RULES:
        try:
            count = apply_rule(db, rule, since, now=now)
        except sqlite3.Error:
            logger.exception("%s analysis failed", rule.name)
            continue
        if count:
            logger.info("%s: escalated %d events", rule.name, count)
        total += count
    return total


def materialize_sessions(db: sqlite3.Connection, since: int) -> int:
    """
    Rebuild visitor_sessions rows for every session with activity since
    `since`. Keyed by (session_id, domain), so re-running is harmless.
    """
    with store.transaction(db):
        cur = db.execute(
            """
            INSERT OR REPLACE INTO visitor_sessions (
                id, session_id, visitor_hash, domain,
                start_time, end_time, duration, pageviews,
                entry_url, exit_url, is_bounce,
                bot_score, bot_category
            )
            SELECT
                e.session_id || '_' || e.domain,
                e.session_id,
                MAX(e.visitor_hash),
                e.domain,
                MIN(e.timestamp),
                MAX(e.timestamp),
                MAX(e.timestamp) - MIN(e.timestamp),
                SUM(CASE WHEN e.event_type = 'pageview' THEN 1 ELSE 0 END),
                (SELECT url FROM events e2
                 WHERE e2.session_id = e.session_id AND e2.domain = e.domain
                 ORDER BY e2.timestamp ASC, e2.id ASC LIMIT 1),
                (SELECT url FROM events e3
                 WHERE e3.session_id = e.session_id AND e3.domain = e.domain
                 ORDER BY e3.timestamp DESC, e3.id DESC LIMIT 1),
                CASE WHEN SUM(CASE WHEN e.event_type = 'pageview' THEN 1 ELSE 0 END) = 1 THEN 1 ELSE 0 END,
                MAX(e.bot_score),
                CASE MAX(
                    CASE e.bot_category
                        WHEN 'bad_bot' THEN 3
                        WHEN 'suspicious' THEN 2
                        WHEN 'good_bot' THEN 1
                        ELSE 0
                    END)
                    WHEN 3 THEN 'bad_bot'
                    WHEN 2 THEN 'suspicious'
                    WHEN 1 THEN 'good_bot'
                    ELSE 'human'
                END
            FROM events e
            WHERE (e.session_id, e.domain) IN (
                SELECT session_id, domain FROM events WHERE timestamp >= ?
            )
            GROUP BY e.session_id, e.domain
            """,
            (since,),
        )
    return cur.rowcount


JOB_ID = "bot_reclassifier"


class Reclassifier:
    """
    Periodic background pass over the trailing window of events.

    start() schedules a pass right away and then every `interval` seconds on
    a background scheduler; stop() lets an in-flight pass finish before
    returning. Run one instance per database.
    """

    def __init__(self, db_path: str, interval: int = RECLASSIFY_INTERVAL_SECONDS,
                 window: int = RECLASSIFY_WINDOW_SECONDS, connect=store.connect):
        self.db_path = db_path
        self.interval = interval
        self.window = window
        self._connect = connect
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_once(self, now=None) -> int:
        now = now if now is not None else store.now_ms()
        since = now - self.window * 1000
        logger.info("Running bot batch analysis for events since %d", since)

        with closing(self._connect(self.db_path)) as db:
            store.ensure_schema(db)
            updated = run_rules(db, since, now=now)
            try:
                materialize_sessions(db, since)
            except sqlite3.Error:
                logger.exception("Session materialization failed")

        if updated:
            logger.info("Bot batch analysis: updated %d events", updated)
        return updated

    def start(self):
        if self.running:
            return
        logger.info("Starting bot batch analyzer with %ds interval", self.interval)
        self._scheduler = BackgroundScheduler(daemon=True, timezone="UTC")
        self._scheduler.add_job(
            self._tick,
            "interval",
            seconds=self.interval,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._scheduler.start()

    def stop(self):
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
        self._scheduler = None
        logger.info("Stopped bot batch analyzer")

    def _tick(self):
        try:
            self.run_once()
        except sqlite3.Error:
            logger.exception("Bot batch analysis tick failed")
