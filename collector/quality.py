"""
Traffic quality per UTM source/medium/campaign.
"""

import sqlite3
from dataclasses import asdict, dataclass

from collector.db import domain_clause
from collector.fraud import cutoff_for

DIRECT = "(direct)"
NONE = "(none)"
MIN_VISITS = 10
MAX_SOURCES = 50


@dataclass
class SourceQuality:
    utm_source: str
    utm_medium: str
    utm_campaign: str
    total_visits: int = 0
    bot_visits: int = 0
    human_visits: int = 0
    bot_rate: float = 0.0
    avg_bot_score: float = 0.0
    bounce_rate: float = 0.0
    avg_duration: float = 0.0     # seconds
    quality_score: int = 0

    def to_dict(self):
        return asdict(self)


def quality_score(bot_rate: float, avg_bot_score: float, avg_duration: float) -> int:
    """
    0-100, higher is better. Starts at 100, loses half a point per percent
    of bot traffic, more when the average score is high, and moves with
    time on site.
    """
    score = 100.0
    score -= bot_rate * 0.5
    if avg_bot_score > 20:
        score -= (avg_bot_score - 20) * 0.3
    if avg_duration > 30:
        score += 5
    elif avg_duration < 5:
        score -= 10
    return int(max(0.0, min(100.0, score)))


def get_source_quality(db: sqlite3.Connection, domain: str = "", days: int = 7, now=None):
    cutoff = cutoff_for(days, now)
    where, args = domain_clause(domain)

    rows = db.execute(
        f"""
        SELECT
            COALESCE(utm_source, '{DIRECT}') AS src,
            COALESCE(utm_medium, '{NONE}') AS med,
            COALESCE(utm_campaign, '{NONE}') AS camp,
            COUNT(DISTINCT session_id || '|' || domain) AS total_visits,
            COUNT(DISTINCT CASE WHEN bot_category IN ('bad_bot', 'good_bot')
                  THEN session_id || '|' || domain END) AS bot_visits,
            COUNT(DISTINCT CASE WHEN bot_category = 'human'
                  THEN session_id || '|' || domain END) AS human_visits,
            AVG(COALESCE(bot_score, 0)) AS avg_bot_score,
            AVG(page_duration / 1000.0) AS avg_duration
        FROM events
        WHERE timestamp >= ?
            AND event_type = 'pageview'
            {where}
        GROUP BY src, med, camp
        HAVING total_visits >= ?
        ORDER BY total_visits DESC
        LIMIT ?
        """,
        [cutoff] + args + [MIN_VISITS, MAX_SOURCES],
    ).fetchall()

    results = []
    for row in rows:
        sq = SourceQuality(
            utm_source=row["src"],
            utm_medium=row["med"],
            utm_campaign=row["camp"],
            total_visits=row["total_visits"],
            bot_visits=row["bot_visits"] or 0,
            human_visits=row["human_visits"] or 0,
            avg_bot_score=row["avg_bot_score"] or 0.0,
            avg_duration=row["avg_duration"] or 0.0,
        )
        if sq.total_visits:
            sq.bot_rate = sq.bot_visits / sq.total_visits * 100
        sq.bounce_rate = _bounce_rate(db, sq, domain, cutoff)
        sq.quality_score = quality_score(sq.bot_rate, sq.avg_bot_score, sq.avg_duration)
        results.append(sq)

    return results


def _bounce_rate(db, sq, domain, cutoff) -> float:
    """
    Percent of sessions for this source tuple with exactly one pageview.
    """
    where, args = domain_clause(domain)
    value = db.execute(
        f"""
        SELECT CAST(SUM(CASE WHEN pv_count = 1 THEN 1 ELSE 0 END) AS REAL)
               / NULLIF(COUNT(*), 0) * 100
        FROM (
            SELECT session_id, COUNT(*) AS pv_count
            FROM events
            WHERE timestamp >= ?
                AND event_type = 'pageview'
                AND COALESCE(utm_source, '{DIRECT}') = ?
                AND COALESCE(utm_medium, '{NONE}') = ?
                AND COALESCE(utm_campaign, '{NONE}') = ?
                {where}
            GROUP BY session_id, domain
        )
        """,
        [cutoff, sq.utm_source, sq.utm_medium, sq.utm_campaign] + args,
    ).fetchone()[0]
    return value or 0.0
