"""
Ad-fraud indicators over stored clicks and pageviews.

Everything here is computed per query and never stored.
"""

import sqlite3
from dataclasses import asdict, dataclass, field

from collector.db import DAY_MS, domain_clause, now_ms

LOW = "low"
MEDIUM = "medium"
HIGH = "high"

WASTE_MIN_BOT_SCORE = 50
CLUSTER_MIN_SHARE = 10.0    # percent of coordinate clicks
CLUSTER_LIMIT = 5
ENGAGED_DURATION_MS = 5000


@dataclass
class FraudSignal:
    type: str
    description: str
    count: int
    severity: str


@dataclass
class FraudSummary:
    total_clicks: int = 0
    bot_clicks: int = 0
    suspicious_clicks: int = 0
    human_clicks: int = 0
    bot_click_rate: float = 0.0
    signals: list = field(default_factory=list)
    estimated_waste: float = 0.0

    def to_dict(self):
        return asdict(self)


def cutoff_for(days: int, now=None) -> int:
    return (now if now is not None else now_ms()) - days * DAY_MS


def get_fraud_summary(db: sqlite3.Connection, domain: str = "", days: int = 7, now=None) -> FraudSummary:
    cutoff = cutoff_for(days, now)
    summary = FraudSummary()

    where, args = domain_clause(domain)
    rows = db.execute(
        f"""
        SELECT bot_category, COUNT(*) AS clicks
        FROM events
        WHERE timestamp >= ?
            AND event_type = 'click'
            {where}
        GROUP BY bot_category
        """,
        [cutoff] + args,
    ).fetchall()

    for row in rows:
        clicks = row["clicks"]
        summary.total_clicks += clicks
        category = row["bot_category"]
        if category == "human":
            summary.human_clicks += clicks
        elif category == "suspicious":
            summary.suspicious_clicks += clicks
        elif category in ("bad_bot", "good_bot"):
            # crawlers don't click ads; a good_bot click is still not a person
            summary.bot_clicks += clicks

    if summary.total_clicks:
        summary.bot_click_rate = (
            (summary.bot_clicks + summary.suspicious_clicks) / summary.total_clicks * 100
        )

    summary.signals.extend(detect_click_without_impression(db, domain, cutoff))
    summary.signals.extend(detect_coordinate_clustering(db, domain, cutoff))
    summary.signals.extend(detect_engagement_mismatch(db, domain, cutoff))
    summary.estimated_waste = estimate_wasted_spend(db, domain, cutoff)
    return summary


def detect_click_without_impression(db, domain, cutoff):
    """
    Sessions where a campaign click has no pageview at or before it.
    """
    where, args = domain_clause(domain, "e.domain")
    count = db.execute(
        f"""
        SELECT COUNT(DISTINCT e.session_id || '|' || e.domain)
        FROM events e
        WHERE e.timestamp >= ?
            AND e.event_type = 'click'
            AND e.utm_source IS NOT NULL
            {where}
            AND NOT EXISTS (
                SELECT 1 FROM events e2
                WHERE e2.session_id = e.session_id
                    AND e2.domain = e.domain
                    AND e2.event_type = 'pageview'
                    AND e2.timestamp <= e.timestamp
            )
        """,
        [cutoff] + args,
    ).fetchone()[0]

    if not count:
        return []
    return [FraudSignal(
        type="click_without_impression",
        description="Clicks from campaign traffic without prior page impression",
        count=count,
        severity=HIGH,
    )]


def detect_coordinate_clustering(db, domain, cutoff):
    """
    Click positions holding more than 10% of all clicks with coordinates.
    """
    where, args = domain_clause(domain)
    total = db.execute(
        f"""
        SELECT COUNT(*) FROM events
        WHERE timestamp >= ?
            AND event_type = 'click'
            AND click_x IS NOT NULL
            AND click_y IS NOT NULL
            {where}
        """,
        [cutoff] + args,
    ).fetchone()[0]
    if not total:
        return []

    rows = db.execute(
        f"""
        SELECT click_x, click_y, COUNT(*) AS click_count
        FROM events
        WHERE timestamp >= ?
            AND event_type = 'click'
            AND click_x IS NOT NULL
            AND click_y IS NOT NULL
            {where}
        GROUP BY click_x, click_y
        HAVING COUNT(*) * 100.0 / ? > ?
        ORDER BY click_count DESC
        LIMIT ?
        """,
        [cutoff] + args + [total, CLUSTER_MIN_SHARE, CLUSTER_LIMIT],
    ).fetchall()

    return [
        FraudSignal(
            type="coordinate_clustering",
            description=(
                f"High concentration of clicks at ({row['click_x']}, {row['click_y']})"
            ),
            count=row["click_count"],
            severity=MEDIUM,
        )
        for row in rows
    ]


def detect_engagement_mismatch(db, domain, cutoff):
    """
    Sessions with a campaign click but no scroll and no page held >5s.
    """
    where, args = domain_clause(domain, "e.domain")
    count = db.execute(
        f"""
        SELECT COUNT(DISTINCT e.session_id || '|' || e.domain)
        FROM events e
        WHERE e.timestamp >= ?
            AND e.event_type = 'click'
            AND e.utm_source IS NOT NULL
            {where}
            AND NOT EXISTS (
                SELECT 1 FROM events e2
                WHERE e2.session_id = e.session_id
                    AND e2.domain = e.domain
                    AND e2.timestamp >= ?
                    AND (e2.has_scroll = 1 OR e2.page_duration > ?)
            )
        """,
        [cutoff] + args + [cutoff, ENGAGED_DURATION_MS],
    ).fetchone()[0]

    if not count:
        return []
    return [FraudSignal(
        type="engagement_mismatch",
        description="Campaign clicks with no scroll or meaningful time on site",
        count=count,
        severity=MEDIUM,
    )]


def estimate_wasted_spend(db, domain, cutoff) -> float:
    """
    CPC paid for high-scoring clicks, in major currency units.
    """
    where, args = domain_clause(domain, "e.domain")
    waste = db.execute(
        f"""
        SELECT COALESCE(SUM(c.cpc), 0)
        FROM events e
        JOIN campaigns c ON (
            (c.utm_source IS NULL OR c.utm_source = e.utm_source)
            AND (c.utm_medium IS NULL OR c.utm_medium = e.utm_medium)
            AND (c.utm_campaign IS NULL OR c.utm_campaign = e.utm_campaign)
        )
        WHERE e.timestamp >= ?
            AND e.event_type = 'click'
            AND e.bot_score >= ?
            {where}
        """,
        [cutoff, WASTE_MIN_BOT_SCORE] + args,
    ).fetchone()[0]
    return (waste or 0) / 100
