"""
Campaigns and their spend/fraud report.

Prices (cpc, cpm, budget) are stored in minor currency units; report money
fields are in major units.
"""

import secrets
import sqlite3
from dataclasses import asdict, dataclass
from typing import Optional

from collector.db import domain_clause, now_ms

UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign")


class CampaignNotFound(LookupError):
    pass


@dataclass
class Campaign:
    id: str
    name: str
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    cpc: float = 0.0
    cpm: float = 0.0
    budget: float = 0.0
    start_date: Optional[int] = None
    end_date: Optional[int] = None
    created_at: int = 0

    @classmethod
    def from_row(cls, row):
        return cls(**{k: row[k] for k in row.keys()})

    def to_dict(self):
        return asdict(self)


@dataclass
class CampaignReport:
    campaign: Campaign
    total_clicks: int = 0
    bot_clicks: int = 0
    human_clicks: int = 0
    suspicious_clicks: int = 0
    total_impressions: int = 0
    bot_impressions: int = 0
    total_spend: float = 0.0
    wasted_spend: float = 0.0
    valid_spend: float = 0.0
    fraud_rate: float = 0.0
    roi_impact: float = 0.0

    def to_dict(self):
        return asdict(self)


def _number(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _optional_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _utm(value):
    if value is None:
        return None
    value = str(value).strip()
    return value[:255] or None


# -----------------------------------------------------------------------------
# CRUD
# -----------------------------------------------------------------------------
def create_campaign(db: sqlite3.Connection, payload: dict) -> Campaign:
    """
    Insert a campaign from an API payload. Unset UTM fields match anything.
    """
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("Campaign name is required")

    campaign = Campaign(
        id="cmp_" + secrets.token_hex(8),
        name=name[:200],
        utm_source=_utm(payload.get("utm_source")),
        utm_medium=_utm(payload.get("utm_medium")),
        utm_campaign=_utm(payload.get("utm_campaign")),
        cpc=_number(payload.get("cpc")),
        cpm=_number(payload.get("cpm")),
        budget=_number(payload.get("budget")),
        start_date=_optional_int(payload.get("start_date")),
        end_date=_optional_int(payload.get("end_date")),
        created_at=now_ms(),
    )
    with db:
        db.execute(
            """
            INSERT INTO campaigns (id, name, utm_source, utm_medium, utm_campaign,
                                   cpc, cpm, budget, start_date, end_date, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                campaign.id, campaign.name,
                campaign.utm_source, campaign.utm_medium, campaign.utm_campaign,
                campaign.cpc, campaign.cpm, campaign.budget,
                campaign.start_date, campaign.end_date, campaign.created_at,
            ),
        )
    return campaign


def list_campaigns(db: sqlite3.Connection):
    rows = db.execute("SELECT * FROM campaigns ORDER BY created_at DESC, id").fetchall()
    return [Campaign.from_row(row) for row in rows]


def get_campaign(db: sqlite3.Connection, campaign_id: str) -> Campaign:
    row = db.execute("SELECT * FROM campaigns WHERE id = ?", (campaign_id,)).fetchone()
    if row is None:
        raise CampaignNotFound(campaign_id)
    return Campaign.from_row(row)


def delete_campaign(db: sqlite3.Connection, campaign_id: str):
    with db:
        cur = db.execute("DELETE FROM campaigns WHERE id = ?", (campaign_id,))
    if cur.rowcount == 0:
        raise CampaignNotFound(campaign_id)


# -----------------------------------------------------------------------------
# Report
# -----------------------------------------------------------------------------
def get_campaign_report(db: sqlite3.Connection, campaign_id: str, domain: str = "") -> CampaignReport:
    campaign = get_campaign(db, campaign_id)
    report = CampaignReport(campaign=campaign)

    conditions, args = [], []
    for name in UTM_FIELDS:
        value = getattr(campaign, name)
        if value is not None:
            conditions.append(f"{name} = ?")
            args.append(value)

    # without a UTM filter a campaign would match all traffic
    if not conditions:
        return report

    utm_where = "".join(f" AND {cond}" for cond in conditions)
    where, domain_args = domain_clause(domain)

    clicks = db.execute(
        f"""
        SELECT
            COUNT(*) AS total_clicks,
            SUM(CASE WHEN bot_category = 'bad_bot' THEN 1 ELSE 0 END) AS bot_clicks,
            SUM(CASE WHEN bot_category = 'human' THEN 1 ELSE 0 END) AS human_clicks,
            SUM(CASE WHEN bot_category = 'suspicious' THEN 1 ELSE 0 END) AS suspicious_clicks
        FROM events
        WHERE event_type = 'click'{utm_where}{where}
        """,
        args + domain_args,
    ).fetchone()
    report.total_clicks = clicks["total_clicks"] or 0
    report.bot_clicks = clicks["bot_clicks"] or 0
    report.human_clicks = clicks["human_clicks"] or 0
    report.suspicious_clicks = clicks["suspicious_clicks"] or 0

    impressions = db.execute(
        f"""
        SELECT
            COUNT(*) AS total_impressions,
            SUM(CASE WHEN bot_category IN ('bad_bot', 'good_bot') THEN 1 ELSE 0 END) AS bot_impressions
        FROM events
        WHERE event_type = 'pageview'{utm_where}{where}
        """,
        args + domain_args,
    ).fetchone()
    report.total_impressions = impressions["total_impressions"] or 0
    report.bot_impressions = impressions["bot_impressions"] or 0

    cpc = campaign.cpc or 0.0
    cpm = campaign.cpm or 0.0
    if cpc > 0:
        report.total_spend = report.total_clicks * cpc / 100
        report.wasted_spend = (report.bot_clicks + report.suspicious_clicks) * cpc / 100
        report.valid_spend = report.human_clicks * cpc / 100
    if cpm > 0:
        imp_spend = report.total_impressions * cpm / 1000 / 100
        wasted_imp_spend = report.bot_impressions * cpm / 1000 / 100
        report.total_spend += imp_spend
        report.wasted_spend += wasted_imp_spend
        report.valid_spend += imp_spend - wasted_imp_spend

    fraud_traffic = report.bot_clicks + report.suspicious_clicks + report.bot_impressions
    total_traffic = report.total_clicks + report.total_impressions
    if total_traffic:
        report.fraud_rate = fraud_traffic / total_traffic * 100
    if report.total_spend:
        report.roi_impact = report.wasted_spend / report.total_spend * 100

    return report
