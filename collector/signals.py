"""
Signal catalog for bot scoring.

Static tables only: weights, category tokens, the known-good crawler list and
scanner path prefixes, plus the JSON codec for persisted signal lists.
"""

import json
import re
from dataclasses import dataclass

# -----------------------------------------------------------------------------
# Categories
# -----------------------------------------------------------------------------
HUMAN = "human"
SUSPICIOUS = "suspicious"
BAD_BOT = "bad_bot"
GOOD_BOT = "good_bot"

# good_bot is an override, not a rung on this ladder
_CATEGORY_RANK = {HUMAN: 0, SUSPICIOUS: 1, BAD_BOT: 2}

HUMAN_MAX_SCORE = 20
SUSPICIOUS_MAX_SCORE = 50
MAX_SCORE = 100

# -----------------------------------------------------------------------------
# Weights
# -----------------------------------------------------------------------------
WEIGHT_WEBDRIVER = 30          # navigator.webdriver
WEIGHT_HEADLESS_BROWSER = 25   # HeadlessChrome, PhantomJS
WEIGHT_EMPTY_UA = 20
WEIGHT_MISSING_HEADERS = 15    # no Accept-Language
WEIGHT_DATACENTER_IP = 15
WEIGHT_AUTOMATION_UA = 35      # puppeteer, selenium, ...
WEIGHT_SHORT_UA = 10           # <50 chars, no browser token
WEIGHT_SCREEN_ANOMALY = 15     # 0x0 screen
WEIGHT_NO_PLUGINS = 5
WEIGHT_NO_LANGUAGES = 5
WEIGHT_SUSPICIOUS_PATH = 30

# behavioral patterns, applied by the reclassifier
WEIGHT_ZERO_INTERACTION = 25
WEIGHT_IMPOSSIBLE_SPEED = 30
WEIGHT_PERFECT_TIMING = 20

AUTOMATION_TOKENS = ("puppeteer", "selenium", "webdriver", "playwright", "cypress")
HEADLESS_TOKENS = ("headlesschrome", "phantomjs")
BROWSER_TOKENS = ("mozilla", "chrome", "safari", "firefox", "edge", "opera")
SHORT_UA_LENGTH = 50


@dataclass(frozen=True)
class Signal:
    name: str
    weight: int
    value: str = ""

    def to_dict(self):
        out = {"name": self.name, "weight": self.weight}
        if self.value:
            out["value"] = self.value
        return out


# -----------------------------------------------------------------------------
# Known good crawlers (name, pattern)
# -----------------------------------------------------------------------------
def _bot(name, pattern):
    return name, re.compile(pattern, re.IGNORECASE)


GOOD_BOTS = (
    # search engines
    _bot("Googlebot", r"googlebot|google\s*web\s*preview|mediapartners-google|adsbot-google"),
    _bot("Bingbot", r"bingbot|msnbot|bingpreview"),
    _bot("Yahoo Slurp", r"slurp|yahoo"),
    _bot("DuckDuckBot", r"duckduckbot|duckduckgo"),
    _bot("Baiduspider", r"baiduspider|baidu"),
    _bot("Yandexbot", r"yandexbot|yandex"),
    # social media
    _bot("Facebookbot", r"facebookexternalhit|facebot|facebook"),
    _bot("Twitterbot", r"twitterbot|twitter"),
    _bot("LinkedInBot", r"linkedinbot|linkedin"),
    _bot("Pinterest", r"pinterest"),
    _bot("WhatsApp", r"whatsapp"),
    _bot("Telegram", r"telegrambot"),
    _bot("Discord", r"discordbot"),
    _bot("Slack", r"slackbot|slack-imgproxy"),
    # SEO tools
    _bot("Ahrefs", r"ahrefsbot"),
    _bot("Semrush", r"semrushbot"),
    _bot("Moz", r"rogerbot|moz\.com"),
    # monitoring
    _bot("Pingdom", r"pingdom"),
    _bot("UptimeRobot", r"uptimerobot"),
    _bot("StatusCake", r"statuscake"),
    _bot("GTmetrix", r"gtmetrix"),
    # feed readers
    _bot("Feedly", r"feedly"),
    _bot("Feedbin", r"feedbin"),
    # archivers and others
    _bot("Apple Bot", r"applebot"),
    _bot("Archive.org", r"archive\.org|ia_archiver"),
)

SUSPICIOUS_PATH_PREFIXES = (
    "/wp-admin", "/wp-login", "/wp-includes", "/wp-content/uploads",
    "/xmlrpc.php",
    "/.env", "/.git", "/.svn", "/.htaccess", "/.htpasswd",
    "/cgi-bin", "/shell", "/cmd", "/eval",
    "/phpmyadmin", "/pma", "/myadmin",
    "/admin/config", "/backup", "/dump",
)


def good_bot_name(user_agent: str) -> str:
    """
    Name of the known crawler matching this user-agent, or "".
    """
    if not user_agent:
        return ""
    for name, pattern in GOOD_BOTS:
        if pattern.search(user_agent):
            return name
    return ""


# -----------------------------------------------------------------------------
# Category helpers
# -----------------------------------------------------------------------------
def category_for_score(score: int) -> str:
    if score <= HUMAN_MAX_SCORE:
        return HUMAN
    if score <= SUSPICIOUS_MAX_SCORE:
        return SUSPICIOUS
    return BAD_BOT


def escalate_category(current: str, candidate: str) -> str:
    """
    The more bot-like of two categories under human < suspicious < bad_bot.
    Unknown or legacy values rank as human.
    """
    if _CATEGORY_RANK.get(candidate, 0) > _CATEGORY_RANK.get(current, 0):
        return candidate
    return current if current in _CATEGORY_RANK else candidate


def clamp_score(score: int) -> int:
    return max(0, min(MAX_SCORE, score))


# -----------------------------------------------------------------------------
# Persisted signal lists
# -----------------------------------------------------------------------------
def signals_to_json(signals) -> str:
    return json.dumps([s.to_dict() for s in signals], separators=(",", ":"))


def signals_from_json(raw) -> list:
    """
    Decode a stored signal list. Malformed blobs decode to [].
    """
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(items, list):
        return []

    out = []
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        try:
            weight = int(item.get("weight", 0))
        except (TypeError, ValueError):
            weight = 0
        out.append(Signal(str(item["name"]), weight, str(item.get("value") or "")))
    return out
