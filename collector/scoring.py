"""
Real-time bot scoring.

score() runs inline with ingestion: it is pure, does no I/O and always
returns a result. Missing client signals or headers count as no evidence.
"""

from dataclasses import dataclass, field, replace

from collector import signals as sig
from collector.signals import Signal


@dataclass
class ClientSignals:
    """Flags reported by the tracking script."""
    webdriver: bool = False
    phantom: bool = False
    selenium: bool = False
    headless: bool = False
    plugins: int = 0
    languages: int = 0
    screen_width: int = 0
    screen_height: int = 0

    @classmethod
    def from_payload(cls, data):
        """
        Build from the JSON object the client posts. Malformed numbers are 0.
        """
        if not isinstance(data, dict):
            return None
        return cls(
            webdriver=_as_bool(data.get("webdriver")),
            phantom=_as_bool(data.get("phantom")),
            selenium=_as_bool(data.get("selenium")),
            headless=_as_bool(data.get("headless")),
            plugins=_as_int(data.get("plugins")),
            languages=_as_int(data.get("languages")),
            screen_width=_as_int(data.get("screen_width")),
            screen_height=_as_int(data.get("screen_height")),
        )


@dataclass
class ScoringResult:
    score: int = 0
    category: str = sig.HUMAN
    signals: list = field(default_factory=list)
    is_bot: bool = False

    def signals_json(self) -> str:
        return sig.signals_to_json(self.signals)


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    try:
        return bool(value) and float(value) != 0
    except (TypeError, ValueError):
        return False


def _as_int(value) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def _has_header(headers, name: str) -> bool:
    wanted = name.lower()
    return any(str(key).lower() == wanted for key in headers.keys())


def score(user_agent, client_signals=None, is_datacenter_ip=False, headers=None) -> ScoringResult:
    user_agent = user_agent or ""

    bot_name = sig.good_bot_name(user_agent)
    if bot_name:
        return ScoringResult(
            score=0,
            category=sig.GOOD_BOT,
            signals=[Signal("known_good_bot", 0, bot_name)],
            is_bot=True,
        )

    found = []
    ua = user_agent.lower()

    if not user_agent:
        found.append(Signal("empty_ua", sig.WEIGHT_EMPTY_UA))
    else:
        for token in sig.AUTOMATION_TOKENS:
            if token in ua:
                found.append(Signal("automation_ua", sig.WEIGHT_AUTOMATION_UA, token))
                break

        if any(token in ua for token in sig.HEADLESS_TOKENS):
            found.append(Signal("headless_browser", sig.WEIGHT_HEADLESS_BROWSER))

        if len(user_agent) < sig.SHORT_UA_LENGTH and not any(t in ua for t in sig.BROWSER_TOKENS):
            found.append(Signal("short_ua", sig.WEIGHT_SHORT_UA))

    if client_signals is not None:
        if client_signals.webdriver:
            found.append(Signal("webdriver", sig.WEIGHT_WEBDRIVER))
        if client_signals.phantom:
            found.append(Signal("phantom", sig.WEIGHT_HEADLESS_BROWSER))
        if client_signals.selenium:
            found.append(Signal("selenium", sig.WEIGHT_AUTOMATION_UA))
        if client_signals.headless:
            found.append(Signal("headless", sig.WEIGHT_HEADLESS_BROWSER))
        # only a 0x0 screen counts; other odd sizes are ignored
        if client_signals.screen_width == 0 and client_signals.screen_height == 0:
            found.append(Signal("screen_anomaly", sig.WEIGHT_SCREEN_ANOMALY))
        if client_signals.plugins == 0:
            found.append(Signal("no_plugins", sig.WEIGHT_NO_PLUGINS))
        if client_signals.languages == 0:
            found.append(Signal("no_languages", sig.WEIGHT_NO_LANGUAGES))

    if is_datacenter_ip:
        found.append(Signal("datacenter_ip", sig.WEIGHT_DATACENTER_IP))

    if headers is not None and not _has_header(headers, "Accept-Language"):
        found.append(Signal("missing_accept_language", sig.WEIGHT_MISSING_HEADERS))

    total = sig.clamp_score(sum(s.weight for s in found))
    return ScoringResult(
        score=total,
        category=sig.category_for_score(total),
        signals=found,
        is_bot=total > sig.SUSPICIOUS_MAX_SCORE,
    )


def score_suspicious_path(path):
    """
    Flag scanner/exploit probes. Returns one Signal or None.
    """
    if not path:
        return None
    p = path.lower()

    for prefix in sig.SUSPICIOUS_PATH_PREFIXES:
        if p.startswith(prefix):
            return Signal("suspicious_path", sig.WEIGHT_SUSPICIOUS_PATH, prefix)

    if p.endswith(".php"):
        return Signal("suspicious_path", sig.WEIGHT_SUSPICIOUS_PATH, ".php")

    return None


def apply_path_signal(result: ScoringResult, path_signal) -> ScoringResult:
    """
    Fold a path signal into a scoring result. Known good bots keep their
    override.
    """
    if path_signal is None or result.category == sig.GOOD_BOT:
        return result
    total = sig.clamp_score(result.score + path_signal.weight)
    return replace(
        result,
        score=total,
        category=sig.category_for_score(total),
        signals=result.signals + [path_signal],
        is_bot=total > sig.SUSPICIOUS_MAX_SCORE,
    )
