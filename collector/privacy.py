import hashlib
import hmac
import ipaddress
import logging
import os
from datetime import datetime, timezone
from urllib.parse import urlparse

import geoip2.database
import geoip2.errors

from collector.config import DATACENTER_RANGES, GEOIP_DB_PATH, IP_SALT

logger = logging.getLogger(__name__)

_DATACENTER_NETWORKS = []
for _cidr in DATACENTER_RANGES:
    try:
        _DATACENTER_NETWORKS.append(ipaddress.ip_network(_cidr, strict=False))
    except ValueError:
        logger.warning("Ignoring invalid datacenter range %r", _cidr)
_DATACENTER_NETWORKS = tuple(_DATACENTER_NETWORKS)

geoip_reader = None
def get_geoip_reader():
    global geoip_reader
    if geoip_reader is None:
        if os.path.exists(GEOIP_DB_PATH):
            geoip_reader = geoip2.database.Reader(GEOIP_DB_PATH)
        else:
            geoip_reader = None
    return geoip_reader


# -----------------------------------------------------------------------------
# Privacy helpers
# -----------------------------------------------------------------------------
def _digest(*parts: str) -> str:
    msg = "|".join(parts).encode("utf-8")
    return hmac.new(IP_SALT.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def truncate_ip(raw_ip: str):
    """
    Keep /16 of IPv4 or /32 of IPv6. Returns (version, truncated) or None.
    """
    try:
        ip_obj = ipaddress.ip_address(raw_ip)
    except ValueError:
        return None

    if isinstance(ip_obj, ipaddress.IPv4Address):
        octets = str(ip_obj).split(".")
        return "v4", f"{octets[0]}.{octets[1]}.0.0"

    as_int = int(ip_obj)
    mask = (2**128 - 1) ^ (2**96 - 1)
    return "v6", ipaddress.IPv6Address(as_int & mask).exploded


def anonymize_ip(raw_ip: str) -> str:
    """
    Bucket/truncate IP then HMAC with secret salt.
    Returns something like "v4:abcd1234..." or "v6:abcd1234...".
    """
    truncated = truncate_ip(raw_ip)
    if truncated is None:
        return "invalid"
    version, bucket = truncated
    return f"{version}:{_digest(bucket)[:16]}"


def visitor_hash(raw_ip: str, user_agent: str, day=None) -> str:
    """
    Daily-rotating visitor id from the IP bucket and user-agent. Nothing
    here survives past midnight UTC.
    """
    day = day or datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return _digest(anonymize_ip(raw_ip), user_agent or "", day)[:32]


def fallback_session_id(visitor: str, domain: str, hour=None) -> str:
    """
    Server-side session id for clients that send none: one per visitor,
    domain and hour.
    """
    hour = hour or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H")
    return "s_" + _digest(visitor, domain, hour)[:24]


def is_datacenter_ip(raw_ip: str) -> bool:
    if not raw_ip or not _DATACENTER_NETWORKS:
        return False
    try:
        ip_obj = ipaddress.ip_address(raw_ip)
    except ValueError:
        return False
    return any(ip_obj in net for net in _DATACENTER_NETWORKS if net.version == ip_obj.version)


def client_ip(req) -> str:
    """
    First hop of X-Forwarded-For, else the socket peer.
    """
    forwarded = req.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return req.remote_addr or ""


def parse_user_agent(ua: str):
    """
    Rough browser + OS classification (coarse on purpose).
    """
    ua_lower = (ua or "").lower()

    # browser
    if "firefox" in ua_lower and "seamonkey" not in ua_lower:
        browser = "Firefox"
    elif "chrome" in ua_lower and "chromium" not in ua_lower and "edg" not in ua_lower:
        browser = "Chrome"
    elif "safari" in ua_lower and "chrome" not in ua_lower:
        browser = "Safari"
    elif "edg" in ua_lower:
        browser = "Edge"
    elif "chromium" in ua_lower:
        browser = "Chromium"
    else:
        browser = "Other"

    # OS
    if "windows" in ua_lower:
        os_name = "Windows"
    elif "mac os x" in ua_lower or "macintosh" in ua_lower:
        os_name = "macOS"
    elif "android" in ua_lower:
        os_name = "Android"
    elif "iphone" in ua_lower or "ipad" in ua_lower or "ios" in ua_lower:
        os_name = "iOS"
    elif "linux" in ua_lower:
        os_name = "Linux"
    else:
        os_name = "Other"

    return browser, os_name


def sanitize_referrer(raw_ref):
    """
    Keep only the hostname of Referer. (Don't store full URL/query/etc.)
    """
    if not raw_ref:
        return None
    try:
        return urlparse(raw_ref).hostname
    except ValueError:
        return None


def get_country_from_ip(raw_ip: str) -> str:
    """
    Return ISO country code from IP using local MaxMind DB.
    Store only the 2-letter code, never the full IP.
    """
    reader = get_geoip_reader()
    if reader is None or not raw_ip:
        return "UNK"
    try:
        resp = reader.country(raw_ip)
        code = resp.country.iso_code or resp.registered_country.iso_code
        return code if code else "UNK"
    except (geoip2.errors.AddressNotFoundError, ValueError):
        return "UNK"
