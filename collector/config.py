import logging
import os

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
DB_PATH = os.environ.get("ANALYTICS_DB", "analytics.sqlite3")
DASH_TOKEN = os.environ.get("ANALYTICS_DASH_TOKEN", "changeme")
IP_SALT = os.environ.get("ANALYTICS_IP_SALT", "please-change-me-and-keep-secret")
RETENTION_DAYS = int(os.environ.get("ANALYTICS_RETENTION_DAYS", "180"))
GEOIP_DB_PATH = os.environ.get("GEOIP_DB_PATH", "/geoip/GeoLite2-Country.mmdb")

# CORS allowlist for sites that post events cross-origin
CORS_ALLOW_ORIGINS = os.environ.get(
    "CORS_ALLOW_ORIGINS",
    "https://mbh.photos"
).split(",")
CORS_ALLOW_ORIGINS = [o.strip() for o in CORS_ALLOW_ORIGINS if o.strip()]

# Hosting/cloud ranges, e.g. "3.0.0.0/9,34.64.0.0/10"
DATACENTER_RANGES = [
    r.strip() for r in os.environ.get("DATACENTER_RANGES", "").split(",") if r.strip()
]

# Behavioral reclassification. RECLASSIFY_ENABLED only gates the in-process task
# started by `python -m collector.app`; under gunicorn run `flask reclassify --loop`.
RECLASSIFY_ENABLED = os.environ.get("RECLASSIFY_ENABLED", "1") == "1"
RECLASSIFY_INTERVAL_SECONDS = int(os.environ.get("RECLASSIFY_INTERVAL_SECONDS", "900"))
RECLASSIFY_WINDOW_SECONDS = int(os.environ.get("RECLASSIFY_WINDOW_SECONDS", "900"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level=None):
    """
    Configure the root logger once. Later calls only adjust the level.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel(level or LOG_LEVEL)
