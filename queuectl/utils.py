import logging
import secrets
from datetime import datetime, timezone

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s"


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def generate_job_id() -> str:
    """64 random bits, hex encoded."""
    return secrets.token_hex(8)


def configure_logging(verbosity: int = 0):
    level = logging.DEBUG if verbosity > 0 else logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)
