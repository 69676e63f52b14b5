"""
Runtime configuration for the NoCheck reconciliation core.
Every setting is read from the environment (optionally via a .env file).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/nocheck.db")
OFFLINE_DB_PATH = os.getenv("OFFLINE_DB_PATH", "./data/offline_queue.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# External collaborators (empty string = not configured)
MEDIA_UPLOAD_URL = os.getenv("MEDIA_UPLOAD_URL", "")
EMAIL_API_URL = os.getenv("EMAIL_API_URL", "")
TEAMS_WEBHOOK_URL = os.getenv("TEAMS_WEBHOOK_URL", "")
APP_URL = os.getenv("APP_URL", "http://localhost:3000")
HTTP_TIMEOUT_SEC = float(os.getenv("HTTP_TIMEOUT_SEC", "10"))

# Media materializer
MEDIA_UPLOAD_RETRIES = int(os.getenv("MEDIA_UPLOAD_RETRIES", "3"))
MEDIA_RETRY_DELAY_SEC = float(os.getenv("MEDIA_RETRY_DELAY_SEC", "2"))
MEDIA_UPLOAD_WORKERS = int(os.getenv("MEDIA_UPLOAD_WORKERS", "4"))

# Cross validation
RECONCILABLE_CATEGORY = os.getenv("RECONCILABLE_CATEGORY", "recebimento")
CROSS_VALIDATION_TOLERANCE = float(os.getenv("CROSS_VALIDATION_TOLERANCE", "0.01"))
SIBLING_WINDOW_MINUTES = int(os.getenv("SIBLING_WINDOW_MINUTES", "30"))
SIBLING_TIGHT_WINDOW_MINUTES = int(os.getenv("SIBLING_TIGHT_WINDOW_MINUTES", "10"))
PAIR_EXPIRY_MINUTES = int(os.getenv("PAIR_EXPIRY_MINUTES", "60"))

# Non-conformity escalation
RECURRENCE_LOOKBACK_DAYS = int(os.getenv("RECURRENCE_LOOKBACK_DAYS", "90"))
RECURRENCE_ESCALATION_THRESHOLD = int(os.getenv("RECURRENCE_ESCALATION_THRESHOLD", "3"))

# Heartbeat (periodic sweeps) - default disabled
HEARTBEAT_ENABLED = os.getenv("HEARTBEAT_ENABLED", "false").lower() == "true"
HEARTBEAT_INTERVAL_SEC = int(os.getenv("HEARTBEAT_INTERVAL_SEC", "60"))

VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(path: str = None):
    """Ensure the directory holding a database file exists."""
    Path(path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def is_heartbeat_enabled():
    """Check if heartbeat system is enabled."""
    return HEARTBEAT_ENABLED


def get_heartbeat_interval():
    """Get heartbeat interval in seconds."""
    return HEARTBEAT_INTERVAL_SEC


def validate_heartbeat_config():
    """Validate heartbeat configuration and return any issues."""
    issues = []

    if HEARTBEAT_INTERVAL_SEC < 1:
        issues.append("HEARTBEAT_INTERVAL_SEC must be >= 1")

    if PAIR_EXPIRY_MINUTES < SIBLING_WINDOW_MINUTES:
        issues.append("PAIR_EXPIRY_MINUTES must be >= SIBLING_WINDOW_MINUTES")

    return issues


def validate_engine_config():
    """Validate reconciliation/escalation tunables and return any issues."""
    issues = []

    if CROSS_VALIDATION_TOLERANCE < 0:
        issues.append("CROSS_VALIDATION_TOLERANCE must be >= 0")

    if SIBLING_TIGHT_WINDOW_MINUTES > SIBLING_WINDOW_MINUTES:
        issues.append("SIBLING_TIGHT_WINDOW_MINUTES must be <= SIBLING_WINDOW_MINUTES")

    if RECURRENCE_LOOKBACK_DAYS < 1:
        issues.append("RECURRENCE_LOOKBACK_DAYS must be >= 1")

    if MEDIA_UPLOAD_RETRIES < 1:
        issues.append("MEDIA_UPLOAD_RETRIES must be >= 1")

    if MEDIA_UPLOAD_WORKERS < 1:
        issues.append("MEDIA_UPLOAD_WORKERS must be >= 1")

    return issues
