"""
Edit-and-sync configuration.
All settings come from environment variables with safe defaults.
"""

import os
from pathlib import Path

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/corrections.db")

# Import-time snapshot; debug_enabled() re-reads the environment
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Undo stack
UNDO_STACK_SIZE = int(os.getenv("UNDO_STACK_SIZE", "20"))

# Draft recovery
AUTOSAVE_DEBOUNCE_SEC = float(os.getenv("AUTOSAVE_DEBOUNCE_SEC", "1.0"))
DRAFT_TTL_SEC = int(os.getenv("DRAFT_TTL_SEC", str(24 * 60 * 60)))  # 24 hours

# Offline queue
QUEUE_BASE_DELAY_SEC = float(os.getenv("QUEUE_BASE_DELAY_SEC", "2.0"))
QUEUE_MAX_DELAY_SEC = float(os.getenv("QUEUE_MAX_DELAY_SEC", "60.0"))
QUEUE_POLL_INTERVAL_SEC = float(os.getenv("QUEUE_POLL_INTERVAL_SEC", "30.0"))
QUEUE_MAX_SIZE = int(os.getenv("QUEUE_MAX_SIZE", "50"))
QUEUE_MAX_ATTEMPTS = int(os.getenv("QUEUE_MAX_ATTEMPTS", "3"))
PENDING_TTL_SEC = int(os.getenv("PENDING_TTL_SEC", str(7 * 24 * 60 * 60)))  # 7 days

# Remote record store
API_BASE_URL = os.getenv("API_BASE_URL", "http://127.0.0.1:8000")
API_TIMEOUT_SEC = float(os.getenv("API_TIMEOUT_SEC", "10.0"))
CORRECTED_BY = os.getenv("CORRECTED_BY", "inline-edit")

# Persistent key/value namespace: {prefix}:{version}:{type}:{identifier}
STORAGE_PREFIX = "correction-ui"
STORAGE_VERSION = "v1"
DRAFT_STORAGE_KEY = f"{STORAGE_PREFIX}:{STORAGE_VERSION}:draft:current"
QUEUE_STORAGE_KEY = f"{STORAGE_PREFIX}:{STORAGE_VERSION}:pending:queue"

# Version string
VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_undo_stack_size():
    """Get the undo stack cap."""
    return UNDO_STACK_SIZE


def get_backoff_bounds():
    """Get (base, max) retry delay in seconds for the offline queue."""
    return QUEUE_BASE_DELAY_SEC, QUEUE_MAX_DELAY_SEC


def validate_sync_config():
    """Validate sync configuration and return any issues."""
    issues = []

    if UNDO_STACK_SIZE < 1:
        issues.append("UNDO_STACK_SIZE must be >= 1")

    if AUTOSAVE_DEBOUNCE_SEC < 0:
        issues.append("AUTOSAVE_DEBOUNCE_SEC must be >= 0")

    if QUEUE_BASE_DELAY_SEC <= 0:
        issues.append("QUEUE_BASE_DELAY_SEC must be > 0")

    if QUEUE_MAX_DELAY_SEC < QUEUE_BASE_DELAY_SEC:
        issues.append("QUEUE_MAX_DELAY_SEC must be >= QUEUE_BASE_DELAY_SEC")

    if QUEUE_POLL_INTERVAL_SEC <= 0:
        issues.append("QUEUE_POLL_INTERVAL_SEC must be > 0")

    if QUEUE_MAX_SIZE < 1:
        issues.append("QUEUE_MAX_SIZE must be >= 1")

    if QUEUE_MAX_ATTEMPTS < 1:
        issues.append("QUEUE_MAX_ATTEMPTS must be >= 1")

    return issues
