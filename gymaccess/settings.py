"""
Runtime configuration for the access-control service.

Every value can be overridden through an environment variable.
"""
import os


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# Database
DATABASE_URL = os.getenv("GYMACCESS_DATABASE_URL", "sqlite:///./gymaccess.db")

# Device liveness
HEARTBEAT_TTL_SECONDS = int(os.getenv("GYMACCESS_HEARTBEAT_TTL_SECONDS", "120"))
DEFAULT_RELAY_DELAY = int(os.getenv("GYMACCESS_DEFAULT_RELAY_DELAY", "5"))

# Biometric sync retry policy
SYNC_MAX_RETRIES = int(os.getenv("GYMACCESS_SYNC_MAX_RETRIES", "5"))
SYNC_BACKOFF_BASE_SECONDS = int(os.getenv("GYMACCESS_SYNC_BACKOFF_BASE_SECONDS", "30"))
SYNC_BACKOFF_MAX_SECONDS = int(os.getenv("GYMACCESS_SYNC_BACKOFF_MAX_SECONDS", "3600"))

# Background maintenance (liveness sweep + sync retries)
ENABLE_MAINTENANCE = _env_bool("GYMACCESS_ENABLE_MAINTENANCE", "1")
MAINTENANCE_INTERVAL_SECONDS = int(os.getenv("GYMACCESS_MAINTENANCE_INTERVAL_SECONDS", "30"))

# Enrollment photos
MEDIA_DIR = os.getenv("GYMACCESS_MEDIA_DIR", "./media")
MEDIA_URL = os.getenv("GYMACCESS_MEDIA_URL", "/media")

# Access event listing
ACCESS_EVENT_LIMIT = int(os.getenv("GYMACCESS_ACCESS_EVENT_LIMIT", "50"))

# Lead capture
WEBHOOK_LEAD_SECRET = os.getenv("GYMACCESS_WEBHOOK_LEAD_SECRET")
MAX_LEAD_BODY_BYTES = int(os.getenv("GYMACCESS_MAX_LEAD_BODY_BYTES", "10240"))

# Logging
LOG_FILE = os.getenv("GYMACCESS_LOG_FILE", "gymaccess.log")
LOG_MAX_SIZE = int(os.getenv("GYMACCESS_LOG_MAX_SIZE", str(20 * 1024 * 1024)))
LOG_BACKUP_COUNT = int(os.getenv("GYMACCESS_LOG_BACKUP_COUNT", "5"))
