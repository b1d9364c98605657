import os

db_url = os.environ.get("DB_URL", "sqlite://:memory:")
users_ms_url = os.environ.get("USERS_MS_URL", "http://localhost:8000")
catalog_ms_url = os.environ.get("CATALOG_MS_URL", "http://localhost:8001")
notifications_ms_url = os.environ.get("NOTIFICATIONS_MS_URL", "http://localhost:8004")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "60"))
SEARCH_TIMEOUT_HOURS = float(os.environ.get("SEARCH_TIMEOUT_HOURS", "6"))
CAS_MAX_ATTEMPTS = int(os.environ.get("CAS_MAX_ATTEMPTS", "5"))
REJECT_ALERT_THRESHOLD = int(os.environ.get("REJECT_ALERT_THRESHOLD", "3"))
REJECT_ALERT_WINDOW_HOURS = float(os.environ.get("REJECT_ALERT_WINDOW_HOURS", "24"))
OPERATOR_CATEGORY = os.environ.get("OPERATOR_CATEGORY", "Drivers")
