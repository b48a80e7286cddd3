"""
Configuration constants for the academic alert service.

All tunables live here so thresholds and batch sizing can be adjusted as
policy changes. Every value can be overridden with an environment variable
of the same name.
"""

import os


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


# =============================================================================
# STORAGE & LOGGING
# =============================================================================

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./academic_alerts.db")
LOG_FILE = os.getenv("LOG_FILE", "api.log")


# =============================================================================
# ACADEMIC ALERTING
# =============================================================================

# A student is alerted when the GPA drops from at-or-above this value to
# below it. Staying below does not re-alert.
GPA_ALERT_THRESHOLD = _env_float("GPA_ALERT_THRESHOLD", 2.0)

# Grade points per letter grade. A+ is capped at 4.0.
GRADE_POINTS = {
    "A+": 4.0, "A": 4.0, "A-": 3.7, "B+": 3.3, "B": 3.0, "B-": 2.7,
    "C+": 2.3, "C": 2.0, "C-": 1.7, "D+": 1.3, "D": 1.0, "F": 0.0,
}


# =============================================================================
# BATCH RECOMPUTATION
# =============================================================================

BATCH_CHUNK_SIZE = _env_int("BATCH_CHUNK_SIZE", 500)

# Seconds to sleep between chunks so interactive writes get the database
BATCH_CHUNK_PAUSE = _env_float("BATCH_CHUNK_PAUSE", 0.05)

# 0 disables the timer; batches then only run when triggered manually
BATCH_INTERVAL_SECONDS = _env_float("BATCH_INTERVAL_SECONDS", 0)


# =============================================================================
# NOTIFICATIONS
# =============================================================================

DISPATCH_WORKERS = _env_int("DISPATCH_WORKERS", 4)
CHANNEL_MAX_RETRIES = _env_int("CHANNEL_MAX_RETRIES", 5)
NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL") or None

# Seconds between retries of alerts the channel deferred; 0 disables the loop
REDELIVERY_INTERVAL_SECONDS = _env_float("REDELIVERY_INTERVAL_SECONDS", 30)


# =============================================================================
# EXTERNAL SERVICES
# =============================================================================

IDENTITY_VERIFICATION_URL = os.getenv("IDENTITY_VERIFICATION_URL") or None
HTTP_TIMEOUT_SECONDS = _env_float("HTTP_TIMEOUT_SECONDS", 10)
