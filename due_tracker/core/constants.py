"""Shared constants — single source of truth for values used across modules."""

from datetime import timedelta

# Time zone used for hour slots, the daily driver and rendered dates
DEFAULT_HOME_TZ = "America/New_York"

# Cadence thresholds (inclusive upper bounds on time remaining)
SECOND_CADENCE_MAX = timedelta(seconds=60)
MINUTE_CADENCE_MAX = timedelta(hours=1)

# Second driver
SECOND_BUCKET_CAP_PER_TICK = 6

# Per-channel queue pacing (milliseconds); jitter is added on top
BASE_DELAY_MS = {
    "second": 120,
    "minute": 220,
    "hour": 350,
}
DEFAULT_BASE_DELAY_MS = 200
JITTER_MS = 60

# Rate-limit backoff applied to a whole channel
RATE_LIMIT_COOLDOWN = timedelta(milliseconds=1500)

# Resolve cache
MESSAGE_CACHE_TTL = timedelta(minutes=2)
CHANNEL_CACHE_TTL = timedelta(minutes=30)
CACHE_PRUNE_INTERVAL = timedelta(minutes=15)

# Persistence
PERSIST_DEBOUNCE_SECONDS = 0.5
SNAPSHOT_KEY = "homeworkTracker"
SNAPSHOT_VERSION = 1

# Rendering
HEADER_PREFIX = "Homework —"
DATE_FORMAT = "%m/%d/%Y"
