"""Configuration constants for podcast_hotline.

All constants are re-exported from config.py for convenience.
"""

# General defaults
DEFAULT_LOG_LEVEL = "INFO"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
APP_NAME = "podcast_hotline"

# HTTP defaults
# Some feed hosts refuse anything that does not look like a browser
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/119.0 Safari/537.36"
)
DEFAULT_VALIDATION_USER_AGENT = "Mozilla/5.0 (compatible; PodcastHotline/2.0)"
DEFAULT_FEED_TIMEOUT_SECONDS = 20
DEFAULT_RESOLVE_TIMEOUT_SECONDS = 20
DEFAULT_DOWNLOAD_TIMEOUT_SECONDS = 30
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 5
MIN_TIMEOUT_SECONDS = 1

# Redirect validation
DEFAULT_MAX_REDIRECTS = 10
DEFAULT_RESOLVE_RETRIES = 3
DEFAULT_RESOLVE_RETRY_DELAY_SECONDS = 2.0

# Feed parsing
DEFAULT_MAX_FEED_ITEMS = 15
DEFAULT_MIN_FEED_BYTES = 100

# Retention windows
DEFAULT_TEMPORARY_TTL_HOURS = 24
DEFAULT_SESSION_TTL_DAYS = 7
DEFAULT_ZIPCODE_TTL_DAYS = 30
DEFAULT_IDLE_SESSION_TIMEOUT_SECONDS = 4 * 60 * 60
DEFAULT_IDLE_REAP_INTERVAL_SECONDS = 15 * 60

# Caller playback defaults
DEFAULT_PLAYBACK_SPEED = 1.25
DEFAULT_RESUME_THRESHOLD_SECONDS = 30
DEFAULT_AD_BREAK_INTERVAL_SECONDS = 10 * 60
DEFAULT_SESSION_SWEEP_INTERVAL_SECONDS = 60 * 60

# Ad inventory defaults
DEFAULT_AD_WEIGHT = 50
DEFAULT_AD_DURATION_SECONDS = 30
DEFAULT_AD_MAX_DURATION_SECONDS = 30
DEFAULT_MIDROLL_INTERVAL_MINUTES = 10
DEFAULT_MAX_ADS_PER_SESSION = 3
DEFAULT_SKIP_AD_AFTER_SECONDS = 5
DEFAULT_AD_VOLUME_ADJUSTMENT = 0.0

# File names inside the state/cache directories
AD_CONFIG_FILENAME = "ad-config.json"
EXEMPT_NUMBERS_FILENAME = "ad-exempt-numbers.json"
SESSIONS_FILENAME = "caller_sessions.json"
CACHE_METADATA_FILENAME = "cache_metadata.json"
