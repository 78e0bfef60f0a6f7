"""
Configuration settings shared by host adapters.
"""
from .models import RateLimitConfig

# HTTP
USER_AGENT = "Mozilla/5.0 (compatible; MediaMirror/1.0)"
REQUEST_TIMEOUT_SECONDS = 30
DOWNLOAD_TIMEOUT_SECONDS = 60

# File size limits
MAX_DOWNLOAD_SIZE_MB = 50
MAX_DOWNLOAD_SIZE_BYTES = MAX_DOWNLOAD_SIZE_MB * 1024 * 1024

# Staleness window used by both built-in adapters
DEFAULT_STALE_AFTER_MS = 60 * 60 * 1000  # 1 hour

# Shared rate limit when an adapter has no override
DEFAULT_RATE_LIMIT = RateLimitConfig(
    window_ms=15 * 60 * 1000,  # 15 minutes
    max_requests=100,
)
