"""
Fixed-window request counters, stored beside the metadata.
"""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from src.hosts.models import RateLimitConfig

from .database import connect
from .errors import ConfigurationError
from .models import RateLimitResult

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimiter:
    """Counts requests per (client, endpoint) in windows aligned to multiples of window_ms."""

    def __init__(self, db_path: Path | None, clock: Callable[[], datetime] = _utcnow):
        if db_path is None:
            raise ConfigurationError("No rate limit store configured")
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self._init_db()

    def _init_db(self):
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS rate_limits (
                    client_id TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    window_start INTEGER NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (client_id, endpoint, window_start)
                );
            """)

    def check_limit(self, client_id: str, endpoint: str, config: RateLimitConfig) -> RateLimitResult:
        """Count this request and report whether it is within the limit."""
        now_ms = int(self.clock().timestamp() * 1000)
        window_start = now_ms - now_ms % config.window_ms
        reset_at = datetime.fromtimestamp((window_start + config.window_ms) / 1000, tz=timezone.utc)

        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT count FROM rate_limits WHERE client_id = ? AND endpoint = ? AND window_start = ?",
                (client_id, endpoint, window_start)
            ).fetchone()
            count = row["count"] if row else 0

            if count >= config.max_requests:
                logger.info(f"Rate limit hit for {client_id} on {endpoint}")
                return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

            conn.execute(
                """
                INSERT INTO rate_limits (client_id, endpoint, window_start, count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT (client_id, endpoint, window_start) DO UPDATE SET count = count + 1
                """,
                (client_id, endpoint, window_start)
            )
            # Older windows can never count again
            conn.execute(
                "DELETE FROM rate_limits WHERE client_id = ? AND endpoint = ? AND window_start < ?",
                (client_id, endpoint, window_start)
            )

        return RateLimitResult(
            allowed=True,
            remaining=config.max_requests - count - 1,
            reset_at=reset_at,
        )

    def retry_after(self, result: RateLimitResult) -> int:
        """Whole seconds until the window resets (at least 1)."""
        seconds = (result.reset_at - self.clock()).total_seconds()
        return max(1, int(seconds + 0.999))
