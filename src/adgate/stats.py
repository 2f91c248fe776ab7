import logging
import threading
import time
from collections import Counter, deque
from datetime import datetime, timedelta, timezone

logger = logging.getLogger("adgate.stats")

MAX_RECENT_BLOCKED = 100
MAX_TRACKED_DOMAINS = 10_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Stats:
    """Thread-safe request statistics tracker."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._init_counters()

    def _init_counters(self) -> None:
        self.blocked = 0
        self.allowed = 0
        self.total_requests = 0
        self.start_time = _utcnow()
        self._start_monotonic = time.monotonic()
        self.daily: dict[str, dict[str, int]] = {}
        self.top_blocked: Counter[str] = Counter()
        self.recent_blocked: deque[dict] = deque(maxlen=MAX_RECENT_BLOCKED)

    def _bucket(self, now: datetime) -> dict[str, int]:
        day = now.strftime("%Y-%m-%d")
        bucket = self.daily.get(day)
        if bucket is None:
            bucket = self.daily[day] = {"blocked": 0, "allowed": 0}
        return bucket

    def record_blocked(self, domain: str = "unknown") -> None:
        now = _utcnow()
        with self._lock:
            self.blocked += 1
            self.total_requests += 1
            self._bucket(now)["blocked"] += 1
            self.top_blocked[domain] += 1
            self.recent_blocked.appendleft({"domain": domain, "timestamp": _iso(now)})

    def record_allowed(self) -> None:
        now = _utcnow()
        with self._lock:
            self.allowed += 1
            self.total_requests += 1
            self._bucket(now)["allowed"] += 1

    def reset(self) -> None:
        with self._lock:
            self._init_counters()
        logger.info("Statistics reset")

    def trim(self) -> None:
        """Trim the domain tally to prevent unbounded memory growth."""
        with self._lock:
            if len(self.top_blocked) > MAX_TRACKED_DOMAINS:
                self.top_blocked = Counter(dict(self._sorted_top(MAX_TRACKED_DOMAINS)))

    # --- Derived values ---

    def _sorted_top(self, limit: int) -> list[tuple[str, int]]:
        # sorted() is stable, so equal counts keep first-seen order
        return sorted(self.top_blocked.items(), key=lambda kv: kv[1], reverse=True)[:limit]

    def _uptime_ms(self) -> int:
        return int((time.monotonic() - self._start_monotonic) * 1000)

    def _block_rate(self) -> str:
        if self.total_requests == 0:
            return "0%"
        return f"{self.blocked / self.total_requests * 100:.2f}%"

    def _requests_per_minute(self) -> float:
        minutes = self._uptime_ms() / 60000
        if minutes <= 0:
            return 0.0
        return self.total_requests / minutes

    def block_rate(self) -> str:
        with self._lock:
            return self._block_rate()

    def requests_per_minute(self) -> float:
        with self._lock:
            return self._requests_per_minute()

    def top_blocked_domains(self, limit: int = 10) -> list[dict]:
        with self._lock:
            return [{"domain": d, "count": c} for d, c in self._sorted_top(limit)]

    def daily_stats(self, days: int = 7) -> dict[str, dict[str, int]]:
        """Per-day counts for the last ``days`` UTC dates, newest first.

        Days without activity are reported as zero.
        """
        today = _utcnow().date()
        result: dict[str, dict[str, int]] = {}
        with self._lock:
            for i in range(days):
                day = (today - timedelta(days=i)).isoformat()
                bucket = self.daily.get(day, {"blocked": 0, "allowed": 0})
                result[day] = dict(bucket)
        return result

    def recent(self, limit: int = 50) -> list[dict]:
        with self._lock:
            return [dict(e) for e in list(self.recent_blocked)[:limit]]

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "blocked": self.blocked,
                "allowed": self.allowed,
                "totalRequests": self.total_requests,
                "startTime": _iso(self.start_time),
                "dailyStats": {day: dict(b) for day, b in self.daily.items()},
                "topBlockedDomains": [
                    {"domain": d, "count": c} for d, c in self._sorted_top(10)
                ],
                "recentBlocked": [dict(e) for e in self.recent_blocked],
                "uptime": self._uptime_ms(),
                "blockRate": self._block_rate(),
                "requestsPerMinute": self._requests_per_minute(),
            }
