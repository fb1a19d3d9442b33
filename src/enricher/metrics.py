"""Enrichment throughput counters: outcomes, latency, upstream pressure.

Thread-safe counters that accumulate during runtime and are read by the
stats reporter.
"""

import time
from threading import Lock

OUTCOMES = ("ok", "retry", "err")


class EnrichmentMetrics:
    """Process-wide accumulator for the enrichment worker."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._outcomes: dict[str, int] = {name: 0 for name in OUTCOMES}
        self._reasons: dict[str, int] = {}
        self._total_latency_ms: float = 0.0
        self._max_latency_ms: float = 0.0
        self._rate_limited: int = 0
        self._db_errors: int = 0
        self._idle_polls: int = 0
        self._start_time: float = time.monotonic()

    def record_outcome(self, status: str, latency_ms: float, *, reason: str | None = None) -> None:
        """Record one finished processing cycle."""
        with self._lock:
            self._outcomes[status] = self._outcomes.get(status, 0) + 1
            self._total_latency_ms += latency_ms
            if latency_ms > self._max_latency_ms:
                self._max_latency_ms = latency_ms
            if reason:
                self._reasons[reason] = self._reasons.get(reason, 0) + 1

    def record_rate_limited(self) -> None:
        with self._lock:
            self._rate_limited += 1

    def record_db_error(self) -> None:
        with self._lock:
            self._db_errors += 1

    def record_idle(self) -> None:
        with self._lock:
            self._idle_polls += 1

    def get_summary(self) -> dict:
        """Return a snapshot of all counters."""
        with self._lock:
            uptime = time.monotonic() - self._start_time
            total = sum(self._outcomes.values())
            return {
                "uptime_sec": round(uptime),
                "processed": total,
                "outcomes": dict(self._outcomes),
                "reasons": dict(self._reasons),
                "processed_per_min": round(total / max(uptime / 60, 1), 1),
                "avg_latency_ms": round(self._total_latency_ms / total) if total else 0,
                "max_latency_ms": round(self._max_latency_ms),
                "rate_limited": self._rate_limited,
                "db_errors": self._db_errors,
                "idle_polls": self._idle_polls,
            }

    def format_stats_line(self) -> str:
        """One-line summary for the stats reporter."""
        summary = self.get_summary()
        outcomes = summary["outcomes"]
        return (
            f"processed={summary['processed']} "
            f"ok={outcomes.get('ok', 0)} retry={outcomes.get('retry', 0)} "
            f"err={outcomes.get('err', 0)} "
            f"rate={summary['processed_per_min']:.1f}/min "
            f"avg_lat={summary['avg_latency_ms']}ms "
            f"rate_limited={summary['rate_limited']} "
            f"db_errors={summary['db_errors']}"
        )


# Global singleton, imported by worker.py and the stats reporter
metrics = EnrichmentMetrics()
