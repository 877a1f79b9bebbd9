from datetime import datetime, timezone

from docwatch.tracking.types import PollerMetrics


class MetricsRecorder:
    """Process-lifetime counters behind ``status()``. Never persisted."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}
        self.persistence_degraded = False
        self.last_tick_at: datetime | None = None

    def incr(self, name: str, amount: int = 1) -> None:
        self._counters[name] = self._counters.get(name, 0) + amount

    def get(self, name: str) -> int:
        return self._counters.get(name, 0)

    def mark_tick(self) -> None:
        self.last_tick_at = datetime.now(timezone.utc)

    def snapshot(self, documents_tracked: int) -> PollerMetrics:
        return PollerMetrics(
            documents_tracked=documents_tracked,
            poll_successes=self.get("poll_successes"),
            poll_failures=self.get("poll_failures"),
            changes_detected=self.get("changes_detected"),
            duplicates_suppressed=self.get("duplicates_suppressed"),
            notifications_sent=self.get("notifications_sent"),
            notifications_failed=self.get("notifications_failed"),
            webhook_events_received=self.get("webhook_events_received"),
            webhook_registration_failures=self.get("webhook_registration_failures"),
            persistence_degraded=self.persistence_degraded,
            last_tick_at=self.last_tick_at,
        )
