"""Gateway statistics and active-queue tracking.

Tracks in-memory counters and a sliding window of recently used queues.
No framework dependencies.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass


@dataclass
class QueueActivity:
    """Tracks a single queue's recent activity through this gateway."""
    last_seen: float          # time.monotonic() timestamp
    last_operation: str       # "offer", "poll", "drain", ...
    operations: int = 0


class GatewayStats:
    """Thread-safe gateway statistics.

    A queue is "active" if any operation touched it within
    ``active_window_seconds`` (default 120s).
    """

    def __init__(self, active_window_seconds: float = 120.0) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()
        self._active_window = active_window_seconds

        # Counters
        self.offers_accepted: int = 0
        self.offers_rejected: int = 0
        self.polls_served: int = 0
        self.polls_empty: int = 0
        self.elements_drained: int = 0
        self.clears: int = 0
        self.remote_errors: int = 0

        # Queue tracking: queue name → QueueActivity
        self._queues: dict[str, QueueActivity] = {}

    def _touch(self, queue: str, operation: str) -> None:
        """Caller holds lock."""
        now = time.monotonic()
        if queue in self._queues:
            activity = self._queues[queue]
            activity.last_seen = now
            activity.last_operation = operation
            activity.operations += 1
        else:
            self._queues[queue] = QueueActivity(
                last_seen=now, last_operation=operation, operations=1,
            )

    def record_offer(self, queue: str, accepted: bool) -> None:
        with self._lock:
            if accepted:
                self.offers_accepted += 1
            else:
                self.offers_rejected += 1
            self._touch(queue, "offer")

    def record_poll(self, queue: str, served: bool) -> None:
        with self._lock:
            if served:
                self.polls_served += 1
            else:
                self.polls_empty += 1
            self._touch(queue, "poll")

    def record_drain(self, queue: str, count: int) -> None:
        with self._lock:
            self.elements_drained += count
            self._touch(queue, "drain")

    def record_clear(self, queue: str) -> None:
        with self._lock:
            self.clears += 1
            self._touch(queue, "clear")

    def record_remote_error(self) -> None:
        with self._lock:
            self.remote_errors += 1

    def _prune_stale_queues(self, now: float) -> None:
        """Remove queues not seen within the active window. Caller holds lock."""
        cutoff = now - self._active_window
        stale = [name for name, q in self._queues.items() if q.last_seen < cutoff]
        for name in stale:
            del self._queues[name]

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        now_mono = time.monotonic()
        with self._lock:
            self._prune_stale_queues(now_mono)

            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "offers_accepted": self.offers_accepted,
                "offers_rejected": self.offers_rejected,
                "polls_served": self.polls_served,
                "polls_empty": self.polls_empty,
                "elements_drained": self.elements_drained,
                "clears": self.clears,
                "remote_errors": self.remote_errors,
                "active_queues": {
                    "total": len(self._queues),
                    "names": sorted(self._queues),
                    "window_seconds": self._active_window,
                },
            }
