"""Thread-safe event collector for the bridge's health/stats endpoint."""

from __future__ import annotations

import statistics
import threading
import time
from collections import deque
from datetime import datetime, timezone


class ProxyMetrics:
    """Collects structured events from the request pipeline.

    Thread-safe: ``record()`` can be called from any request task; the
    buffer keeps the newest ``max_events`` entries.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self.start_time: float = time.time()
        self._events: deque[dict] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._seq = 0

    def record(self, event: dict) -> None:
        """Append an event (thread-safe). Adds ``_seq`` and ``ts``."""
        with self._lock:
            event = dict(event)  # shallow copy to avoid caller mutation
            event["_seq"] = self._seq
            if "ts" not in event:
                event["ts"] = datetime.now(timezone.utc).isoformat()
            self._seq += 1
            self._events.append(event)

    def events_since(self, seq: int) -> list[dict]:
        """Return events with ``_seq`` > *seq*."""
        with self._lock:
            return [e for e in self._events if e["_seq"] > seq]

    def snapshot(self) -> dict:
        """Aggregate stats over the buffered events."""
        with self._lock:
            requests = [e for e in self._events if e.get("type") == "request"]
            responses = [e for e in self._events if e.get("type") == "response"]
            errors = [e for e in self._events if e.get("type") == "error"]
            thoughts = [e for e in self._events if e.get("type") == "agent_thought"]
            files = [e for e in self._events if e.get("type") == "message_file"]
            upload_failures = [e for e in self._events if e.get("type") == "upload_failed"]

            upstream_values = [r["upstream_ms"] for r in responses if "upstream_ms" in r]
            streamed = [r for r in responses if r.get("streaming")]

            return {
                "uptime_s": round(time.time() - self.start_time, 1),
                "total_requests": len(requests),
                "streaming_requests": sum(1 for r in requests if r.get("stream")),
                "total_responses": len(responses),
                "total_errors": len(errors),
                "chars_streamed": sum(r.get("chars", 0) for r in streamed),
                "agent_thoughts": len(thoughts),
                "message_files": len(files),
                "upload_failures": len(upload_failures),
                "median_upstream_ms": (
                    round(statistics.median(upstream_values), 1) if upstream_values else 0
                ),
                "models": sorted({r["model"] for r in requests if r.get("model")}),
            }
