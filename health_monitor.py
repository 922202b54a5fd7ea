"""
Passive health tracking for the Maps web services this service calls.

Every outbound call made by GoogleMapsClient reports its outcome through
record_call().  Status per endpoint is derived from a rolling window of
recent outcomes and surfaced on /healthz.

There are no active probes: every Google Maps request is billed, so health
is inferred only from traffic that real classifications already generate.

Module-level singleton: all callers in this process share one HealthMonitor.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)

# Rolling window size for passive call tracking per service.
_WINDOW_SIZE = 50

# Success-rate thresholds.
_HEALTHY_THRESHOLD = 0.95
_DEGRADED_THRESHOLD = 0.70

# Endpoints reported even before the first call so /healthz has a stable shape.
KNOWN_SERVICES = ("places_nearby", "directions", "reverse_geocode")


@dataclass
class UpstreamHealth:
    """Health status for a single upstream endpoint."""
    service: str
    status: str          # "healthy" | "degraded" | "down" | "unknown"
    latency_ms: int
    sample_size: int
    success_rate: Optional[float] = None
    last_checked: Optional[str] = None   # ISO-8601 timestamp of the newest call
    error: Optional[str] = None


@dataclass
class _CallOutcome:
    timestamp: float
    success: bool
    latency_ms: int
    error: Optional[str] = None


class HealthMonitor:
    """Thread-safe rolling-window tracker of upstream call outcomes."""

    def __init__(self, window_size: int = _WINDOW_SIZE) -> None:
        self._lock = threading.Lock()
        self._window_size = window_size
        self._outcomes: Dict[str, Deque[_CallOutcome]] = {
            name: deque(maxlen=window_size) for name in KNOWN_SERVICES
        }
        self._prev_status: Dict[str, str] = {}

    def record_call(
        self,
        service: str,
        success: bool,
        latency_ms: int,
        error: Optional[str] = None,
    ) -> None:
        outcome = _CallOutcome(
            timestamp=time.time(),
            success=success,
            latency_ms=latency_ms,
            error=error,
        )
        with self._lock:
            window = self._outcomes.setdefault(service, deque(maxlen=self._window_size))
            window.append(outcome)

    def status_for(self, service: str) -> UpstreamHealth:
        """Derive health from the rolling window of real calls."""
        with self._lock:
            window = list(self._outcomes.get(service, ()))

        if not window:
            return UpstreamHealth(service=service, status="unknown", latency_ms=0, sample_size=0)

        total = len(window)
        rate = sum(1 for o in window if o.success) / total
        if rate >= _HEALTHY_THRESHOLD:
            status = "healthy"
        elif rate >= _DEGRADED_THRESHOLD:
            status = "degraded"
        else:
            status = "down"

        last_error = next((o.error for o in reversed(window) if not o.success and o.error), None)
        newest = max(o.timestamp for o in window)

        with self._lock:
            prev = self._prev_status.get(service)
            self._prev_status[service] = status
        if prev is not None and prev != status:
            logger.warning("[health] %s transitioned %s -> %s", service, prev, status)

        return UpstreamHealth(
            service=service,
            status=status,
            latency_ms=int(sum(o.latency_ms for o in window) / total),
            sample_size=total,
            success_rate=round(rate, 3),
            last_checked=datetime.fromtimestamp(newest, tz=timezone.utc).isoformat(),
            error=last_error,
        )

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            services = sorted(self._outcomes)
        return {name: self._to_dict(self.status_for(name)) for name in services}

    @staticmethod
    def _to_dict(health: UpstreamHealth) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": health.status,
            "latency_ms": health.latency_ms,
            "sample_size": health.sample_size,
        }
        if health.success_rate is not None:
            d["success_rate"] = health.success_rate
        if health.last_checked:
            d["last_checked"] = health.last_checked
        if health.error:
            d["error"] = health.error
        return d


# ---------------------------------------------------------------------------
# Module-level singleton and public API
# ---------------------------------------------------------------------------

_monitor = HealthMonitor()


def record_call(
    service: str,
    success: bool,
    latency_ms: int,
    error: Optional[str] = None,
) -> None:
    """Record an upstream call outcome.  Called from GoogleMapsClient."""
    _monitor.record_call(service, success, latency_ms, error)


def get_status() -> Dict[str, Dict[str, Any]]:
    """Current health per upstream endpoint."""
    return _monitor.get_all_status()


def reset() -> None:
    """Drop all recorded outcomes (used by tests)."""
    global _monitor
    _monitor = HealthMonitor()
