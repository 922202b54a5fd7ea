"""
Per-request trace of a complaint classification.

A classification runs up to three stages (critical_places, traffic,
area_name) and makes up to eleven billed Google Maps calls.  The trace
answers "where did the time go and which lookups fell back to a default"
for one request:

    trace = RequestTrace(trace_id=g.request_id)
    set_trace(trace)
    try:
        classifier.classify(complaint)
    finally:
        trace.log_summary()
        clear_trace()

GoogleMapsClient._traced_get appends an OutboundCall to whatever trace is
active on the calling thread.  The traffic probe runs its two Directions
queries on pool threads, which start with no trace; it hands the parent
trace over with set_trace() inside each worker.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_OK_PROVIDER_STATUSES = ("", "OK", "ZERO_RESULTS")


@dataclass
class OutboundCall:
    service: str
    endpoint: str            # places_nearby | directions | reverse_geocode
    elapsed_ms: int
    status_code: int         # 0: no HTTP response at all
    provider_status: str = ""
    error: str = ""          # exception class name on transport failure
    stage: str = ""

    @property
    def ok(self) -> bool:
        """True when the lookup produced a usable answer."""
        return (
            not self.error
            and 200 <= self.status_code < 300
            and self.provider_status in _OK_PROVIDER_STATUSES
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "endpoint": self.endpoint,
            "stage": self.stage,
            "elapsed_ms": self.elapsed_ms,
            "status_code": self.status_code,
            "provider_status": self.provider_status,
            "error": self.error or None,
        }


@dataclass
class StageTiming:
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    skipped: bool = False    # short-circuited, no lookup attempted
    error_class: str = ""
    error_message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage_name,
            "elapsed_ms": self.elapsed_ms,
            "api_calls": self.api_calls_made,
            "skipped": self.skipped,
            "error": f"{self.error_class}: {self.error_message}" if self.error_class else None,
        }


@dataclass
class RequestTrace:
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageTiming] = field(default_factory=list)
    calls: List[OutboundCall] = field(default_factory=list)
    model_version: str = ""
    _current_stage: str = ""

    def start_stage(self, name: str):
        """Attribute subsequent outbound calls to *name*."""
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        skipped: bool = False,
        error_class: str = "",
        error_message: str = "",
    ):
        timing = StageTiming(
            stage_name=stage_name,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            api_calls_made=sum(1 for c in self.calls if c.stage == stage_name),
            skipped=skipped,
            error_class=error_class,
            error_message=error_message,
        )
        self.stages.append(timing)

        if skipped:
            outcome = "SKIP"
        elif error_class:
            outcome = f"ERR {error_class}: {error_message}"
        else:
            outcome = "OK"
        logger.info(
            "[%s] stage %s %s in %dms (%d maps calls)",
            self.trace_id, stage_name, outcome, timing.elapsed_ms, timing.api_calls_made,
        )

    def record_skipped(self, stage_name: str):
        now = time.time()
        self.record_stage(stage_name, now, now, skipped=True)

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        error: str = "",
    ):
        call = OutboundCall(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            error=error,
            stage=self._current_stage,
        )
        self.calls.append(call)
        logger.info(
            "[%s] %s.%s stage=%s http=%d status=%s %dms%s",
            self.trace_id, service, endpoint, call.stage or "-",
            status_code, provider_status or "-", elapsed_ms,
            f" error={error}" if error else "",
        )

    def _outcome(self, failed: int) -> str:
        # "degraded": classification finished but some lookup fell back.
        if not self.calls and not self.stages:
            return "empty"
        if self.calls and failed == len(self.calls):
            return "error"
        if failed or any(s.error_class for s in self.stages):
            return "degraded"
        return "success"

    def summary_dict(self) -> Dict[str, Any]:
        failed = sum(1 for c in self.calls if not c.ok)
        summary = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.request_start) * 1000),
            "total_api_calls": len(self.calls),
            "failed_api_calls": failed,
            "stages_completed": sum(1 for s in self.stages if not s.skipped),
            "stages_skipped": sum(1 for s in self.stages if s.skipped),
            "final_outcome": self._outcome(failed),
        }
        if self.model_version:
            summary["model_version"] = self.model_version
        return summary

    def log_summary(self):
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d failed=%d "
            "completed=%d skipped=%d outcome=%s",
            s["trace_id"], s["total_elapsed_ms"], s["total_api_calls"],
            s["failed_api_calls"], s["stages_completed"], s["stages_skipped"],
            s["final_outcome"],
        )

    def full_trace_dict(self) -> Dict[str, Any]:
        """Summary plus every stage and call, for /debug/classify."""
        out = self.summary_dict()
        out["stages"] = [s.to_dict() for s in self.stages]
        out["api_calls"] = [c.to_dict() for c in self.calls]
        return out


_active = threading.local()


def get_trace() -> Optional[RequestTrace]:
    return getattr(_active, "trace", None)


def set_trace(trace: Optional[RequestTrace]):
    _active.trace = trace


def clear_trace():
    _active.trace = None
