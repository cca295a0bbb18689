"""
Request-scoped tracing for decode debugging.

Provides a thread-local TraceContext that records:
  - Per-stage timing (normalize, property, augment, report, ...)
  - Per-outbound-call timing (service, endpoint, elapsed_ms, status, provider status)
  - Cache hits and misses by key prefix
  - End-of-decode summary (total_elapsed, total_api_calls, outcome)

Usage:
    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In API clients:
    trace = get_trace()
    if trace:
        trace.record_api_call(...)
"""

import time
import threading
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

logger = logging.getLogger(__name__)


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound HTTP call (RentCast, OpenAI, Mapbox, Overpass, ...)."""
    service: str
    endpoint: str
    elapsed_ms: int
    status_code: int
    provider_status: str = ""
    attempt: int = 1
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""
    best_effort: bool = False


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for a single decode."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0
    config_version: str = ""
    _current_stage: str = ""

    def start_stage(self, name: str):
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    @property
    def current_stage(self) -> str:
        return self._current_stage

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error: Optional[BaseException] = None,
        best_effort: bool = False,
    ):
        api_in_stage = sum(1 for c in self.api_calls if c.stage == stage_name)
        rec = StageRecord(
            stage_name=stage_name,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            api_calls_made=api_in_stage,
            error_class=type(error).__name__ if error else "",
            error_message=str(error)[:200] if error else "",
            best_effort=best_effort,
        )
        self.stages.append(rec)
        status = "ERR" if error else "OK"
        err_info = f" err={rec.error_class}: {rec.error_message}" if error else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id, stage_name, status, rec.elapsed_ms, api_in_stage, err_info,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        attempt: int = 1,
    ):
        self.api_calls.append(APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            attempt=attempt,
            stage=self._current_stage,
        ))
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d attempt=%d provider=%s",
            self.trace_id, self._current_stage or "-", service, endpoint,
            elapsed_ms, status_code, attempt, provider_status,
        )

    def record_cache(self, key: str, hit: bool):
        if hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1
        logger.debug(
            "  [cache] trace=%s %s %s", self.trace_id, "hit" if hit else "miss",
            key.split(":", 1)[0],
        )

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        fatal = [s for s in self.stages if s.error_class and not s.best_effort]
        degraded = [s for s in self.stages if s.error_class and s.best_effort]
        if fatal:
            outcome = "error"
        elif degraded:
            outcome = "partial"
        elif not self.stages:
            outcome = "empty"
        else:
            outcome = "success"

        result = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "stages": [
                {
                    "stage": s.stage_name,
                    "elapsed_ms": s.elapsed_ms,
                    "api_calls": s.api_calls_made,
                    "error": f"{s.error_class}: {s.error_message}" if s.error_class else None,
                }
                for s in self.stages
            ],
            "final_outcome": outcome,
        }
        if self.config_version:
            result["config_version"] = self.config_version
        return result

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d cache=%d/%d stages=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["cache_hits"],
            s["cache_hits"] + s["cache_misses"],
            len(s["stages"]),
            s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current thread's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
