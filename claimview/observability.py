"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging tagged with the request ID or the claim locator
  being ingested
- Request logging middleware for the XRPC surface
- Metrics collection (ingest outcomes, verdicts, resolver cache, latencies)
- Health checks for the store, the pipeline and the resolver cache

Configuration:
- CLAIMVIEW_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- CLAIMVIEW_LOG_FORMAT: json, text (default: json in production)
- CLAIMVIEW_PRODUCTION: Enable production mode

Usage:
    from claimview.observability import get_logger, bind_locator

    logger = get_logger(__name__)
    with bind_locator(uri):
        logger.info("Claim indexed", digest=digest)
"""

import json
import logging
import os
import sys
import threading
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Set per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
# Set while a shard or verification worker handles one locator
locator_var: ContextVar[str] = ContextVar("locator", default="")


@contextmanager
def bind_locator(uri: Optional[str]) -> Iterator[None]:
    """Tag every log line emitted inside the block with a claim locator."""
    token = locator_var.set(uri or "")
    try:
        yield
    finally:
        locator_var.reset(token)


# ============================================================
# CONFIGURATION
# ============================================================

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level = logging.getLevelName(os.environ.get("CLAIMVIEW_LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _use_json_logging() -> bool:
    format_str = os.environ.get("CLAIMVIEW_LOG_FORMAT", "").lower()
    if format_str in ("json", "text"):
        return format_str == "json"
    return _env_flag("CLAIMVIEW_PRODUCTION")


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "taskName"}


def _context_fields() -> Dict[str, str]:
    fields = {}
    if request_id_var.get():
        fields["request_id"] = request_id_var.get()
    if locator_var.get():
        fields["locator"] = locator_var.get()
    return fields


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    {"timestamp": "...", "level": "INFO", "logger": "claimview.core.ingest",
     "message": "Claim indexed", "locator": "at://...", "digest": "..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_fields(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in _extra_fields(record).items():
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = str(value)
            log_data[key] = value

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        context = _context_fields()
        prefix = ""
        if "request_id" in context:
            prefix += f"[{context['request_id'][:8]}] "
        if "locator" in context:
            prefix += f"<{context['locator']}> "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        extras = " ".join(f"{key}={value}" for key, value in _extra_fields(record).items())
        if extras:
            msg += " " + extras
        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.warning("Event dropped", reason="missing subject")
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            extra[key] = kwargs.pop(key)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Structured logger for a module (pass __name__)."""
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure the root logger. Call once at startup; calling again replaces
    the handler.
    """
    level = _get_log_level()
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if _use_json_logging() else TextFormatter())
    root_logger.addHandler(handler)

    # DID document fetches log every request at INFO
    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

XRPC_PREFIX = "/xrpc/"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an ID (X-Request-ID, or a fresh one), logs the
    XRPC method and latency, and records request metrics.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token = request_id_var.set(request_id)

        logger = get_logger("claimview.request")
        path = request.url.path
        fields = {"method": request.method, "path": path}
        if path.startswith(XRPC_PREFIX):
            fields["xrpc_method"] = path[len(XRPC_PREFIX):]

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                f"{request.method} {path} -> 500",
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
                **fields,
            )
            get_metrics().record_request(duration_ms, False)
            raise
        else:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.log(
                logging.INFO if response.status_code < 400 else logging.WARNING,
                f"{request.method} {path} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
                **fields,
            )
            get_metrics().record_request(duration_ms, response.status_code < 500)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(token)


# ============================================================
# METRICS
# ============================================================

def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    return sorted_data[min(int(len(sorted_data) * p), len(sorted_data) - 1)]


def _latency_summary(name: str, samples: list, quantiles=(0.5, 0.95, 0.99)) -> Dict[str, Optional[float]]:
    return {f"{name}_latency_p{int(q * 100)}_ms": _percentile(samples, q) for q in quantiles}


@dataclass
class MetricsCollector:
    """
    In-memory metrics shared by shard workers, verification workers and
    request handlers. Every update takes the lock.
    """

    MAX_SAMPLES = 1000

    events_by_outcome: Counter = field(default_factory=Counter)
    verdicts: Counter = field(default_factory=Counter)
    verifications_pending: int = 0

    resolver_hits: int = 0
    resolver_misses: int = 0

    requests_total: int = 0
    requests_failed: int = 0

    ingest_latencies_ms: list = field(default_factory=list)
    verify_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _sample(self, samples: list, value: float) -> None:
        samples.append(value)
        if len(samples) > self.MAX_SAMPLES:
            del samples[:-self.MAX_SAMPLES]

    def record_ingest(self, outcome: str, latency_ms: float) -> None:
        """One processed change event and its outcome."""
        with self._lock:
            self.events_by_outcome[outcome] += 1
            self._sample(self.ingest_latencies_ms, latency_ms)

    def record_verdict(self, verdict: str, latency_ms: float) -> None:
        with self._lock:
            self.verdicts[verdict] += 1
            self._sample(self.verify_latencies_ms, latency_ms)

    def set_verifications_pending(self, count: int) -> None:
        with self._lock:
            self.verifications_pending = count

    def record_resolver(self, hit: bool) -> None:
        """A resolver cache lookup; negative-cache hits count as hits."""
        with self._lock:
            if hit:
                self.resolver_hits += 1
            else:
                self.resolver_misses += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self._sample(self.request_latencies_ms, latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "events_received": sum(self.events_by_outcome.values()),
                "events_by_outcome": dict(self.events_by_outcome),
                "verdicts": dict(self.verdicts),
                "verifications_pending": self.verifications_pending,
                "resolver_hits": self.resolver_hits,
                "resolver_misses": self.resolver_misses,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                **_latency_summary("ingest", self.ingest_latencies_ms),
                **_latency_summary("verify", self.verify_latencies_ms, (0.5, 0.95)),
                **_latency_summary("request", self.request_latencies_ms, (0.5, 0.95)),
            }


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """The process-wide metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(store=None, pipeline=None, resolver=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        store: DerivedStore; unhealthy if counts() fails
        pipeline: IngestionPipeline; unhealthy once ingestion has halted
        resolver: IdentityResolverCache; informational only

    Returns:
        HealthStatus with one entry per component checked
    """
    start = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if store is not None:
        try:
            checks["store"] = {"status": "healthy", **store.counts()}
        except Exception as e:
            checks["store"] = {"status": "unhealthy", "error": str(e)}

    if pipeline is not None:
        if pipeline.halted:
            checks["ingestion"] = {"status": "unhealthy", "halted": True, "error": pipeline.halt_reason}
        else:
            checks["ingestion"] = {
                "status": "healthy",
                "halted": False,
                "pending_verifications": pipeline.pending_verifications,
            }

    if resolver is not None:
        checks["resolver"] = {"status": "healthy", **resolver.stats()}

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
