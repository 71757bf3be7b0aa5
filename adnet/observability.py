"""
Observability: logging, metrics and health for the publisher agent.

Log lines carry the request id and the tenant (publisher host) of the
request that produced them, including lines written by settlement code
that the request triggered synchronously.

Environment:
- ADNET_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default INFO)
- ADNET_LOG_FORMAT: json or text (default json when ADNET_PRODUCTION is set)
- ADNET_PRODUCTION: production mode

    from adnet.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Segment drained", tenant=tenant, events=len(events))
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
tenant_var: ContextVar[str] = ContextVar("tenant", default="")

# Attribute names a LogRecord already owns
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "web3")


@dataclass
class LogSettings:
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        production = os.environ.get("ADNET_PRODUCTION", "").lower() in ("1", "true", "yes")
        fmt = os.environ.get("ADNET_LOG_FORMAT", "").lower()
        level = logging.getLevelName(os.environ.get("ADNET_LOG_LEVEL", "INFO").upper())
        return cls(
            level=level if isinstance(level, int) else logging.INFO,
            json_output=fmt == "json" or (fmt != "text" and production),
        )


def _request_context() -> Dict[str, str]:
    context = {}
    if request_id_var.get():
        context["request_id"] = request_id_var.get()
    if tenant_var.get():
        context["tenant"] = tenant_var.get()
    return context


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


# ============================================================
# LOGGING
# ============================================================

class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "adnet.core.settlement",
         "message": "Partition settled", "request_id": "1f2e3d4c",
         "tenant": "news.example.com", "campaign_id": "cmp-1"}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_request_context(),
        }
        for key, value in getattr(record, "_fields", {}).items():
            entry[key] = _jsonable(value)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """Readable single-line output for local runs."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        context = _request_context()
        tag = ""
        if context:
            tag = "[" + " ".join(context.get(k, "-")[:24] for k in ("request_id", "tenant")) + "] "

        line = f"{stamp} {record.levelname:<7} {tag}{record.name}: {record.getMessage()}"
        fields = getattr(record, "_fields", None)
        if fields:
            line += " | " + ", ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Logger whose calls take structured fields as keyword arguments:

        logger.warning("Upload failed", tenant=tenant, attempt=2)
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in self._PASSTHROUGH}
        extra = dict(kwargs.get("extra") or {})
        for key, value in fields.items():
            # LogRecord refuses to have its own attributes overwritten
            extra[f"field_{key}" if key in _RECORD_ATTRS else key] = value
        extra["_fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LogSettings] = None) -> None:
    """Install the stdout handler on the root logger. Safe to call again."""
    settings = settings or LogSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(settings.level)
    handler.setFormatter(StructuredFormatter() if settings.json_output else TextFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id and the tenant to the request's log lines, times
    the request, and echoes the id back in X-Request-ID.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request_id_var.set(request_id)
        tenant_var.set(request.url.hostname or "")

        logger = get_logger("adnet.request")
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - started) * 1000

        try:
            response = await call_next(request)
        except Exception as e:
            took = elapsed_ms()
            get_metrics().record_request(took, success=False)
            logger.exception(f"{route} failed", duration_ms=round(took, 2), error=str(e))
            raise
        else:
            took = elapsed_ms()
            get_metrics().record_request(took, success=response.status_code < 500)
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                f"{route} {response.status_code}",
                status_code=response.status_code,
                duration_ms=round(took, 2),
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.set("")
            tenant_var.set("")


# ============================================================
# METRICS
# ============================================================

class _Samples:
    """The most recent latency samples, for percentiles."""

    def __init__(self, size: int = 1000):
        self._values: deque = deque(maxlen=size)

    def add(self, value: float) -> None:
        self._values.append(value)

    def quantile(self, q: float) -> Optional[float]:
        if not self._values:
            return None
        ordered = sorted(self._values)
        return ordered[min(int(len(ordered) * q), len(ordered) - 1)]


@dataclass
class MetricsCollector:
    """
    Process-local counters. Settlement runs on worker threads, so every
    update holds the lock.
    """

    events_recorded: int = 0
    events_verified: int = 0
    flushes: int = 0
    partitions_confirmed: int = 0
    partitions_off_chain: int = 0
    partitions_rejected: int = 0
    partitions_failed: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    append_latency: _Samples = field(default_factory=_Samples, repr=False)
    request_latency: _Samples = field(default_factory=_Samples, repr=False)
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_append(self, latency_ms: float, verified: bool = False) -> None:
        with self._lock:
            self.events_recorded += 1
            self.events_verified += int(verified)
            self.append_latency.add(latency_ms)

    def record_flush(self) -> None:
        with self._lock:
            self.flushes += 1

    def record_partition(self, settlement: str) -> None:
        """settlement is a SettlementOutcome value; anything unfinished counts as failed."""
        counter = {
            "confirmed": "partitions_confirmed",
            "off_chain": "partitions_off_chain",
            "rejected": "partitions_rejected",
        }.get(settlement, "partitions_failed")
        with self._lock:
            setattr(self, counter, getattr(self, counter) + 1)

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            self.requests_failed += int(not success)
            self.request_latency.add(latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            summary = {
                name: getattr(self, name)
                for name in (
                    "events_recorded", "events_verified", "flushes",
                    "partitions_confirmed", "partitions_off_chain",
                    "partitions_rejected", "partitions_failed",
                    "requests_total", "requests_failed",
                )
            }
            for label, q in (("p50", 0.5), ("p95", 0.95), ("p99", 0.99)):
                summary[f"append_latency_{label}_ms"] = self.append_latency.quantile(q)
            for label, q in (("p50", 0.5), ("p95", 0.95)):
                summary[f"request_latency_{label}_ms"] = self.request_latency.quantile(q)
            return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """The process-wide collector used by the app and its services."""
    return _metrics


# ============================================================
# HEALTH
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _check_store(store) -> Dict[str, Any]:
    try:
        reachable = store.ping()
    except Exception as e:
        return {"status": "unhealthy", "backend": type(store).__name__, "error": str(e)}
    return {"status": "healthy" if reachable else "unhealthy", "backend": type(store).__name__}


def _check_chains(ledger) -> Dict[str, Any]:
    tenants = ledger.loaded_tenants()
    broken = []
    for tenant in tenants:
        try:
            if not ledger.verify_tenant(tenant):
                broken.append(tenant)
        except Exception as e:
            broken.append(f"{tenant}: {e}")
    return {
        "status": "unhealthy" if broken else "healthy",
        "tenants_checked": len(tenants),
        "broken": broken,
    }


def check_health(ledger=None, store=None, verify_chains: bool = False) -> HealthStatus:
    """
    Liveness, plus store reachability when a store is given and, with
    verify_chains, a re-hash of every tenant loaded in this process.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if store is not None:
        checks["ledger_store"] = _check_store(store)
    if ledger is not None and verify_chains:
        checks["chain_integrity"] = _check_chains(ledger)

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
