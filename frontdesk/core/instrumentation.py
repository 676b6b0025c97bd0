"""Frontdesk – Instrumentation.

Exposes Prometheus metrics with multi-tenant labels and configures structlog
with PII masking for logged utterances.
"""

import logging
import re
import time
from typing import Any, Callable

import structlog
from fastapi import APIRouter, FastAPI, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
)

router = APIRouter(tags=["monitoring"])

# --- HTTP ---

REQUEST_COUNT = Counter(
    "frontdesk_http_requests_total",
    "Total HTTP requests by method, endpoint, status and tenant",
    ["method", "endpoint", "status", "tenant_id"],
)

REQUEST_LATENCY = Histogram(
    "frontdesk_http_request_duration_seconds",
    "HTTP request latency by method, endpoint and tenant",
    ["method", "endpoint", "tenant_id"],
)

# --- Matching engine ---

ROUTING_DECISIONS = Counter(
    "frontdesk_routing_decisions_total",
    "Routing decisions by tier, cache outcome and tenant",
    ["tier", "cached", "tenant_id"],
)

ROUTE_LATENCY = Histogram(
    "frontdesk_route_duration_seconds",
    "End-to-end route() latency by resolving tier",
    ["tier"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

TIER3_FALLBACKS = Counter(
    "frontdesk_tier3_fallbacks_total",
    "Tier-3 invocations that did not end in a model-chosen scenario",
    ["reason"],
)

POOL_BUILDS = Counter(
    "frontdesk_pool_builds_total",
    "Scenario pool loads by outcome (fresh, refreshed, stale, failed)",
    ["outcome"],
)

SCENARIOS_EXCLUDED = Counter(
    "frontdesk_scenarios_excluded_total",
    "Scenarios excluded from a pool because of configuration errors",
    ["tenant_id"],
)


@router.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ──────────────────────────────────────────
# PII masking for log records
# ──────────────────────────────────────────

PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "phone": re.compile(r"\+?\d[\d\s().\-]{7,}\d"),
    "email": re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}"),
}

# Only free-text fields are scanned; ids and hashes are left alone.
PII_FIELDS = ("utterance", "original", "translated", "normalized", "text")


def mask_pii(text: str) -> str:
    """Mask phone numbers and e-mail addresses for safe logging.

    - Phone: +1 (555) 123-4567 → +1 (5****
    - Email: user@example.com → u****@e****.com
    """

    def mask_phone(match: re.Match[str]) -> str:
        full = match.group(0)
        return full[:5] + "****" if len(full) > 5 else "****"

    def mask_email(match: re.Match[str]) -> str:
        local, _, domain = match.group(0).partition("@")
        name, _, tld = domain.rpartition(".")
        return f"{local[:1]}****@{name[:1]}****.{tld or 'com'}"

    result = PII_PATTERNS["email"].sub(mask_email, text)
    return PII_PATTERNS["phone"].sub(mask_phone, result)


def filter_log_record(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor masking PII in free-text fields."""
    for field in PII_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, str):
            event_dict[field] = mask_pii(value)
    return event_dict


def setup_logging(log_level: str = "info") -> None:
    """Configure structlog with PII masking."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            filter_log_record,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Attach middleware for multi-tenant metric tracking."""
    setup_logging(log_level)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        tenant_id = request.headers.get("x-tenant-id", "unknown")
        path = request.url.path

        try:
            response = await call_next(request)
            status = str(response.status_code)
        except Exception:
            status = "500"
            raise
        finally:
            duration = time.time() - start_time
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=path,
                status=status,
                tenant_id=tenant_id,
            ).inc()
            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=path,
                tenant_id=tenant_id,
            ).observe(duration)

        return response
