"""
OrderGuard — Observability Layer

Provides:
- Structured JSON logging
- Prometheus metrics
- Request correlation IDs
"""

import logging
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional

from fastapi import Request, Response
from prometheus_client import Counter, Histogram
from pythonjsonlogger import jsonlogger

from orderguard.config import settings

# ===========================================================================
# Context Variables (for request correlation)
# ===========================================================================
REQUEST_ID_CTX: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
USER_ID_CTX: ContextVar[Optional[str]] = ContextVar("user_id", default=None)


def get_request_id() -> Optional[str]:
    return REQUEST_ID_CTX.get()


def set_request_id(request_id: str) -> None:
    REQUEST_ID_CTX.set(request_id)


def get_user_id() -> Optional[str]:
    return USER_ID_CTX.get()


def set_user_id(user_id: str) -> None:
    USER_ID_CTX.set(user_id)


# ===========================================================================
# Structured Logging
# ===========================================================================
class StructuredLogFormatter(jsonlogger.JsonFormatter):
    """JSON log formatter that stamps request / user context on every record."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        request_id = get_request_id()
        user_id = get_user_id()
        if request_id:
            log_record["request_id"] = request_id
        if user_id:
            log_record["user_id"] = user_id

        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["env"] = settings.APP_ENV
        log_record["service"] = settings.APP_NAME
        log_record["version"] = settings.APP_VERSION


def setup_logging() -> None:
    """Configure structured JSON logging for the application."""
    if not settings.STRUCTURED_LOGGING_ENABLED:
        logging.basicConfig(
            level=settings.LOG_LEVEL,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.LOG_LEVEL)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(StructuredLogFormatter())
    root_logger.addHandler(console_handler)

    for logger_name in ["orderguard", "fastapi", "uvicorn"]:
        logging.getLogger(logger_name).setLevel(settings.LOG_LEVEL)
    # SQL echo at INFO is far too chatty for production.
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


# ===========================================================================
# Prometheus Metrics
# ===========================================================================
class Metrics:
    """Application metrics collector."""

    # Request metrics
    http_requests_total = Counter(
        "orderguard_http_requests_total",
        "Total HTTP requests",
        ["method", "endpoint", "status"],
    )

    http_request_duration_seconds = Histogram(
        "orderguard_http_request_duration_seconds",
        "HTTP request duration in seconds",
        ["method", "endpoint"],
        buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    )

    # Checkout metrics
    checkout_decisions_total = Counter(
        "orderguard_checkout_decisions_total",
        "Checkout decisions",
        ["outcome"],  # allowed, blocked, error
    )

    checkout_evaluation_duration_seconds = Histogram(
        "orderguard_checkout_evaluation_duration_seconds",
        "Checkout evaluation time",
        buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
    )

    blocked_attempts_total = Counter(
        "orderguard_blocked_attempts_total",
        "Blocked checkout attempts",
        ["type"],  # phone_cooldown, ip_cooldown, blocklist_phone, …
    )

    store_lookup_errors_total = Counter(
        "orderguard_store_lookup_errors_total",
        "Order store lookups that failed open",
        ["check"],
    )

    # Order metrics
    orders_recorded_total = Counter(
        "orderguard_orders_recorded_total",
        "Orders recorded",
        ["status"],  # success, unscored
    )

    duplicate_score_distribution = Histogram(
        "orderguard_duplicate_score_distribution",
        "Distribution of duplicate percentages",
        buckets=(0, 10, 30, 40, 50, 70, 90, 100),
    )

    # Kafka metrics
    kafka_messages_sent_total = Counter(
        "orderguard_kafka_messages_sent_total",
        "Total Kafka messages sent",
        ["topic"],
    )

    kafka_messages_errors_total = Counter(
        "orderguard_kafka_messages_errors_total",
        "Kafka message send errors",
        ["topic"],
    )

    # Notification metrics
    notifications_total = Counter(
        "orderguard_notifications_total",
        "Webhook notifications",
        ["status"],  # delivered, failed
    )


# ===========================================================================
# Middleware for automatic metric collection
# ===========================================================================
async def metrics_middleware(request: Request, call_next) -> Response:
    """Record HTTP request metrics."""
    start_time = time.perf_counter()
    path = request.url.path
    method = request.method
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
    finally:
        duration = time.perf_counter() - start_time
        Metrics.http_requests_total.labels(
            method=method,
            endpoint=path,
            status=status_code,
        ).inc()
        Metrics.http_request_duration_seconds.labels(
            method=method,
            endpoint=path,
        ).observe(duration)

    return response


# ===========================================================================
# Logging utilities
# ===========================================================================
def log_checkout_decision(
    allowed: bool,
    blocked_by: Optional[str],
    duration_ms: float,
) -> None:
    logger = logging.getLogger("orderguard.checkout")
    logger.info(
        "Checkout evaluated",
        extra={
            "allowed": allowed,
            "blocked_by": blocked_by,
            "duration_ms": duration_ms,
        },
    )
    Metrics.checkout_decisions_total.labels(
        outcome="allowed" if allowed else "blocked"
    ).inc()
    Metrics.checkout_evaluation_duration_seconds.observe(duration_ms / 1000)


def log_order_scored(order_id: str, percentage: int, signal_kinds: list) -> None:
    logger = logging.getLogger("orderguard.scoring")
    logger.info(
        "Order scored",
        extra={
            "order_id": order_id,
            "percentage": percentage,
            "signals": signal_kinds,
        },
    )
    Metrics.duplicate_score_distribution.observe(percentage)


def log_blocked_attempt(attempt_type: str, phone: Optional[str], ip: Optional[str]) -> None:
    logger = logging.getLogger("orderguard.blocked")
    logger.warning(
        "Checkout blocked",
        extra={"type": attempt_type, "phone": phone, "ip": ip},
    )
    Metrics.blocked_attempts_total.labels(type=attempt_type).inc()
