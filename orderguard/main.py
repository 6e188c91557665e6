"""
OrderGuard — Main Application Entry Point
Checkout fraud prevention for Bangladeshi e-commerce storefronts
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from slowapi.errors import RateLimitExceeded

from orderguard.api.limiter import limiter
from orderguard.api.routes import auth, blocklist, checkout, dashboard, drafts, health, orders, phones
from orderguard.config import settings
from orderguard.services.db import init_db
from orderguard.services.errors import OrderGuardException, exception_to_response
from orderguard.services.kafka_producer import KafkaProducer
from orderguard.services.observability import metrics_middleware, set_request_id, setup_logging

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
setup_logging()
logger = logging.getLogger("orderguard")


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Bootstrap resources once; tear down on shutdown."""
    logger.info("OrderGuard initialising")

    await init_db()

    if settings.KAFKA_BOOTSTRAP_SERVERS:
        producer = KafkaProducer()
        try:
            await producer.start()
            app.state.kafka_producer = producer
        except Exception as exc:
            # Notifications are best-effort; checkout protection must still start.
            logger.error("Kafka producer failed to start: %s", exc)
    else:
        logger.warning("Kafka disabled, no bootstrap servers configured.")

    yield

    producer = getattr(app.state, "kafka_producer", None)
    if producer is not None:
        await producer.stop()
    logger.info("OrderGuard shut down complete.")


# ---------------------------------------------------------------------------
# FastAPI instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="OrderGuard",
    description=(
        "Checkout fraud prevention for Bangladeshi e-commerce. Phone and IP "
        "cooldowns, blocklists, same-address and similar-name detection, and "
        "duplicate-order scoring."
    ),
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production() else None,
    redoc_url="/redoc" if not settings.is_production() else None,
    openapi_url="/openapi.json" if not settings.is_production() else None,
)

# ---------------------------------------------------------------------------
# Middleware Stack (order matters)
# ---------------------------------------------------------------------------

# 1. GZip compression
app.add_middleware(GZipMiddleware, minimum_size=1000)

# 2. CORS
if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        allow_credentials=True,
    )

# 3. Trusted hosts
if settings.ALLOWED_HOSTS != ["*"]:
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)

# 4. Rate limiting
app.state.limiter = limiter


@app.middleware("http")
async def metrics_collection_middleware(request: Request, call_next) -> Response:
    if settings.METRICS_ENABLED:
        return await metrics_middleware(request, call_next)
    return await call_next(request)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next) -> Response:
    """Attach a request-id, set context variables and measure latency."""
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    set_request_id(request_id)
    request.state.request_id = request_id
    start_time = time.perf_counter()

    try:
        response: Response = await call_next(request)
    except Exception as exc:
        response, _ = exception_to_response(exc, request_id=request_id)

    elapsed_ms = (time.perf_counter() - start_time) * 1_000
    response.headers["X-Request-Id"] = request_id
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"

    logger.info(
        "HTTP request completed",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(elapsed_ms, 2),
        },
    )
    return response


# ---------------------------------------------------------------------------
# Exception Handlers
# ---------------------------------------------------------------------------
@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": "RATE_LIMIT_EXCEEDED",
                "message": f"Too many requests. {exc.detail}",
                "request_id": getattr(request.state, "request_id", None),
            }
        },
    )


@app.exception_handler(OrderGuardException)
async def orderguard_exception_handler(request: Request, exc: OrderGuardException):
    resp, _ = exception_to_response(exc, request_id=getattr(request.state, "request_id", None))
    return resp


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    resp, _ = exception_to_response(exc, request_id=getattr(request.state, "request_id", None))
    return resp


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(health.router, prefix="/api/v1/health", tags=["Health"])
app.include_router(auth.router, prefix="/api/v1/auth", tags=["Authentication"])
app.include_router(checkout.router, prefix="/api/v1/checkout", tags=["Checkout"])
app.include_router(orders.router, prefix="/api/v1/orders", tags=["Orders"])
app.include_router(drafts.router, prefix="/api/v1/drafts", tags=["Drafts"])
app.include_router(blocklist.router, prefix="/api/v1/blocklist", tags=["Blocklist"])
app.include_router(phones.router, prefix="/api/v1/phones", tags=["Phones"])
app.include_router(dashboard.router, prefix="/api/v1/dashboard", tags=["Dashboard"])


# ---------------------------------------------------------------------------
# Prometheus Metrics Endpoint
# ---------------------------------------------------------------------------
if settings.METRICS_ENABLED:
    app.mount("/metrics", make_asgi_app())


# ---------------------------------------------------------------------------
# Custom OpenAPI schema
# ---------------------------------------------------------------------------
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {}).setdefault("securitySchemes", {}).update({
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "JWT Bearer token authentication",
        },
        "apiKeyAuth": {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-Key",
            "description": "Storefront API key",
        },
    })
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


# ---------------------------------------------------------------------------
# Root endpoint
# ---------------------------------------------------------------------------
@app.get("/", tags=["Info"])
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.APP_ENV,
        "docs": "/docs" if not settings.is_production() else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("orderguard.main:app", host="0.0.0.0", port=settings.APP_PORT)
