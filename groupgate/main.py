"""
Main FastAPI application for the groupgate webhook service.
Serves health, payment webhooks and metrics.
"""
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request

from groupgate.core.config import settings
from groupgate.core.logging import configure_logging
from groupgate.api.routes import health, payments
from groupgate.utils.metrics import router as metrics_router

configure_logging("api")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Groupgate API",
    description="Payment webhooks for paid Telegram group subscriptions",
    version="1.0.0",
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get(settings.request_id_header) or uuid4().hex
    started = time.monotonic()
    response = await call_next(request)
    response.headers[settings.request_id_header] = request_id
    logger.info(
        "http_request",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "status_code": response.status_code,
            "latency_ms": round((time.monotonic() - started) * 1000, 1),
        },
    )
    return response


# Routers
app.include_router(health.router, tags=["health"])
app.include_router(payments.router)
app.include_router(metrics_router)
