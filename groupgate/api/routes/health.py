"""
Probes for the webhook service. /ready fails only on the entitlement store or Redis;
an open gateway breaker or a gateway without deployment credentials is reported, not fatal.
"""
import logging

import redis
from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from groupgate.core.config import settings
from groupgate.db.session import get_db
from groupgate.payments.registry import get_registry
from groupgate.services.circuit_breaker import breaker_states

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    checks: dict[str, str] = {}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        client.ping()
        checks["redis"] = "ok"
    except (SQLAlchemyError, redis.RedisError) as e:
        logger.warning("readiness_failed", extra={"error": str(e)})
        response.status_code = 503
        return {"status": "not_ready", "checks": checks, "error": str(e)}

    registry = get_registry()
    return {
        "status": "ready",
        "checks": checks,
        "breakers": breaker_states(client),
        "gateways_without_defaults": [n for n in registry.names() if not registry.get(n).is_available()],
    }
