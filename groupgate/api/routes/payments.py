"""
Payment webhooks: generic POST /payments/webhook/{provider} plus each gateway's fixed path
(e.g. /payments/webhook/payfast-itn). Both end in WebhookDispatcher.dispatch.
"""
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from groupgate.db.session import get_db
from groupgate.payments.dispatcher import DispatchResult, WebhookDispatcher
from groupgate.payments.errors import PersistenceError, UnknownProviderError
from groupgate.payments.registry import get_registry
from groupgate.services.payments.service import SettlementService
from groupgate.utils.metrics import webhook_duration_seconds, webhook_requests_total

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _dispatch(db: Session, provider: str, payload: dict[str, str]) -> DispatchResult:
    settlement = SettlementService(db)
    dispatcher = WebhookDispatcher(get_registry(), recorder=settlement, on_success=settlement.settle)
    result = dispatcher.dispatch(provider, payload)
    if result.outcome == "processed":
        try:
            db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e
    return result


async def _handle(request: Request, provider: str, db: Session) -> PlainTextResponse:
    started = time.monotonic()
    form = await request.form()
    payload = {key: str(value) for key, value in form.multi_items()}
    try:
        result = await run_in_threadpool(_dispatch, db, provider, payload)
    except UnknownProviderError:
        webhook_requests_total.labels(provider="unknown", outcome="unknown_provider").inc()
        logger.warning("webhook_unknown_provider", extra={"provider": provider})
        return PlainTextResponse("Unknown payment provider", status_code=404)
    except PersistenceError as e:
        db.rollback()
        logger.error("webhook_persistence_failed", extra={"provider": provider, "error": str(e)})
        return PlainTextResponse("Internal error", status_code=500)
    webhook_duration_seconds.labels(provider=provider).observe(time.monotonic() - started)
    return PlainTextResponse(result.message, status_code=result.status_code)


@router.get("/webhook/status")
def webhook_status() -> dict:
    registry = get_registry()
    return {
        "status": "active",
        "providers": registry.names(),
        "default": registry.default_name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _fixed_path_handler(provider: str):
    async def handler(request: Request, db: Session = Depends(get_db)) -> PlainTextResponse:
        return await _handle(request, provider, db)

    return handler


# Fixed paths go first so the generic {provider} route does not swallow them.
for _name, _path in get_registry().custom_paths().items():
    router.add_api_route(
        _path,
        _fixed_path_handler(_name),
        methods=["POST"],
        name=f"{_name}_webhook",
        response_class=PlainTextResponse,
    )


@router.post("/webhook/{provider}", response_class=PlainTextResponse)
async def provider_webhook(provider: str, request: Request, db: Session = Depends(get_db)) -> PlainTextResponse:
    return await _handle(request, provider, db)
