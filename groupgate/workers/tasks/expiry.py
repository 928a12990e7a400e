"""
Celery periodic task: flip subscriptions past their expiry to inactive and tell the users.
"""
import logging

from celery.exceptions import SoftTimeLimitExceeded

from groupgate.bot import texts
from groupgate.core.celery_app import celery_app
from groupgate.db.session import SessionLocal
from groupgate.services.entitlements.service import EntitlementService
from groupgate.services.telegram.client import TelegramClient
from groupgate.utils.metrics import subscriptions_expired_total

logger = logging.getLogger(__name__)


@celery_app.task(name="groupgate.workers.tasks.expiry.reconcile_expired_subscriptions", soft_time_limit=900)
def reconcile_expired_subscriptions() -> dict:
    db = SessionLocal()
    try:
        expired = EntitlementService(db).expire_lapsed()
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("expiry_sweep_failed")
        raise
    finally:
        db.close()

    subscriptions_expired_total.inc(len(expired))
    notified = 0
    if expired:
        telegram = TelegramClient()
        try:
            for item in expired:
                try:
                    telegram.send_message(item.telegram_id, texts.subscription_expired(item.group_title, item.group_id))
                    notified += 1
                except SoftTimeLimitExceeded:
                    raise
                except Exception:
                    logger.exception(
                        "expiry_notify_failed",
                        extra={"user_id": item.telegram_id, "group_id": item.group_id},
                    )
        except SoftTimeLimitExceeded:
            logger.warning("expiry_notify_time_limit", extra={"action": f"{notified}/{len(expired)}"})
        finally:
            telegram.close()

    logger.info("expiry_sweep_done", extra={"action": f"expired={len(expired)} notified={notified}"})
    return {"expired": len(expired), "notified": notified}
