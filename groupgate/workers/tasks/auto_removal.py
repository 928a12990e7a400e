"""
Celery periodic task: remove recorded members without an active subscription from groups
that enabled auto-removal. Admins and members inside the grace period are kept.
"""
import logging

from celery.exceptions import SoftTimeLimitExceeded

from groupgate.bot import texts
from groupgate.core.celery_app import celery_app
from groupgate.db.session import SessionLocal
from groupgate.services.entitlements.service import EntitlementService
from groupgate.services.groups.service import GroupService
from groupgate.services.telegram.client import TelegramClient
from groupgate.services.users.service import UserService
from groupgate.utils.metrics import members_removed_total

logger = logging.getLogger(__name__)


@celery_app.task(name="groupgate.workers.tasks.auto_removal.remove_lapsed_members", soft_time_limit=1500)
def remove_lapsed_members() -> dict:
    db = SessionLocal()
    telegram = TelegramClient()
    removed = 0
    failed = 0
    try:
        entitlements = EntitlementService(db)
        users = UserService(db)
        for policy in GroupService(db).auto_removal_groups():
            for member in entitlements.lapsed_members(policy):
                try:
                    was_member = telegram.remove_member(policy.group_id, member.telegram_id)
                except SoftTimeLimitExceeded:
                    raise
                except Exception:
                    failed += 1
                    logger.exception(
                        "auto_removal_kick_failed",
                        extra={"user_id": member.telegram_id, "group_id": policy.group_id},
                    )
                    continue

                users.forget_membership(member.user_id, policy.group_id)
                db.commit()
                if not was_member:
                    continue
                removed += 1
                members_removed_total.labels(source="sweep").inc()
                try:
                    telegram.send_message(member.telegram_id, texts.removed_for_lapse(policy.group_title, policy.group_id))
                except SoftTimeLimitExceeded:
                    raise
                except Exception:
                    logger.exception(
                        "auto_removal_notify_failed",
                        extra={"user_id": member.telegram_id, "group_id": policy.group_id},
                    )
    except SoftTimeLimitExceeded:
        db.rollback()
        logger.warning("auto_removal_time_limit", extra={"action": f"removed={removed}"})
    except Exception:
        db.rollback()
        logger.exception("auto_removal_sweep_failed")
        raise
    finally:
        telegram.close()
        db.close()

    logger.info("auto_removal_sweep_done", extra={"action": f"removed={removed} failed={failed}"})
    return {"removed": removed, "failed": failed}
