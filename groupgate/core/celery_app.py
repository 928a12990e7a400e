"""
Celery application: broker and result backend from settings.
Beat runs the two sweeps; they are not mutually exclusive across instances and both
tolerate overlapping runs (expiry is a state flip, removal of a gone member is a no-op).
"""
from datetime import timedelta

from celery import Celery
from celery.signals import after_setup_logger

from groupgate.core.config import settings
from groupgate.core.logging import configure_logging

celery_app = Celery(
    "groupgate",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "groupgate.workers.tasks.expiry",
        "groupgate.workers.tasks.auto_removal",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=1800,
    result_expires=86400,
    beat_schedule={
        "reconcile-expired-subscriptions": {
            "task": "groupgate.workers.tasks.expiry.reconcile_expired_subscriptions",
            "schedule": timedelta(seconds=settings.expiry_sweep_interval_seconds),
        },
        "remove-lapsed-members": {
            "task": "groupgate.workers.tasks.auto_removal.remove_lapsed_members",
            "schedule": timedelta(seconds=settings.auto_removal_interval_seconds),
        },
    },
)


@after_setup_logger.connect
def _json_logging(logger=None, **kwargs):
    configure_logging("worker")
