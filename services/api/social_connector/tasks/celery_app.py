"""Celery application configuration."""

import threading

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_failure, task_postrun, task_retry, worker_process_init, worker_shutting_down

from social_connector.config import get_settings
from social_connector.metrics import celery_task_total
from social_connector.middleware.logging import setup_logging

settings = get_settings()

# Set on worker shutdown; sweeps stop starting new tenants once it is set
shutdown_event = threading.Event()

celery_app = Celery(
    "social_connector",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "social_connector.tasks.sync_tasks.*": {"queue": "sync"},
    },
    beat_schedule={
        # Periodic content sweep
        "scheduled-content-sync": {
            "task": "social_connector.tasks.sync_tasks.scheduled_content_sync",
            "schedule": crontab(minute=0, hour=f"*/{settings.sync_interval_hours}"),
        },
        # Daily sweep at midnight UTC
        "daily-content-sync": {
            "task": "social_connector.tasks.sync_tasks.scheduled_content_sync",
            "schedule": crontab(hour=0, minute=0),
        },
        # Token refresh sweep: every 12 hours
        "refresh-expiring-tokens": {
            "task": "social_connector.tasks.sync_tasks.refresh_expiring_tokens",
            "schedule": crontab(minute=30, hour="*/12"),
        },
        # Expired OAuth states: hourly
        "purge-expired-oauth-states": {
            "task": "social_connector.tasks.sync_tasks.purge_expired_oauth_states",
            "schedule": crontab(minute=15),
        },
    },
)

celery_app.autodiscover_tasks(["social_connector.tasks"], related_name="sync_tasks")


@worker_process_init.connect
def _init_worker_logging(**kwargs):
    setup_logging(debug=settings.debug)


@worker_shutting_down.connect
def _on_worker_shutting_down(**kwargs):
    shutdown_event.set()


@task_postrun.connect
def _count_task_success(task=None, state=None, **kwargs):
    if state == "SUCCESS":
        celery_task_total.labels(task_name=task.name, status="success").inc()


@task_failure.connect
def _count_task_failure(sender=None, **kwargs):
    celery_task_total.labels(task_name=sender.name, status="failure").inc()


@task_retry.connect
def _count_task_retry(sender=None, **kwargs):
    celery_task_total.labels(task_name=sender.name, status="retry").inc()
