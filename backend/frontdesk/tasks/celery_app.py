"""
Celery application configuration.

Runs the PMS credential sweeps in the background with:
- Redis as message broker
- Beat schedule for the expiring-token and full sweeps
- A dedicated queue so sweeps never wait behind other work
"""

import logging

from celery import Celery
from kombu import Exchange, Queue

from ..core.config import settings


logger = logging.getLogger(__name__)


# =============================================================================
# Celery Application
# =============================================================================

celery_app = Celery(
    "frontdesk",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "frontdesk.tasks.credential_tasks",
    ],
)


# =============================================================================
# Celery Configuration
# =============================================================================

celery_app.conf.update(
    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task time limits
    task_time_limit=settings.celery_task_time_limit,  # Hard limit (kill task)
    task_soft_time_limit=settings.celery_task_time_limit - 30,  # Soft limit (raise exception)

    # Worker settings
    worker_concurrency=settings.celery_worker_concurrency,
    worker_prefetch_multiplier=1,  # Sweeps are long; take one at a time
    worker_max_tasks_per_child=1000,

    # Result backend settings
    result_expires=3600,

    # Broker settings
    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,

    # Task acknowledgement
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Task routing
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    beat_scheduler="celery.beat:PersistentScheduler",
    beat_schedule_filename="/tmp/celerybeat-schedule",  # Use /tmp for writable location

    # Beat schedule for periodic tasks
    beat_schedule={
        "refresh-expiring-pms-tokens": {
            "task": "frontdesk.tasks.credential_tasks.refresh_expiring_tokens",
            "schedule": settings.token_expiring_sweep_minutes * 60.0,
        },
        "refresh-all-pms-tokens": {
            "task": "frontdesk.tasks.credential_tasks.refresh_all_tokens",
            "schedule": settings.token_full_sweep_hours * 3600.0,
        },
    },
)


# =============================================================================
# Queue Configuration
# =============================================================================

default_exchange = Exchange("default", type="direct")
credentials_exchange = Exchange("credentials", type="direct")

celery_app.conf.task_queues = (
    Queue("default", default_exchange, routing_key="default"),
    Queue("credentials", credentials_exchange, routing_key="credentials"),
)

celery_app.conf.task_routes = {
    "frontdesk.tasks.credential_tasks.*": {
        "queue": "credentials",
        "routing_key": "credentials",
    },
}
