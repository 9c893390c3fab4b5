"""
Celery application configuration.

Runs the lifecycle sweeps on the cron schedule in ``settings.schedule``.
Start a worker with beat embedded:

    celery -A subsphere.celery_app worker -B
"""

from typing import Any

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from subsphere.logging import setup_logging
from subsphere.settings import settings

# Create Celery application
celery_app = Celery(
    "subsphere",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["subsphere.tasks"],
)

# Configure Celery settings
celery_app.conf.update(
    task_default_queue="default",
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.celery.timezone,
    enable_utc=True,
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Sweeps are idempotent, so redelivery after a crash is safe
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)


def cron_schedule(expression: str) -> crontab:
    """Build a crontab from a five-field cron expression (m h dom mon dow)."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(fields)}: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


@worker_process_init.connect  # type: ignore[misc]
def configure_worker_logging(**kwargs: Any) -> None:
    setup_logging()


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the lifecycle sweeps with beat."""
    from subsphere.tasks import auto_renew_task, expire_overdue_task, reset_usage_task

    schedule = settings.schedule

    sender.add_periodic_task(
        cron_schedule(schedule.expiry_check),
        expire_overdue_task.s(),
        name="subscriptions-expire-overdue",
    )
    sender.add_periodic_task(
        cron_schedule(schedule.renewal_check),
        auto_renew_task.s(),
        name="subscriptions-auto-renew",
    )

    # Usage resets, one entry per period
    for period, expression in (
        ("daily", schedule.daily_reset),
        ("monthly", schedule.monthly_reset),
        ("yearly", schedule.yearly_reset),
    ):
        sender.add_periodic_task(
            cron_schedule(expression),
            reset_usage_task.s(period),
            name=f"usage-reset-{period}",
        )
