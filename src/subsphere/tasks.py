"""
Celery tasks wrapping the subscription sweeps.

Each task opens its own event loop and session, runs one batch job and
returns the BatchResult counters as a JSON-friendly dict.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from subsphere.celery_app import celery_app
from subsphere.db import dispose_engine, get_async_db
from subsphere.entitlements.service import BatchResult, SubscriptionService

logger = structlog.get_logger(__name__)


async def _run_sweep(job: Callable[[SubscriptionService], Awaitable[BatchResult]]) -> BatchResult:
    try:
        async with get_async_db() as session:
            return await job(SubscriptionService(session))
    finally:
        # Pooled connections belong to this task's event loop
        await dispose_engine()


def _summary(result: BatchResult) -> dict[str, Any]:
    summary = result.model_dump(exclude={"items"})
    summary["failed_ids"] = [
        item.subscription_id for item in result.items if item.status == "failed"
    ]
    logger.info("Sweep finished", **summary)
    return summary


@celery_app.task(name="subsphere.expire_overdue")
def expire_overdue_task(limit: int | None = None) -> dict[str, Any]:
    """Periodic task expiring subscriptions past their grace period."""
    result = asyncio.run(
        _run_sweep(lambda service: service.expire_overdue_subscriptions(limit=limit))
    )
    return _summary(result)


@celery_app.task(name="subsphere.auto_renew")
def auto_renew_task(limit: int | None = None) -> dict[str, Any]:
    """Periodic task renewing auto-renewing subscriptions whose period ended."""
    result = asyncio.run(
        _run_sweep(lambda service: service.auto_renew_eligible_subscriptions(limit=limit))
    )
    return _summary(result)


@celery_app.task(name="subsphere.reset_usage")
def reset_usage_task(period: str = "all", limit: int | None = None) -> dict[str, Any]:
    """Periodic task resetting usage counters for one reset period."""
    result = asyncio.run(
        _run_sweep(lambda service: service.reset_due_usage(period=period, limit=limit))
    )
    return _summary(result)


__all__ = [
    "auto_renew_task",
    "expire_overdue_task",
    "reset_usage_task",
]
