"""
Tests for the Celery sweep tasks.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from subsphere.entitlements.service import BatchItem, BatchResult
from subsphere.tasks import auto_renew_task, expire_overdue_task, reset_usage_task


def _make_async_context_manager(return_value):
    manager = AsyncMock()
    manager.__aenter__.return_value = return_value
    manager.__aexit__.return_value = False
    return manager


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def service():
    service = MagicMock()
    service.expire_overdue_subscriptions = AsyncMock(
        return_value=BatchResult(job="expire_overdue")
    )
    service.auto_renew_eligible_subscriptions = AsyncMock(
        return_value=BatchResult(job="auto_renew")
    )
    service.reset_due_usage = AsyncMock(return_value=BatchResult(job="reset_usage"))
    return service


@pytest.fixture
def patched(session, service):
    """Patch the session factory, service class and engine disposal used by the tasks."""
    with (
        patch(
            "subsphere.tasks.get_async_db",
            MagicMock(return_value=_make_async_context_manager(session)),
        ) as get_db,
        patch("subsphere.tasks.SubscriptionService", return_value=service) as service_cls,
        patch("subsphere.tasks.dispose_engine", new_callable=AsyncMock) as dispose,
    ):
        yield get_db, service_cls, dispose


class TestSweepTasks:
    def test_expire_overdue_task(self, patched, session, service):
        get_db, service_cls, dispose = patched
        result = BatchResult(job="expire_overdue")
        result.record(BatchItem(status="expired", subscription_id=1))
        result.record(BatchItem(status="failed", subscription_id=2, error="boom"))
        service.expire_overdue_subscriptions.return_value = result

        summary = expire_overdue_task(limit=5)

        get_db.assert_called_once_with()
        service_cls.assert_called_once_with(session)
        service.expire_overdue_subscriptions.assert_awaited_once_with(limit=5)
        dispose.assert_awaited_once()
        assert summary == {
            "job": "expire_overdue",
            "processed": 2,
            "succeeded": 1,
            "failed": 1,
            "skipped": 0,
            "dry_run": False,
            "failed_ids": [2],
        }

    def test_auto_renew_task(self, patched, service):
        _, _, dispose = patched
        result = BatchResult(job="auto_renew")
        result.record(BatchItem(status="renewed", subscription_id=7))
        service.auto_renew_eligible_subscriptions.return_value = result

        summary = auto_renew_task()

        service.auto_renew_eligible_subscriptions.assert_awaited_once_with(limit=None)
        dispose.assert_awaited_once()
        assert summary["job"] == "auto_renew"
        assert summary["succeeded"] == 1
        assert summary["failed_ids"] == []
        assert "items" not in summary

    def test_reset_usage_task_passes_period(self, patched, service):
        reset_usage_task("monthly")

        service.reset_due_usage.assert_awaited_once_with(period="monthly", limit=None)

    def test_reset_usage_task_defaults_to_all_periods(self, patched, service):
        summary = reset_usage_task(limit=10)

        service.reset_due_usage.assert_awaited_once_with(period="all", limit=10)
        assert summary["processed"] == 0

    def test_engine_disposed_when_job_raises(self, patched, service):
        _, _, dispose = patched
        service.auto_renew_eligible_subscriptions.side_effect = RuntimeError("database gone")

        with pytest.raises(RuntimeError, match="database gone"):
            auto_renew_task()

        dispose.assert_awaited_once()

    def test_engine_disposed_when_session_fails(self, patched, service):
        get_db, _, dispose = patched
        get_db.return_value.__aenter__.side_effect = ConnectionError("refused")

        with pytest.raises(ConnectionError):
            expire_overdue_task()

        service.expire_overdue_subscriptions.assert_not_awaited()
        dispose.assert_awaited_once()

    def test_task_names(self):
        assert expire_overdue_task.name == "subsphere.expire_overdue"
        assert auto_renew_task.name == "subsphere.auto_renew"
        assert reset_usage_task.name == "subsphere.reset_usage"
