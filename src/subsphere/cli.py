#!/usr/bin/env python
"""
CLI management commands for the subscription engine.

Thin wrappers over the SubscriptionService batch jobs, meant to be run
from cron or by hand.
"""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import click

from subsphere.db import create_all_tables_async, get_async_db
from subsphere.entitlements.enums import FeatureResetPeriod
from subsphere.entitlements.service import BatchResult, SubscriptionService
from subsphere.logging import setup_logging


class AsyncSessionManager(Protocol):
    async def __aenter__(self) -> Any: ...  # pragma: no cover - protocol definition
    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> Any: ...  # pragma: no cover


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    session_factory: Callable[[], AsyncSessionManager]
    init_db: Callable[[], Awaitable[None]]
    service_factory: Callable[[Any], SubscriptionService]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        session_factory=get_async_db,
        init_db=create_all_tables_async,
        service_factory=SubscriptionService,
    )


def _echo_result(result: BatchResult) -> None:
    mode = " (dry run)" if result.dry_run else ""
    click.echo(
        f"{result.job}{mode}: processed={result.processed} succeeded={result.succeeded} "
        f"failed={result.failed} skipped={result.skipped}"
    )
    for item in result.items:
        target = item.subscription_id if item.usage_id is None else f"usage {item.usage_id}"
        line = f"  {item.status:12} {target}"
        if item.feature_key:
            line += f" [{item.feature_key}]"
        if item.error:
            line += f" - {item.error}"
        click.echo(line)


async def _run_job(
    deps: CLIDependencies, job: Callable[[SubscriptionService], Awaitable[BatchResult]]
) -> BatchResult:
    async with deps.session_factory() as session:
        return await job(deps.service_factory(session))


@click.group()
def cli() -> None:
    """Subscription entitlement engine CLI."""
    setup_logging()


@cli.command()
def init_database() -> None:
    """Create the subscription tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    asyncio.run(deps.init_db())
    click.echo("Database initialized successfully!")


@cli.command()
@click.option("--dry-run", is_flag=True, help="List overdue subscriptions without expiring them")
@click.option("--limit", type=int, default=None, help="Maximum subscriptions to process")
def expire_subscriptions(dry_run: bool, limit: int | None) -> None:
    """Expire subscriptions whose grace period has ended."""
    deps = _get_cli_dependencies()
    result = asyncio.run(
        _run_job(
            deps,
            lambda service: service.expire_overdue_subscriptions(limit=limit, dry_run=dry_run),
        )
    )
    _echo_result(result)
    if result.failed:
        sys.exit(1)


@cli.command()
@click.option("--dry-run", is_flag=True, help="List due subscriptions without renewing them")
@click.option("--limit", type=int, default=None, help="Maximum subscriptions to process")
def renew_subscriptions(dry_run: bool, limit: int | None) -> None:
    """Renew auto-renewing subscriptions whose period has ended."""
    deps = _get_cli_dependencies()
    result = asyncio.run(
        _run_job(
            deps,
            lambda service: service.auto_renew_eligible_subscriptions(limit=limit, dry_run=dry_run),
        )
    )
    _echo_result(result)
    if result.failed:
        sys.exit(1)


@cli.command()
@click.option(
    "--period",
    type=click.Choice([period.value for period in FeatureResetPeriod.automatic()] + ["all"]),
    default="all",
    show_default=True,
    help="Reset period to sweep",
)
@click.option("--dry-run", is_flag=True, help="List usage rows without resetting them")
@click.option("--limit", type=int, default=None, help="Maximum rows per period")
def reset_usage(period: str, dry_run: bool, limit: int | None) -> None:
    """Reset usage counters whose period has rolled over."""
    deps = _get_cli_dependencies()
    result = asyncio.run(
        _run_job(
            deps,
            lambda service: service.reset_due_usage(period=period, limit=limit, dry_run=dry_run),
        )
    )
    _echo_result(result)
    if result.failed:
        sys.exit(1)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the raw JSON report")
def health(as_json: bool) -> None:
    """Report lifecycle health and subscription counts."""
    deps = _get_cli_dependencies()

    async def _health() -> dict[str, Any]:
        async with deps.session_factory() as session:
            service = deps.service_factory(session)
            report = await service.get_health_status()
            report["statistics"] = await service.get_subscription_statistics()
            return report

    report = asyncio.run(_health())

    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
    else:
        status = "✓ Healthy" if report["healthy"] else "✗ Sweeps are behind"
        click.echo(f"\nStatus: {status}")
        click.echo("-" * 40)
        for key in ("active", "trial", "overdue_for_expiry", "due_for_renewal"):
            click.echo(f"{key:20} {report[key]}")
        click.echo(f"{'total':20} {report['statistics']['total']}")

    if not report["healthy"]:
        sys.exit(1)


if __name__ == "__main__":
    cli()
