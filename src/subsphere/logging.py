"""
structlog configuration for the entitlement engine.

Entry points (CLI, Celery worker) call ``setup_logging()`` once; library
modules only do ``structlog.get_logger(__name__)`` and log a message plus
key/value context.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

from subsphere.settings import get_settings

AUDIT_LOGGER = "subsphere.audit"


def _add_service(_: Any, __: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", get_settings().app_name)
    return event_dict


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structlog on top of the stdlib root logger.

    Args:
        level: Log level name, defaults to ``settings.observability.log_level``
        log_format: ``json`` or ``console``, defaults to ``settings.observability.log_format``
    """
    observability = get_settings().observability
    level = level or observability.log_level.value
    log_format = log_format or observability.log_format

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        _add_service,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_audit_event(
    action: str,
    category: str,
    subscriber: tuple[str, str] | None = None,
    subscription_id: int | None = None,
    **details: Any,
) -> None:
    """
    Write a plan change or administrative sweep to the audit logger.

    Audit entries are log output only; nothing is persisted.
    """
    entry: dict[str, Any] = {"audit_category": category, **details}
    if subscriber is not None:
        entry["subscriber_type"], entry["subscriber_id"] = subscriber
    if subscription_id is not None:
        entry["subscription_id"] = subscription_id

    structlog.get_logger(AUDIT_LOGGER).info(action, **entry)
