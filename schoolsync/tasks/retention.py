"""
ARQ background task: prune change records past the retention horizon.

For deployments that run retention outside the API process. Scheduled to
run every hour.
"""

from __future__ import annotations

from datetime import timedelta

import structlog

from schoolsync.core.config import get_settings
from schoolsync.core.database import async_session_factory
from schoolsync.sync.changelog import ChangeLog

log = structlog.get_logger()


async def prune_change_log(ctx: dict) -> int:
    """Delete ChangeRecords older than ``change_retention_days``.

    ``ctx`` may carry a ``session_factory`` (tests, custom workers).
    Returns the number of records deleted.
    """
    settings = get_settings()
    factory = ctx.get("session_factory") or async_session_factory
    horizon = timedelta(days=settings.change_retention_days)

    deleted = await ChangeLog(factory).prune(horizon)

    log.info("retention.batch_pruned", deleted=deleted, retention_days=settings.change_retention_days)
    return deleted


# ARQ worker settings
class WorkerSettings:
    """ARQ worker configuration."""

    functions = [prune_change_log]
    cron_jobs = [
        # Run every hour
        {
            "coroutine": prune_change_log,
            "hour": None,
            "minute": 15,
        },
    ]
