"""Escalation sweep bootstrap for rq-scheduler.

Single-process deployments run the sweep inside the API lifespan. When the
API is scaled out, disable that (`ESCALATION_SWEEP_ENABLED=false`) and
register this recurring job once so exactly one worker sweeps per interval.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

from redis import Redis
from rq_scheduler import Scheduler  # type: ignore[import-untyped]

from approval_gate.core.config import settings
from approval_gate.core.logging import get_logger

logger = get_logger(__name__)


async def _sweep() -> None:
    from approval_gate.db.session import async_session_maker
    from approval_gate.services.escalation_scheduler import run_sweep_once

    async with async_session_maker() as session:
        await run_sweep_once(session)


def run_sweep_job() -> None:
    """RQ entrypoint: run one sweep to completion."""
    asyncio.run(_sweep())


def bootstrap_sweep_schedule(interval_seconds: int | None = None) -> None:
    """Register the recurring sweep job and keep it idempotent."""
    connection = Redis.from_url(settings.redis_url)
    scheduler = Scheduler(queue_name=settings.rq_queue_name, connection=connection)

    for job in scheduler.get_jobs():
        if job.id == settings.sweep_schedule_id:
            scheduler.cancel(job)

    effective_interval_seconds = (
        settings.escalation_sweep_interval_seconds
        if interval_seconds is None
        else interval_seconds
    )

    scheduler.schedule(
        datetime.now(tz=UTC) + timedelta(seconds=5),
        func=run_sweep_job,
        interval=effective_interval_seconds,
        repeat=None,
        id=settings.sweep_schedule_id,
        queue_name=settings.rq_queue_name,
    )
    logger.info(
        "approval.sweep.schedule_registered",
        extra={
            "schedule_id": settings.sweep_schedule_id,
            "interval_seconds": effective_interval_seconds,
        },
    )
