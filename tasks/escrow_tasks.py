"""
tasks/escrow_tasks.py
Periodic escrow jobs driven by Celery beat:
- reconciliation sweep (auto-release unreviewed holds, retry review releases)
- pending-booking expiry (frees slots of unpaid bookings)
- session completion (opens the review window)

Each run takes a Redis job lock so only one worker executes a given job
at a time; a run that finds the lock taken is skipped, not queued.
"""

import asyncio
import logging
import uuid

import redis.asyncio as aioredis

from config.database import create_task_session_factory
from config.redis_client import RedisCache
from config.settings import settings
from services.booking.side_effects import get_dispatcher
from services.payment.processor import get_payment_processor
from services.reconciliation.sweep import (
    complete_elapsed_sessions_once,
    expire_pending_bookings_once,
    run_sweep_once,
)
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _run_locked(job_name: str, job) -> dict:
    client = aioredis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    cache = RedisCache(client)
    owner = f"worker:{uuid.uuid4()}"
    try:
        if not await cache.acquire_job_lock(job_name, owner):
            logger.info(f"{job_name}: another run holds the lock, skipping")
            return {"skipped": True}
        try:
            report = await job(
                create_task_session_factory(),
                get_payment_processor(),
                dispatcher=get_dispatcher(),
            )
        finally:
            await cache.release_job_lock(job_name, owner)
        return report.as_dict()
    finally:
        await client.aclose()


@celery_app.task
def run_reconciliation_sweep():
    """Hourly. Releases escrow for bookings whose review window closed without a review."""
    return asyncio.run(_run_locked("reconciliation_sweep", run_sweep_once))


@celery_app.task
def expire_pending_bookings():
    """Every 5 minutes. Cancels bookings left unpaid past the TTL."""
    return asyncio.run(_run_locked("expire_pending_bookings", expire_pending_bookings_once))


@celery_app.task
def complete_elapsed_sessions():
    """Every 5 minutes. Marks accepted sessions COMPLETED once they have ended."""
    return asyncio.run(_run_locked("complete_elapsed_sessions", complete_elapsed_sessions_once))
