"""ARQ job enqueueing utilities.

WHAT:
    Async helper the integrations router uses to queue backfills when
    SYNC_BACKEND=arq.

WHY:
    - Provides an async interface for FastAPI routes to enqueue jobs
    - Creates the Redis pool on demand and reuses it

USAGE:
    from storepulse.workers.arq_enqueue import enqueue_backfill_job

    await enqueue_backfill_job(integration.id)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from arq import create_pool
from arq.connections import ArqRedis

from storepulse.workers.arq_worker import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

# Global pool reference
_arq_pool: Optional[ArqRedis] = None


async def get_arq_pool() -> ArqRedis:
    """Get or create the ARQ Redis pool."""
    global _arq_pool
    if _arq_pool is None:
        logger.info("[ARQ-ENQUEUE] Creating new Redis pool...")
        _arq_pool = await create_pool(get_redis_settings())
    return _arq_pool


async def reset_arq_pool() -> None:
    """Close the pool (app shutdown)."""
    global _arq_pool
    if _arq_pool is not None:
        await _arq_pool.close()
        _arq_pool = None
        logger.info("[ARQ-ENQUEUE] Redis pool reset")


async def enqueue_backfill_job(integration_id: UUID, days: Optional[int] = None) -> Dict[str, Any]:
    """Queue a backfill for one integration.

    Returns:
        Dict with job_id and status
    """
    pool = await get_arq_pool()

    job = await pool.enqueue_job(
        "process_backfill_job",
        str(integration_id),
        days,
        _queue_name=QUEUE_NAME,
    )

    if job:
        logger.info(f"[ARQ] Enqueued backfill job {job.job_id} for integration {integration_id}")
        return {"job_id": job.job_id, "status": "enqueued"}

    logger.warning(f"[ARQ] Backfill already queued for integration {integration_id}")
    return {"job_id": None, "status": "skipped_or_duplicate"}
