"""Job status relay — short-lived job records in Redis, republished on change.

Learn: This is cache-aside over the transformations table, not a queue.
The API writes a record when a job starts; the n8n completion webhook
merges the outcome into it. Every write with a user_id is republished on
the transformation:complete channel so the realtime process can push it
to the owner's sockets. Records expire after job_status_ttl_seconds and
readers fall back to PostgreSQL when a record is gone.

Concurrent writers are not coordinated: the last write wins, and repeated
webhook deliveries simply rewrite the same record.
"""

from typing import Any, Optional

import structlog

from artifyme.config import settings
from artifyme.realtime.pubsub import (
    CHANNEL_TRANSFORMATION,
    get_cache,
    publish_event,
    set_cache,
)

logger = structlog.get_logger()

# Never cached: the image payload stays in the database only.
_EXCLUDED_FIELDS = {"image", "input_image_data"}


def job_key(job_id: str) -> str:
    return f"transformation:{job_id}"


async def write_job(job_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields over the cached record, refresh its TTL, and republish.

    Returns the merged record.
    """
    key = job_key(job_id)
    record = await get_cache(key) or {}
    record.update(
        {k: v for k, v in fields.items() if k not in _EXCLUDED_FIELDS}
    )
    record.setdefault("job_id", str(job_id))

    await set_cache(key, record, settings.job_status_ttl_seconds)

    if record.get("user_id"):
        await publish_event(CHANNEL_TRANSFORMATION, record)

    logger.debug("job_status.written", job_id=str(job_id), status=record.get("status"))
    return record


async def read_job(job_id: str) -> Optional[dict[str, Any]]:
    """Return the cached record, or None when it is missing or expired."""
    return await get_cache(job_key(job_id))
