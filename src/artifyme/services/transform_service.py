"""Transform service — starting jobs, reporting status, recording outcomes.

Learn: A job's life:
1. start(): check credits → insert pending row → write relay record →
   trigger n8n → deduct one credit (unless subscribed) → commit
2. n8n runs the model and POSTs the outcome to our webhook
3. complete(): update the row → merge the outcome into the relay record,
   which republishes it to the owner's sockets

If the relay record cannot be written (Redis down) or n8n cannot be
reached, the job is marked failed and no credit is taken.
The credit check and decrement are not guarded against two concurrent
requests from the same user; the last write wins.
"""

import base64
import uuid
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.config import settings
from artifyme.db.models import Subscription, Transformation, User, as_utc, utcnow
from artifyme.errors import (
    NotFoundError,
    PaymentRequiredError,
    ProviderError,
    ValidationError,
)
from artifyme.realtime import job_status
from artifyme.services.catalog import STYLE_IDS
from artifyme.services.n8n_service import N8NClient

logger = structlog.get_logger()

ESTIMATED_TIME = "30-60 seconds"


def n8n_callback_url() -> str:
    return f"{settings.api_url.rstrip('/')}/api/webhooks/n8n/transformation-complete"


def _status_from_row(t: Transformation) -> dict:
    return {
        "job_id": str(t.id),
        "status": t.status,
        "style": t.style,
        "output_url": t.output_image_url,
        "error": t.error_message,
        "created_at": as_utc(t.created_at),
        "completed_at": as_utc(t.completed_at),
    }


class TransformService:
    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def validate_upload(content_type: Optional[str], data: bytes, style: str) -> None:
        if content_type not in settings.allowed_image_types:
            raise ValidationError(
                "Invalid file type. Only JPEG, PNG, and WebP are allowed.",
                code="INVALID_FILE_TYPE",
            )
        if len(data) > settings.max_upload_bytes:
            raise ValidationError(
                f"File too large. Maximum size is {settings.max_upload_bytes // (1024 * 1024)}MB.",
                code="FILE_TOO_LARGE",
            )
        if not data:
            raise ValidationError("No image file provided", code="NO_FILE")
        if style not in STYLE_IDS:
            raise ValidationError(f"Invalid style: {style}", code="INVALID_STYLE")

    async def _active_subscription(self, user: User) -> bool:
        result = await self.db.execute(
            select(Subscription.status).where(Subscription.user_id == user.id)
        )
        return result.scalar_one_or_none() == "active"

    async def _mark_start_failed(self, job: Transformation, message: str) -> None:
        job.status = "failed"
        job.error_message = message
        job.completed_at = utcnow()
        await self.db.commit()
        try:
            await job_status.write_job(str(job.id), {"status": "failed", "error": message})
        except (RuntimeError, aioredis.RedisError) as e:
            logger.warning("transform.relay_write_failed", job_id=str(job.id), error=str(e))
        logger.error("transform.start_failed", job_id=str(job.id), error=message)

    async def start(
        self,
        user: User,
        keycloak_id: str,
        image: bytes,
        style: str,
        n8n: N8NClient,
    ) -> Transformation:
        """Create a pending job and hand it to n8n."""
        subscribed = await self._active_subscription(user)
        if not subscribed and user.credits <= 0:
            raise PaymentRequiredError(
                "No credits available. Please purchase credits or subscribe to continue",
                code="NO_CREDITS",
            )

        image_b64 = base64.b64encode(image).decode("ascii")
        job = Transformation(
            id=uuid.uuid4(),
            user_id=user.id,
            style=style,
            status="pending",
            input_image_data=image_b64,
        )
        self.db.add(job)
        await self.db.commit()

        try:
            await job_status.write_job(
                str(job.id),
                {
                    "job_id": str(job.id),
                    "user_id": keycloak_id,
                    "style": style,
                    "status": "pending",
                    "created_at": as_utc(job.created_at).isoformat(),
                },
            )
            await n8n.trigger_transformation(
                str(job.id), image_b64, style, n8n_callback_url()
            )
        except ProviderError as e:
            await self._mark_start_failed(job, e.message)
            raise ProviderError("Failed to start transformation", code="TRANSFORM_FAILED")
        except (RuntimeError, aioredis.RedisError) as e:
            await self._mark_start_failed(job, "Job status relay unavailable")
            logger.error("transform.relay_unavailable", job_id=str(job.id), error=str(e))
            raise ProviderError("Failed to start transformation", code="TRANSFORM_FAILED")

        if not subscribed:
            user.credits -= 1
            await self.db.commit()

        logger.info(
            "transform.started",
            job_id=str(job.id),
            style=style,
            subscribed=subscribed,
        )
        return job

    async def get_status(self, user: User, keycloak_id: str, job_id: uuid.UUID) -> dict:
        """Relay record when present and owned by the caller, else the row."""
        cached = await job_status.read_job(str(job_id))
        if cached and cached.get("user_id") == keycloak_id:
            return cached

        result = await self.db.execute(
            select(Transformation).where(
                Transformation.id == job_id,
                Transformation.user_id == user.id,
            )
        )
        job = result.scalars().first()
        if job is None:
            raise NotFoundError("Transformation")
        return _status_from_row(job)

    async def history(
        self, user: User, page: int = 1, limit: int = 20
    ) -> tuple[list[Transformation], int]:
        total = await self.db.scalar(
            select(func.count()).select_from(Transformation).where(
                Transformation.user_id == user.id
            )
        )
        result = await self.db.execute(
            select(Transformation)
            .where(Transformation.user_id == user.id)
            .order_by(Transformation.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def complete(
        self,
        job_id: uuid.UUID,
        status: str,
        output_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Transformation:
        """Record the n8n outcome ("success" → completed, anything else → failed)."""
        job = await self.db.get(Transformation, job_id)
        if job is None:
            raise NotFoundError("Transformation")

        job.status = "completed" if status == "success" else "failed"
        job.output_image_url = output_url
        job.error_message = error
        job.completed_at = utcnow()

        owner = await self.db.execute(
            select(User.keycloak_id).where(User.id == job.user_id)
        )
        keycloak_id = owner.scalar_one()
        await self.db.commit()

        await job_status.write_job(
            str(job_id),
            {
                "job_id": str(job_id),
                "user_id": keycloak_id,
                "style": job.style,
                "status": job.status,
                "output_url": output_url,
                "error": error,
                "completed_at": as_utc(job.completed_at).isoformat(),
            },
        )
        logger.info("transform.completed", job_id=str(job_id), status=job.status)
        return job
