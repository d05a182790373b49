"""n8n client — triggers the image transformation workflow.

Learn: The API never runs the model itself. It POSTs the job to an n8n
webhook and returns 202 right away; n8n calls back on
/api/webhooks/n8n/transformation-complete when it is done. The wire
format is camelCase because that is what the workflow expects.
"""

from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog

from artifyme.config import settings
from artifyme.errors import ProviderError

logger = structlog.get_logger()


class N8NError(ProviderError):
    """The workflow could not be triggered or queried."""


class N8NClient:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=30.0, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        if settings.n8n_api_key:
            return {"Authorization": f"Bearer {settings.n8n_api_key}"}
        return {}

    async def trigger_transformation(
        self, job_id: str, image_base64: str, style: str, callback_url: str
    ) -> None:
        """Start the workflow for one job. Raises N8NError on any failure."""
        if not settings.n8n_webhook_url:
            raise N8NError("N8N integration not configured")

        payload = {
            "jobId": job_id,
            "image": image_base64,
            "style": style,
            "callbackUrl": callback_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            async with self._client() as client:
                resp = await client.post(
                    settings.n8n_webhook_url, json=payload, headers=self._headers()
                )
        except httpx.HTTPError as e:
            raise N8NError(f"N8N webhook unreachable: {e}") from e

        if not resp.is_success:
            logger.error(
                "n8n.trigger.failed",
                job_id=job_id,
                status=resp.status_code,
                body=resp.text[:500],
            )
            raise N8NError(f"N8N webhook failed: {resp.status_code}")

        logger.info("n8n.trigger.sent", job_id=job_id, style=style)


_n8n = N8NClient()


def get_n8n() -> N8NClient:
    """FastAPI dependency — the process-wide n8n client."""
    return _n8n
