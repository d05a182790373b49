"""Asaas client — BRL payments and subscriptions for Brazilian customers.

Learn: Asaas authenticates with an `access_token` header (not a bearer
token) and takes money in major units (reais), while everything on our
side is in centavos. Both payments and subscriptions use billingType
UNDEFINED so the customer picks Pix, boleto, or card on the invoice page.
externalReference carries our own id back to us in the webhooks.
"""

from datetime import date, timedelta
from typing import Any, Optional

import httpx
import structlog

from artifyme.config import settings
from artifyme.errors import ProviderError

logger = structlog.get_logger()


class AsaasError(ProviderError):
    """The Asaas API rejected a call."""


class AsaasClient:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=settings.asaas_api_url,
            headers={"access_token": settings.asaas_api_key},
            timeout=30.0,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict[str, Any]:
        async with self._client() as client:
            resp = await client.request(method, path, json=json, params=params)
        if not resp.is_success:
            message = "Asaas API error"
            try:
                errors = resp.json().get("errors") or []
                if errors:
                    message = errors[0].get("description") or message
            except ValueError:
                pass
            logger.error("asaas.request.failed", path=path, status=resp.status_code, error=message)
            raise AsaasError(message)
        return resp.json()

    async def find_or_create_customer(self, email: str, name: str) -> str:
        found = await self._request("GET", "/customers", params={"email": email})
        if found.get("data"):
            return found["data"][0]["id"]

        customer = await self._request(
            "POST",
            "/customers",
            json={"name": name, "email": email, "notificationDisabled": False},
        )
        return customer["id"]

    async def create_payment(
        self,
        order_id: str,
        amount: int,
        description: str,
        customer_email: str,
        customer_name: str,
    ) -> dict[str, str]:
        """One-time charge due in 3 days. Returns {payment_id, payment_url}."""
        customer_id = await self.find_or_create_customer(customer_email, customer_name)
        payment = await self._request(
            "POST",
            "/payments",
            json={
                "customer": customer_id,
                "billingType": "UNDEFINED",
                "value": amount / 100,
                "dueDate": (date.today() + timedelta(days=3)).isoformat(),
                "description": description,
                "externalReference": order_id,
                "postalService": False,
            },
        )
        return {"payment_id": payment["id"], "payment_url": payment.get("invoiceUrl")}

    async def create_subscription(
        self,
        subscription_id: str,
        plan: str,
        billing_cycle: str,
        amount: int,
        customer_email: str,
        customer_name: str,
    ) -> dict[str, str]:
        """Recurring charge. Returns {subscription_id, payment_url} (Asaas ids)."""
        customer_id = await self.find_or_create_customer(customer_email, customer_name)
        created = await self._request(
            "POST",
            "/subscriptions",
            json={
                "customer": customer_id,
                "billingType": "UNDEFINED",
                "value": amount / 100,
                "nextDueDate": date.today().isoformat(),
                "cycle": "YEARLY" if billing_cycle == "yearly" else "MONTHLY",
                "description": f"ArtifyMe - Plano {plan.capitalize()}",
                "externalReference": subscription_id,
            },
        )
        return {
            "subscription_id": created["id"],
            "payment_url": created.get("invoiceUrl") or f"https://asaas.com/c/{created['id']}",
        }

    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        await self._request("DELETE", f"/subscriptions/{provider_subscription_id}")


_asaas = AsaasClient()


def get_asaas() -> AsaasClient:
    """FastAPI dependency — the process-wide Asaas client."""
    return _asaas
