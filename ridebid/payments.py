"""Payment gateway collaborators.

The marketplace only needs two calls: whether a rider has a usable payment
method, and a charge keyed by an idempotency key so a retried charge for the
same ride and price is never taken twice.
"""

from dataclasses import dataclass, field
from typing import Optional
import asyncio
import logging

import httpx

from .config import settings

logger = logging.getLogger(__name__)


@dataclass
class ChargeResult:
    success: bool
    requires_action: bool = False
    decline_reason: Optional[str] = None
    reference: Optional[str] = None
    raw: dict = field(default_factory=dict)


class PaymentGateway:
    async def has_payment_method(self, rider_id: int) -> bool:
        raise NotImplementedError

    async def charge(self, rider_id: int, amount: float, idempotency_key: str) -> ChargeResult:
        raise NotImplementedError


class HttpPaymentGateway(PaymentGateway):
    """Talks to the payment service over HTTP."""

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.PAYMENT_TIMEOUT_SEC

    async def has_payment_method(self, rider_id: int) -> bool:
        async with httpx.AsyncClient() as client:
            resp = await client.get(f"{self.base_url}/customers/{rider_id}/payment-methods", timeout=self.timeout)
        if resp.status_code == 404:
            return False
        resp.raise_for_status()
        return bool(resp.json().get("default_payment_method"))

    async def charge(self, rider_id: int, amount: float, idempotency_key: str) -> ChargeResult:
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    f"{self.base_url}/charges",
                    json={"customer_id": rider_id, "amount_cents": int(round(amount * 100)), "currency": "usd"},
                    headers={"Idempotency-Key": idempotency_key},
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            logger.error("payment_call_failed: rider=%s key=%s error=%s", rider_id, idempotency_key, e)
            return ChargeResult(success=False, decline_reason="gateway_unavailable")
        body = resp.json() if resp.content else {}
        status = body.get("status")
        if resp.status_code == 200 and status == "succeeded":
            return ChargeResult(success=True, reference=body.get("id"), raw=body)
        if status == "requires_action":
            return ChargeResult(success=False, requires_action=True, reference=body.get("id"), raw=body)
        return ChargeResult(success=False, decline_reason=body.get("decline_code") or f"http_{resp.status_code}", raw=body)


class SimulatedPaymentGateway(PaymentGateway):
    """Always succeeds after a short delay; for local runs without a payment service."""

    def __init__(self, delay_sec: float = 0.5):
        self.delay_sec = delay_sec

    async def has_payment_method(self, rider_id: int) -> bool:
        return True

    async def charge(self, rider_id: int, amount: float, idempotency_key: str) -> ChargeResult:
        await asyncio.sleep(self.delay_sec)
        logger.info("simulated_charge: rider=%s amount=%.2f key=%s", rider_id, amount, idempotency_key)
        return ChargeResult(success=True, reference=f"sim_{idempotency_key}", raw={"provider": "simulated"})


def default_gateway() -> PaymentGateway:
    if settings.PAYMENT_SERVICE_URL:
        return HttpPaymentGateway(settings.PAYMENT_SERVICE_URL)
    return SimulatedPaymentGateway()
