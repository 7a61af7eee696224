"""
Payment processor adapter.

``PaymentProcessor`` is the narrow interface the escrow layer sequences
against. ``StripeProcessor`` speaks the Stripe REST API directly over httpx:
PaymentIntents in manual-capture mode for escrow, an immediate PaymentIntent
for passenger penalties, and an account debit for driver penalties.
"""
import asyncio
import logging
from abc import ABC, abstractmethod

import httpx

from trek.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Stripe error codes meaning "nothing left to release/reverse"
ALREADY_SETTLED_CODES = {
    "payment_intent_unexpected_state",
    "charge_already_refunded",
    "charge_already_captured",
}


class PSPError(Exception):
    def __init__(self, message: str, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code

    @property
    def already_settled(self) -> bool:
        return self.code in ALREADY_SETTLED_CODES

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class PaymentProcessor(ABC):
    @abstractmethod
    async def authorize(
        self,
        amount_cents: int,
        customer_ref: str,
        payment_method_ref: str,
        payee_ref: str | None,
        fee_cents: int,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        """Reserve funds without moving them. Returns the intent reference."""

    @abstractmethod
    async def capture(self, intent_ref: str) -> int:
        """Capture a held authorization. Returns the captured amount in cents."""

    @abstractmethod
    async def cancel(self, intent_ref: str) -> None:
        pass

    @abstractmethod
    async def refund(self, intent_ref: str) -> None:
        pass

    @abstractmethod
    async def charge(
        self,
        amount_cents: int,
        customer_ref: str,
        payment_method_ref: str,
        description: str,
        idempotency_key: str,
    ) -> str:
        """Immediate charge against a stored payment method."""

    @abstractmethod
    async def debit_account(self, account_ref: str, amount_cents: int, description: str, idempotency_key: str) -> str:
        """Pull funds from a connected account into the platform balance."""


class StripeProcessor(PaymentProcessor):
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.base_url = (base_url or settings.stripe_base_url).rstrip("/")
        self.timeout = timeout or settings.stripe_timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._transport = transport

    # ------------------------------------------------------------------
    # Escrow primitives
    # ------------------------------------------------------------------

    async def authorize(self, amount_cents, customer_ref, payment_method_ref, payee_ref, fee_cents,
                        idempotency_key, metadata=None):
        data = {
            "amount": amount_cents,
            "currency": settings.currency,
            "customer": customer_ref,
            "payment_method": payment_method_ref,
            "capture_method": "manual",
            "confirm": "true",
            "off_session": "true",
        }
        if payee_ref:
            data["application_fee_amount"] = fee_cents
            data["transfer_data[destination]"] = payee_ref
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = value

        intent = await self._post("/payment_intents", data, idempotency_key)
        if intent.get("status") != "requires_capture":
            raise PSPError(f"Authorization not held (status={intent.get('status')})", code="not_authorized")
        return intent["id"]

    async def capture(self, intent_ref):
        intent = await self._post(f"/payment_intents/{intent_ref}/capture", {}, f"capture-{intent_ref}")
        return int(intent.get("amount_received", 0))

    async def cancel(self, intent_ref):
        await self._post(f"/payment_intents/{intent_ref}/cancel", {}, f"cancel-{intent_ref}")

    async def refund(self, intent_ref):
        await self._post("/refunds", {"payment_intent": intent_ref}, f"refund-{intent_ref}")

    # ------------------------------------------------------------------
    # Penalties
    # ------------------------------------------------------------------

    async def charge(self, amount_cents, customer_ref, payment_method_ref, description, idempotency_key):
        intent = await self._post(
            "/payment_intents",
            {
                "amount": amount_cents,
                "currency": settings.currency,
                "customer": customer_ref,
                "payment_method": payment_method_ref,
                "confirm": "true",
                "off_session": "true",
                "description": description,
            },
            idempotency_key,
        )
        if intent.get("status") != "succeeded":
            raise PSPError(f"Charge not completed (status={intent.get('status')})", code="not_succeeded")
        return intent["id"]

    async def debit_account(self, account_ref, amount_cents, description, idempotency_key):
        result = await self._post(
            "/charges",
            {
                "amount": amount_cents,
                "currency": settings.currency,
                "source": account_ref,
                "description": description,
            },
            idempotency_key,
        )
        return result["id"]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, path: str, data: dict, idempotency_key: str) -> dict:
        """
        POST with up to ``max_attempts`` tries (exponential backoff) on
        transport errors and 5xx. Card/validation errors raise immediately.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._call(path, data, idempotency_key)
            except PSPError as e:
                if not e.retryable or attempt == self.max_attempts:
                    logger.error("Stripe %s failed (attempt %d): %s", path, attempt, e)
                    raise
                await asyncio.sleep(self.backoff_base ** attempt)
        raise PSPError("unreachable")

    async def _call(self, path: str, data: dict, idempotency_key: str) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}{path}",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Idempotency-Key": idempotency_key,
                    },
                    data={k: str(v) for k, v in data.items()},
                )
            except httpx.TransportError as exc:
                raise PSPError(f"Stripe unreachable: {exc}") from exc

        if resp.status_code >= 400:
            error = {}
            try:
                error = resp.json().get("error", {})
            except ValueError:
                pass
            raise PSPError(
                error.get("message") or f"Stripe error {resp.status_code}",
                code=error.get("code"),
                status_code=resp.status_code,
            )
        return resp.json()
