"""
Payment escrow sequencing.

A ride request's ``stripe_payment_intent_id`` + ``payment_status`` pair is a
two-phase commit against the processor: authorize at request time, capture at
completion, cancel (or refund) otherwise. Only ``authorize`` raises; every
other call returns an ``EscrowOutcome`` so a batch can record it and move on.
"""
import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP

from trek.config import get_settings
from trek.errors import PaymentError, ValidationError
from trek.models.ride_request import RideRequest
from trek.models.user import User
from trek.services.stripe_client import PaymentProcessor, PSPError

logger = logging.getLogger(__name__)
settings = get_settings()

CENT = Decimal("0.01")


@dataclass
class EscrowOutcome:
    action: str
    succeeded: bool
    payment_status: str
    intent_ref: str | None = None
    amount_cents: int | None = None
    error: str | None = None

    def as_dict(self) -> dict:
        return asdict(self)


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


class PaymentEscrow:
    def __init__(self, processor: PaymentProcessor, fee_percent: float | None = None):
        self.processor = processor
        self.fee_percent = Decimal(str(settings.platform_fee_percent if fee_percent is None else fee_percent))

    def platform_fee(self, amount: Decimal) -> Decimal:
        return quantize(Decimal(amount) * self.fee_percent)

    def payout(self, amount: Decimal) -> Decimal:
        """What the payee nets once the platform fee is deducted."""
        return quantize(Decimal(amount) - self.platform_fee(amount))

    async def authorize(
        self,
        amount: Decimal,
        payer: User,
        payee: User,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        if not payer.has_payment_method:
            raise ValidationError("Please add a payment method to your profile first")
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        try:
            intent_ref = await self.processor.authorize(
                amount_cents=to_cents(amount),
                customer_ref=payer.stripe_customer_id,
                payment_method_ref=payer.default_payment_method_id,
                payee_ref=payee.stripe_connect_account_id,
                fee_cents=to_cents(self.platform_fee(amount)),
                idempotency_key=idempotency_key,
                metadata=metadata,
            )
        except PSPError as exc:
            logger.warning("Authorization declined for payer=%s amount=%s: %s", payer.id, amount, exc)
            raise PaymentError(f"Payment authorization failed: {exc}") from exc
        logger.info("Authorized %s for payer=%s intent=%s", amount, payer.id, intent_ref)
        return intent_ref

    async def capture(self, request: RideRequest) -> EscrowOutcome:
        intent_ref = request.stripe_payment_intent_id
        if not intent_ref:
            return EscrowOutcome("capture", False, "failed", error="No payment authorization on file")
        try:
            amount_cents = await self.processor.capture(intent_ref)
        except PSPError as exc:
            logger.error("Capture failed request=%s intent=%s: %s", request.id, intent_ref, exc)
            return EscrowOutcome("capture", False, "failed", intent_ref, error=str(exc))
        logger.info("Captured %s cents request=%s intent=%s", amount_cents, request.id, intent_ref)
        return EscrowOutcome("capture", True, "captured", intent_ref, amount_cents=amount_cents)

    async def cancel(self, request: RideRequest) -> EscrowOutcome:
        return await self._reverse("cancel", request, self.processor.cancel)

    async def refund(self, request: RideRequest) -> EscrowOutcome:
        return await self._reverse("refund", request, self.processor.refund)

    async def release(self, request: RideRequest) -> EscrowOutcome:
        """Cancel a held authorization, or refund if it was already captured."""
        if request.payment_status == "authorized":
            return await self.cancel(request)
        if request.payment_status == "captured":
            return await self.refund(request)
        return EscrowOutcome("none", True, request.payment_status, request.stripe_payment_intent_id)

    async def _reverse(self, action: str, request: RideRequest, primitive) -> EscrowOutcome:
        intent_ref = request.stripe_payment_intent_id
        if not intent_ref:
            return EscrowOutcome(action, True, "canceled")
        try:
            await primitive(intent_ref)
        except PSPError as exc:
            if exc.already_settled:
                # Idempotent from the caller's side: nothing left to release
                logger.warning("%s no-op request=%s intent=%s: %s", action, request.id, intent_ref, exc)
                return EscrowOutcome(action, True, "canceled", intent_ref, error=str(exc))
            logger.error("%s failed request=%s intent=%s: %s", action, request.id, intent_ref, exc)
            return EscrowOutcome(action, False, request.payment_status, intent_ref, error=str(exc))
        logger.info("%s ok request=%s intent=%s", action, request.id, intent_ref)
        return EscrowOutcome(action, True, "canceled", intent_ref)

    async def charge_penalty(self, user: User, amount: Decimal, role: str, idempotency_key: str) -> EscrowOutcome:
        """
        Drivers are debited from their connected account; passengers are
        charged on their stored payment method. Never raises.
        """
        description = f"Trek late cancellation penalty ({role})"
        cents = to_cents(amount)
        try:
            if role == "driver":
                if not user.stripe_connect_account_id:
                    raise PSPError("No connected account on file", code="missing_account")
                ref = await self.processor.debit_account(
                    user.stripe_connect_account_id, cents, description, idempotency_key
                )
            else:
                if not user.has_payment_method:
                    raise PSPError("No payment method on file", code="missing_payment_method")
                ref = await self.processor.charge(
                    cents, user.stripe_customer_id, user.default_payment_method_id, description, idempotency_key
                )
        except PSPError as exc:
            logger.error("Penalty charge failed user=%s amount=%s: %s", user.id, amount, exc)
            return EscrowOutcome("penalty", False, "failed", amount_cents=cents, error=str(exc))
        logger.info("Penalty charged user=%s amount=%s ref=%s", user.id, amount, ref)
        return EscrowOutcome("penalty", True, "captured", ref, amount_cents=cents)
