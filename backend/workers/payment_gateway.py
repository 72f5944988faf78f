"""
Recurring membership charges through Stripe.

The billing engine only needs one call: charge a stored card for a customer.
Stripe failures come back as an unsuccessful `ChargeResult` instead of an
exception so one declined card never aborts a billing run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import stripe

from backend.app.config import settings
from backend.app.logs import json_log


class PaymentGatewayError(RuntimeError):
    pass


# PaymentIntent states that may still settle without another charge.
IN_FLIGHT_STATUSES = frozenset({"processing", "requires_action", "requires_confirmation", "requires_capture"})


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    status: str
    payment_intent_id: Optional[str] = None
    customer_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def pending(self) -> bool:
        return not self.success and self.status in IN_FLIGHT_STATUSES


class StripeGateway:
    def __init__(self, api_key: str, currency: str = "usd"):
        if not api_key:
            raise PaymentGatewayError("STRIPE_SECRET_KEY is not configured")
        self.api_key = api_key
        self.currency = currency

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        return cls(settings.stripe_secret_key)

    def ensure_customer(
        self,
        customer_id: Optional[str],
        email: Optional[str],
        name: Optional[str],
        metadata: dict,
        idempotency_key: Optional[str] = None,
    ) -> str:
        if customer_id:
            return customer_id
        customer = stripe.Customer.create(
            api_key=self.api_key,
            email=email,
            name=name,
            metadata=metadata,
            idempotency_key=f"{idempotency_key}:customer" if idempotency_key else None,
        )
        json_log("info", "stripe_customer_created", stripe_customer_id=customer.id, **metadata)
        return customer.id

    def default_card(self, customer_id: str) -> Optional[str]:
        methods = stripe.PaymentMethod.list(api_key=self.api_key, customer=customer_id, type="card", limit=10)
        if methods.data:
            return methods.data[0].id

        # Cards saved through a SetupIntent may never have been attached.
        intents = stripe.SetupIntent.list(api_key=self.api_key, customer=customer_id, limit=10)
        for intent in intents.data:
            if intent.status != "succeeded" or not intent.payment_method:
                continue
            try:
                stripe.PaymentMethod.attach(intent.payment_method, api_key=self.api_key, customer=customer_id)
            except stripe.StripeError as e:
                json_log("warn", "stripe_attach_failed", payment_method=intent.payment_method, error=str(e))
                continue
            return intent.payment_method
        return None

    def charge(
        self,
        *,
        stripe_customer_id: Optional[str],
        email: Optional[str],
        name: Optional[str],
        amount_cents: int,
        metadata: dict,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        """
        Charge the customer's default card off-session.

        Repeating a call with the same `idempotency_key` (and parameters)
        returns the original PaymentIntent instead of charging again.
        """
        customer_id = stripe_customer_id
        try:
            customer_id = self.ensure_customer(
                stripe_customer_id,
                email,
                name,
                {k: metadata[k] for k in ("customer_id", "membership_id") if k in metadata},
                idempotency_key,
            )
            payment_method = self.default_card(customer_id)
            if not payment_method:
                return ChargeResult(
                    success=False,
                    status="no_payment_method",
                    customer_id=customer_id,
                    error=f"No payment methods found for customer {customer_id}",
                )
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=int(amount_cents),
                currency=self.currency,
                customer=customer_id,
                payment_method=payment_method,
                confirm=True,
                off_session=True,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            json_log("warn", "stripe_charge_failed", customer_id=customer_id, error=str(e))
            return ChargeResult(
                success=False,
                status="error",
                customer_id=customer_id,
                error=getattr(e, "user_message", None) or str(e),
            )
        return ChargeResult(
            success=intent.status == "succeeded",
            status=intent.status,
            payment_intent_id=intent.id,
            customer_id=customer_id,
        )
