"""
Payment gateway adapter over the Stripe SDK.

Only this module talks to Stripe. Every SDK failure is turned into a
PaymentGatewayError carrying Stripe's user-facing message.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from errors import PaymentGatewayError

logger = logging.getLogger(__name__)

STRIPE_SECRET = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "inr")

INTENT_SUCCEEDED = "succeeded"


@dataclass
class PaymentIntent:
    id: str
    status: str
    amount: int
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


def _plain(obj: Any) -> Dict[str, Any]:
    # StripeObject is not a dict subclass in current SDK releases
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _error_message(exc: Exception) -> str:
    message = getattr(exc, "user_message", None) or str(exc)
    return message or "Payment provider error"


class StripeGateway:
    def __init__(self, api_key: str = STRIPE_SECRET, webhook_secret: str = STRIPE_WEBHOOK_SECRET,
                 publishable_key: str = STRIPE_PUBLISHABLE_KEY):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.publishable_key = publishable_key

    @staticmethod
    def _to_intent(obj: Any) -> PaymentIntent:
        data = _plain(obj)
        metadata = _plain(data.get("metadata"))
        return PaymentIntent(
            id=data["id"],
            status=data["status"],
            amount=int(data.get("amount") or 0),
            client_secret=data.get("client_secret"),
            metadata={k: str(v) for k, v in metadata.items()},
        )

    def create_intent(self, amount: int, currency: str, metadata: Dict[str, str]) -> PaymentIntent:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency,
                payment_method_types=["card"],
                metadata=metadata,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.warning("Stripe create intent failed: %s", e)
            raise PaymentGatewayError(_error_message(e))
        return self._to_intent(intent)

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.warning("Stripe retrieve intent %s failed: %s", intent_id, e)
            raise PaymentGatewayError(_error_message(e))
        return self._to_intent(intent)

    def refund(self, intent_id: str) -> str:
        """Refund the full amount captured by an intent, returning the refund id."""
        try:
            refund = stripe.Refund.create(
                payment_intent=intent_id,
                reason="requested_by_customer",
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.warning("Stripe refund for %s failed: %s", intent_id, e)
            raise PaymentGatewayError(_error_message(e))
        return refund["id"]

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise PaymentGatewayError("Webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise PaymentGatewayError(f"Webhook Error: {e}")
        return event


def intent_from_event_object(obj: Any) -> PaymentIntent:
    return StripeGateway._to_intent(obj)
