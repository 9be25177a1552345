"""
Payment Gateway

Only the create/confirm contract of the payment processor is consumed here:
the server creates a PaymentIntent, the client confirms it with the
processor directly, and the booking endpoint later verifies the intent
succeeded before reserving the slot.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import stripe

from .core.config import get_settings
from .core.errors import PaymentError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class PaymentIntentResult:
    intent_id: str
    client_secret: str


@dataclass(frozen=True)
class PaymentIntentStatus:
    intent_id: str
    status: str
    amount_cents: int
    metadata: Dict[str, str]

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


class PaymentGateway(Protocol):
    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, Any],
        application_fee_cents: Optional[int] = None,
        destination_account: Optional[str] = None,
    ) -> PaymentIntentResult:
        ...

    async def retrieve_intent(self, intent_id: str) -> PaymentIntentStatus:
        ...


class StripePaymentGateway:
    """PaymentGateway backed by the Stripe PaymentIntents API."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else get_settings().stripe_secret_key

    def _check_stripe_configured(self) -> None:
        if not self.api_key:
            raise PaymentError("Stripe is not configured")

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, Any],
        application_fee_cents: Optional[int] = None,
        destination_account: Optional[str] = None,
    ) -> PaymentIntentResult:
        """
        Create a PaymentIntent for the full service price.

        With a destination account the charge is routed to the provider and
        the platform keeps ``application_fee_cents``.

        Raises:
            PaymentError: If Stripe is unconfigured or rejects the request
        """
        self._check_stripe_configured()
        if amount_cents <= 0:
            raise PaymentError("Payment amount must be positive", {"amount_cents": amount_cents})

        stripe_kwargs: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            # Stripe caps metadata values at 500 characters
            "metadata": {key: str(value)[:500] for key, value in metadata.items()},
            "api_key": self.api_key,
        }
        if destination_account:
            stripe_kwargs["transfer_data"] = {"destination": destination_account}
            if application_fee_cents:
                stripe_kwargs["application_fee_amount"] = application_fee_cents

        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.create, **stripe_kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating payment intent: {str(e)}")
            raise PaymentError(f"Failed to create payment: {e.user_message or str(e)}") from e

        logger.info(f"Created payment intent {intent.id} for {amount_cents} {currency}")
        return PaymentIntentResult(intent_id=intent.id, client_secret=intent.client_secret)

    async def retrieve_intent(self, intent_id: str) -> PaymentIntentStatus:
        self._check_stripe_configured()
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving payment intent {intent_id}: {str(e)}")
            raise PaymentError(f"Failed to verify payment: {e.user_message or str(e)}") from e

        metadata = intent.metadata.to_dict() if intent.metadata else {}
        return PaymentIntentStatus(
            intent_id=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            metadata={key: str(value) for key, value in metadata.items()},
        )
