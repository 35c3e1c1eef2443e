"""
Thin wrapper around the Stripe SDK.

All Stripe traffic goes through ``StripeGateway`` so that the rest of
the code deals in plain dictionaries and one exception type
(``PaymentProviderError``), and so tests can patch a single seam.

Amounts are integer cents.  Every charge carries a metadata dict that
links it back to local rows (``userId``, ``registrationId``,
``xero_staging_record_id`` ...); the webhook handler relies on it.
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe

from league_registry_api.app.core.config import settings
from league_registry_api.app.core.exceptions import PaymentProviderError

logger = logging.getLogger(__name__)


def _stringify(metadata: Dict[str, Any]) -> Dict[str, str]:
    """Stripe metadata values must be strings; drop ``None`` entries."""
    return {key: str(value) for key, value in metadata.items() if value is not None}


class StripeGateway:
    """Classmethods mirroring the Stripe calls the application makes."""

    @staticmethod
    def _configure() -> None:
        if not settings.stripe_secret_key:
            raise PaymentProviderError("Stripe is not configured (STRIPE_SECRET_KEY is empty)")
        stripe.api_key = settings.stripe_secret_key
        if settings.stripe_api_version:
            stripe.api_version = settings.stripe_api_version

    @classmethod
    def create_payment_intent(
        cls,
        amount: int,
        metadata: Dict[str, Any],
        description: str,
        receipt_email: Optional[str] = None,
        customer: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        setup_future_usage: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create an on‑session PaymentIntent for the front end to confirm.

        Returns ``{"id", "client_secret", "status"}``.
        """
        cls._configure()
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": settings.currency,
            "metadata": _stringify(metadata),
            "description": description,
            "payment_method_types": ["card", "link"],
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        if customer:
            params["customer"] = customer
        if setup_future_usage:
            params["setup_future_usage"] = setup_future_usage
        try:
            intent = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent.create failed: %s", e)
            raise PaymentProviderError(f"Payment provider error: {e.user_message or e}") from e
        logger.info("Created payment intent %s for %s cents", intent["id"], amount)
        return {"id": intent["id"], "client_secret": intent["client_secret"], "status": intent["status"]}

    @classmethod
    def charge_saved_method(
        cls,
        amount: int,
        customer: str,
        payment_method: str,
        metadata: Dict[str, Any],
        description: str,
        receipt_email: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Charge a saved card off‑session and confirm immediately.

        Card declines raise ``PaymentProviderError`` with Stripe's user
        message so callers can record the failure reason.
        """
        cls._configure()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=settings.currency,
                customer=customer,
                payment_method=payment_method,
                confirm=True,
                off_session=True,
                receipt_email=receipt_email,
                metadata=_stringify(metadata),
                description=description,
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            logger.warning("Off-session charge declined for customer %s: %s", customer, e.user_message)
            raise PaymentProviderError(e.user_message or "Card was declined") from e
        except stripe.StripeError as e:
            logger.error("Off-session charge failed for customer %s: %s", customer, e)
            raise PaymentProviderError(f"Payment provider error: {e}") from e
        logger.info("Off-session charge %s status=%s amount=%s", intent["id"], intent["status"], amount)
        return {"id": intent["id"], "status": intent["status"], "client_secret": intent.get("client_secret")}

    @classmethod
    def create_customer(cls, email: str, name: str, user_id: int) -> str:
        cls._configure()
        try:
            customer = stripe.Customer.create(email=email, name=name, metadata={"userId": str(user_id)})
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Could not create Stripe customer: {e}") from e
        return customer["id"]

    @classmethod
    def create_setup_intent(cls, customer: str, user_id: int) -> Dict[str, Any]:
        """Create a SetupIntent so a card can be saved for off‑session charges."""
        cls._configure()
        try:
            intent = stripe.SetupIntent.create(
                customer=customer,
                usage="off_session",
                payment_method_types=["card"],
                metadata={"userId": str(user_id)},
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Could not create setup intent: {e}") from e
        return {"id": intent["id"], "client_secret": intent["client_secret"]}

    @classmethod
    def detach_payment_method(cls, payment_method_id: str) -> None:
        cls._configure()
        try:
            stripe.PaymentMethod.detach(payment_method_id)
        except stripe.InvalidRequestError as e:
            # Already detached or deleted on Stripe's side.
            logger.warning("Detach of %s ignored: %s", payment_method_id, e)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Could not remove payment method: {e}") from e

    @staticmethod
    def construct_event(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook signature and return the event as a plain dict.

        Raises ``ValueError`` for a missing/invalid signature or payload.
        """
        if not settings.stripe_webhook_secret:
            raise ValueError("Webhook secret is not configured")
        if not sig_header:
            raise ValueError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise ValueError("Invalid signature") from e
        try:
            return json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValueError("Invalid payload") from e
