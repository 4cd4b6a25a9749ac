import json
import logging
from typing import Any, Dict, Optional

import stripe

from apps.auth.errors import BadWebhookRequest, UnverifiedEvent, UpstreamPaymentError

logger = logging.getLogger(__name__)


def stripe_to_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict view of a Stripe object (or a dict already)."""
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def coerce_stripe_id(value: Any) -> Optional[str]:
    """Stripe references arrive either as ids or as expanded objects."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    potential_id = getattr(value, "id", None)
    return potential_id if isinstance(potential_id, str) else str(value)


class StripeGateway:
    """The only place this service talks to Stripe."""

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str] = None, tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def _require_key(self) -> str:
        if not self.api_key:
            raise UpstreamPaymentError(detail="STRIPE_SECRET_KEY is not configured")
        return self.api_key

    def find_price_by_lookup_key(self, lookup_key: str) -> Optional[str]:
        try:
            prices = stripe.Price.list(lookup_keys=[lookup_key], limit=1, api_key=self._require_key())
        except stripe.StripeError as exc:
            logger.error("Stripe price lookup failed for %s: %s", lookup_key, exc)
            raise UpstreamPaymentError(detail=str(exc)) from exc
        if not prices.data:
            return None
        return prices.data[0].id

    def create_checkout_session(self, **params) -> str:
        try:
            session = stripe.checkout.Session.create(api_key=self._require_key(), **params)
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session creation failed: %s", exc)
            raise UpstreamPaymentError("Failed to create checkout session", detail=str(exc)) from exc
        logger.info("Created checkout session %s", session.id)
        return session.url

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id, return_url=return_url, api_key=self._require_key()
            )
        except stripe.StripeError as exc:
            logger.error("Stripe portal session creation failed: %s", exc)
            raise UpstreamPaymentError("Failed to create billing portal session", detail=str(exc)) from exc
        logger.info("Created portal session %s", session.id)
        return session.url

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._require_key())
        except stripe.StripeError as exc:
            logger.error("Stripe subscription %s could not be retrieved: %s", subscription_id, exc)
            raise UpstreamPaymentError(detail=str(exc)) from exc
        return stripe_to_dict(subscription)

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """Check the Stripe-Signature header, then parse the raw event envelope."""
        if not sig_header:
            logger.warning("Webhook received without stripe-signature header")
            raise UnverifiedEvent("Missing stripe-signature header")
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
            raise UnverifiedEvent()

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise BadWebhookRequest("Invalid payload") from exc

        try:
            stripe.WebhookSignature.verify_header(body, sig_header, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise UnverifiedEvent() from exc

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise BadWebhookRequest("Invalid payload") from exc
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            raise BadWebhookRequest("Invalid payload")
        return event
