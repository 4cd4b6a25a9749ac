import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import func, literal, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from apps.auth.errors import BadWebhookRequest, MissingCustomer, PriceNotFound, SubscriptionStoreFailed
from apps.auth.models import SubscriptionStatus, User, utcnow
from apps.auth.payments import StripeGateway, coerce_stripe_id
from config import Settings
from database import Database, is_retryable_connection_error

logger = logging.getLogger(__name__)

users = User.__table__

KNOWN_STATUSES = frozenset(status.value for status in SubscriptionStatus)


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    UNRESOLVED = "unresolved"
    IGNORED = "ignored"


def from_timestamp(value: Any) -> Optional[datetime]:
    """Stripe epoch seconds as an aware UTC datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def current_period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    # Newer API versions only report the period on the subscription items
    if subscription.get("current_period_end"):
        return from_timestamp(subscription["current_period_end"])
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return from_timestamp(items[0].get("current_period_end"))
    return None


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = coerce_stripe_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return coerce_stripe_id(details.get("subscription"))


def normalize_status(status: Optional[str]) -> Optional[str]:
    """Map a processor status onto the stored set; None when it is not one we know."""
    if status == "unpaid":
        return SubscriptionStatus.CANCELED.value
    if status in KNOWN_STATUSES and status != SubscriptionStatus.FREE.value:
        return status
    return None


def _as_uuid(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        logger.warning("Checkout user id %r is not a UUID, falling back to email", value)
        return None


class SubscriptionStateMachine:
    """Applies verified Stripe events to the subscription columns of the users table.

    Every handler is a single UPDATE computed from the payload alone, so a
    replayed event writes the same values again.
    """

    def __init__(self, db: Database, gateway: StripeGateway):
        self.db = db
        self.gateway = gateway
        self.handlers = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "customer.subscription.trial_will_end": self._trial_will_end,
            "invoice.payment_succeeded": self._payment_succeeded,
            "invoice.payment_failed": self._payment_failed,
        }

    def apply(self, event: Dict[str, Any]) -> WebhookOutcome:
        event_type = event.get("type")
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled event type: %s", event_type)
            return WebhookOutcome.IGNORED

        data_object = (event.get("data") or {}).get("object")
        if not isinstance(data_object, dict):
            raise BadWebhookRequest("Event has no data object")

        logger.info("Processing %s (%s)", event_type, event.get("id"))
        try:
            return handler(data_object)
        except SQLAlchemyError as exc:
            logger.error("Store failure while applying %s: %s", event_type, exc)
            raise SubscriptionStoreFailed(
                detail=str(exc), retryable=is_retryable_connection_error(exc)
            ) from exc

    # --- Helpers ---

    def _update_by_subscription(
        self, subscription_id: Optional[str], values: Dict[str, Any], label: str
    ) -> WebhookOutcome:
        if not subscription_id:
            raise BadWebhookRequest("Subscription event has no id")
        values["updated_at"] = utcnow()
        with self.db.session() as session:
            result = session.connection().execute(
                update(users).where(users.c.stripe_subscription_id == subscription_id).values(**values)
            )
            session.commit()

        if result.rowcount == 0:
            logger.warning("No user found with subscription ID: %s", subscription_id)
            return WebhookOutcome.UNRESOLVED
        logger.info("%s: %s", label, subscription_id)
        return WebhookOutcome.APPLIED

    def _match_checkout_user(
        self, session: Session, subscription_id: str, user_id: Optional[str], email: Optional[str]
    ) -> Optional[User]:
        user = session.exec(select(User).where(User.stripe_subscription_id == subscription_id)).first()
        if user is None and user_id:
            user = session.get(User, user_id)
        if user is None and email:
            user = session.exec(
                select(User)
                .where(func.lower(User.email) == email.lower())
                .order_by(User.created_at, User.id)
                .limit(1)
            ).first()
        return user

    # --- Handlers ---

    def _checkout_completed(self, checkout: Dict[str, Any]) -> WebhookOutcome:
        metadata = checkout.get("metadata") or {}
        user_id = _as_uuid(metadata.get("user_id") or checkout.get("client_reference_id"))
        email = (
            checkout.get("customer_email")
            or (checkout.get("customer_details") or {}).get("email")
            or metadata.get("user_email")
        )
        if not user_id and not email:
            logger.error("Checkout session %s has no user id or email", checkout.get("id"))
            raise BadWebhookRequest("Missing user_id or email in session metadata")

        subscription_id = coerce_stripe_id(checkout.get("subscription"))
        if not subscription_id:
            logger.warning("Checkout session %s has no subscription, nothing to apply", checkout.get("id"))
            return WebhookOutcome.IGNORED
        customer_id = coerce_stripe_id(checkout.get("customer"))

        # Fetched before any session is opened
        subscription = self.gateway.retrieve_subscription(subscription_id)
        if subscription.get("status") == SubscriptionStatus.TRIALING.value:
            status = SubscriptionStatus.TRIALING.value
            end_date = from_timestamp(subscription.get("trial_end")) or current_period_end(subscription)
        else:
            status = SubscriptionStatus.ACTIVE.value
            end_date = current_period_end(subscription)

        with self.db.session() as session:
            user = self._match_checkout_user(session, subscription_id, user_id, email)
            if user is None:
                logger.warning("User not found for checkout session: user_id=%s, email=%s", user_id, email)
                return WebhookOutcome.UNRESOLVED

            session.connection().execute(
                update(users)
                .where(users.c.id == user.id)
                .values(
                    stripe_customer_id=customer_id,
                    stripe_subscription_id=subscription_id,
                    subscription_status=status,
                    subscription_end_date=end_date,
                    updated_at=utcnow(),
                )
            )
            session.commit()

        logger.info(
            "Subscription %s for user %s (customer: %s, subscription: %s)",
            status, user.id, customer_id, subscription_id,
        )
        return WebhookOutcome.APPLIED

    def _subscription_updated(self, subscription: Dict[str, Any]) -> WebhookOutcome:
        processor_status = subscription.get("status")
        status = normalize_status(processor_status)
        if status is None:
            logger.warning(
                "Subscription %s reported unknown status %r, keeping the stored one",
                subscription.get("id"), processor_status,
            )
        return self._update_by_subscription(
            subscription.get("id"),
            {
                "subscription_status": func.coalesce(
                    literal(status, users.c.subscription_status.type), users.c.subscription_status
                ),
                "subscription_end_date": current_period_end(subscription),
            },
            f"Subscription updated to {status or processor_status}",
        )

    def _subscription_deleted(self, subscription: Dict[str, Any]) -> WebhookOutcome:
        return self._update_by_subscription(
            subscription.get("id"),
            {"subscription_status": SubscriptionStatus.CANCELED.value},
            "Subscription cancelled",
        )

    def _trial_will_end(self, subscription: Dict[str, Any]) -> WebhookOutcome:
        logger.info(
            "Trial for subscription %s ends at %s",
            subscription.get("id"), from_timestamp(subscription.get("trial_end")),
        )
        return WebhookOutcome.IGNORED

    def _invoice_event(self, invoice: Dict[str, Any], status: SubscriptionStatus, label: str) -> WebhookOutcome:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.warning("Invoice %s has no subscription ID, skipping", invoice.get("id"))
            return WebhookOutcome.IGNORED
        return self._update_by_subscription(subscription_id, {"subscription_status": status.value}, label)

    def _payment_succeeded(self, invoice: Dict[str, Any]) -> WebhookOutcome:
        return self._invoice_event(invoice, SubscriptionStatus.ACTIVE, "Payment succeeded")

    def _payment_failed(self, invoice: Dict[str, Any]) -> WebhookOutcome:
        return self._invoice_event(invoice, SubscriptionStatus.PAST_DUE, "Payment failed")


class SubscriptionService:
    """Hosted checkout and billing portal sessions for the current user."""

    def __init__(self, gateway: StripeGateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    def resolve_price(self, lookup_key: str) -> str:
        price_id = self.settings.price_map.get(lookup_key)
        if price_id:
            return price_id

        if self.settings.ENABLE_PRICE_LOOKUP_FALLBACK:
            logger.info("No configured price for %s, searching Stripe", lookup_key)
            price_id = self.gateway.find_price_by_lookup_key(lookup_key)
            if price_id:
                return price_id

        logger.warning("Price not found for lookup key: %s", lookup_key)
        raise PriceNotFound(f"Price not found for lookup key: {lookup_key}")

    def create_checkout_session(
        self,
        user: User,
        lookup_key: Optional[str] = None,
        referral_code: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        price_id = self.resolve_price(lookup_key or self.settings.STRIPE_DEFAULT_LOOKUP_KEY)

        session_metadata = dict(metadata or {})
        session_metadata["user_id"] = user.id
        session_metadata["user_email"] = user.email or ""
        if referral_code:
            session_metadata["referral_code"] = referral_code

        domain = self.settings.DOMAIN.rstrip("/")
        return self.gateway.create_checkout_session(
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            billing_address_collection="auto",
            customer_email=user.email,
            client_reference_id=user.id,
            success_url=f"{domain}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{domain}/sign-up",
            metadata=session_metadata,
        )

    def create_portal_session(self, user: User) -> str:
        if not user.stripe_customer_id:
            raise MissingCustomer()
        domain = self.settings.DOMAIN.rstrip("/")
        return self.gateway.create_portal_session(user.stripe_customer_id, f"{domain}/account?from=stripe")
