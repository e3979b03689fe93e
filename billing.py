"""
Stripe subscription glue and the local subscription mirror.

The mirror is written when a subscription is created through the API and
kept current by the signed webhook events Stripe sends afterwards.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from errors import (
    BusinessRuleError,
    DependencyError,
    InvalidInputError,
    NotFoundError,
)
from models import Subscription, SubscriptionStatus, SubscriptionTier

logger = logging.getLogger(__name__)

TRIAL_DAYS = 14


class WebhookSignatureError(InvalidInputError):
    pass


def _ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _first_item(obj: Any) -> Optional[Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else None


def price_id_for_tier(tier: SubscriptionTier, settings: Settings) -> str:
    price_id = (
        settings.stripe_basic_price_id
        if tier == SubscriptionTier.basic
        else settings.stripe_pro_price_id
    )
    if not price_id:
        raise DependencyError(f"No Stripe price configured for tier {tier.value}")
    return price_id


def tier_for_price_id(price_id: Optional[str], settings: Settings) -> Optional[SubscriptionTier]:
    if price_id and price_id == settings.stripe_basic_price_id:
        return SubscriptionTier.basic
    if price_id and price_id == settings.stripe_pro_price_id:
        return SubscriptionTier.pro
    return None


def _status(value: Optional[str]) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(value)
    except ValueError:
        logger.warning(f"stripe_unknown_status: status={value}")
        return SubscriptionStatus.incomplete


def upsert_mirror(
    session: Session,
    obj: Any,
    *,
    settings: Settings,
    user_id: Optional[str] = None,
    tier: Optional[SubscriptionTier] = None,
) -> Subscription:
    """Write the Stripe subscription object into the local mirror without committing."""
    sub_id = obj["id"]
    row = session.scalar(
        select(Subscription).where(Subscription.stripe_subscription_id == sub_id)
    )
    if row is None:
        row = Subscription(stripe_subscription_id=sub_id)
        session.add(row)

    metadata = obj.get("metadata") or {}
    row.user_id = user_id or metadata.get("userId") or row.user_id
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    row.stripe_customer_id = customer or row.stripe_customer_id

    item = _first_item(obj)
    price_id = ((item or {}).get("price") or {}).get("id") if item else None
    row.tier = tier or tier_for_price_id(price_id, settings) or row.tier
    row.status = _status(obj.get("status"))

    # Newer API versions report the billing period on the item.
    period_source = obj if obj.get("current_period_start") else (item or {})
    row.current_period_start = _ts(period_source.get("current_period_start"))
    row.current_period_end = _ts(period_source.get("current_period_end"))
    row.trial_end = _ts(obj.get("trial_end"))
    row.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    return row


def _client_secret(subscription: Any) -> Optional[str]:
    invoice = subscription.get("latest_invoice")
    if not isinstance(invoice, dict):
        return None
    intent = invoice.get("payment_intent")
    if isinstance(intent, dict) and intent.get("client_secret"):
        return intent["client_secret"]
    secret = invoice.get("confirmation_secret")
    if isinstance(secret, dict):
        return secret.get("client_secret")
    return None


class BillingService:
    def __init__(
        self, session: Session, user_id: str, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()

    def _api_key(self) -> str:
        if not self.settings.stripe_secret_key:
            raise DependencyError("STRIPE_SECRET_KEY is not set")
        return self.settings.stripe_secret_key

    def create(self, tier: SubscriptionTier, email: str) -> dict[str, Any]:
        api_key = self._api_key()
        price_id = price_id_for_tier(tier, self.settings)
        try:
            customer = stripe.Customer.create(
                api_key=api_key, email=email, metadata={"userId": self.user_id}
            )
            subscription = stripe.Subscription.create(
                api_key=api_key,
                customer=customer["id"],
                items=[{"price": price_id}],
                trial_period_days=TRIAL_DAYS,
                payment_behavior="default_incomplete",
                expand=["latest_invoice.payment_intent"],
                metadata={"userId": self.user_id},
            )
        except stripe.StripeError as exc:
            raise DependencyError(f"Stripe subscription create failed: {exc}") from exc

        upsert_mirror(
            self.session,
            subscription,
            settings=self.settings,
            user_id=self.user_id,
            tier=tier,
        )
        self.session.commit()
        logger.info(
            f"subscription_created: user={self.user_id} "
            f"subscription={subscription['id']} tier={tier.value}"
        )
        return {
            "subscription_id": subscription["id"],
            "client_secret": _client_secret(subscription),
            "status": subscription.get("status"),
        }

    def _owned(self, subscription_id: str, api_key: str) -> Any:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=api_key)
        except stripe.InvalidRequestError as exc:
            raise NotFoundError("Subscription") from exc
        except stripe.StripeError as exc:
            raise DependencyError(f"Stripe subscription lookup failed: {exc}") from exc
        metadata = subscription.get("metadata") or {}
        if metadata.get("userId") != self.user_id:
            raise NotFoundError("Subscription")
        return subscription

    def manage(
        self,
        action: str,
        subscription_id: str,
        new_tier: Optional[SubscriptionTier] = None,
    ) -> dict[str, Any]:
        api_key = self._api_key()
        current = self._owned(subscription_id, api_key)
        try:
            if action == "cancel":
                updated = stripe.Subscription.modify(
                    subscription_id, api_key=api_key, cancel_at_period_end=True
                )
            elif action == "resume":
                updated = stripe.Subscription.modify(
                    subscription_id, api_key=api_key, cancel_at_period_end=False
                )
            elif action == "upgrade":
                if new_tier is None:
                    raise BusinessRuleError("new_tier is required for upgrade")
                item = _first_item(current)
                if item is None:
                    raise BusinessRuleError("Subscription has no items to upgrade")
                updated = stripe.Subscription.modify(
                    subscription_id,
                    api_key=api_key,
                    items=[
                        {
                            "id": item["id"],
                            "price": price_id_for_tier(new_tier, self.settings),
                        }
                    ],
                    proration_behavior="create_prorations",
                )
            else:
                raise BusinessRuleError(f"Unknown action: {action}")
        except stripe.StripeError as exc:
            raise DependencyError(f"Stripe subscription {action} failed: {exc}") from exc

        upsert_mirror(
            self.session,
            updated,
            settings=self.settings,
            user_id=self.user_id,
            tier=new_tier,
        )
        self.session.commit()
        logger.info(
            f"subscription_managed: user={self.user_id} "
            f"subscription={subscription_id} action={action}"
        )
        return {
            "subscription_id": updated["id"],
            "status": updated.get("status"),
            "cancel_at_period_end": bool(updated.get("cancel_at_period_end")),
        }


def verify_webhook(payload: bytes, sig_header: Optional[str], settings: Settings) -> Any:
    if not settings.stripe_webhook_secret:
        raise DependencyError("STRIPE_WEBHOOK_SECRET is not set")
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        return stripe.Webhook.construct_event(
            payload, sig_header, settings.stripe_webhook_secret
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("stripe_webhook_rejected: reason=bad_signature")
        raise WebhookSignatureError("Invalid signature") from exc
    except ValueError as exc:
        logger.warning("stripe_webhook_rejected: reason=bad_payload")
        raise WebhookSignatureError("Invalid payload") from exc


def handle_webhook(
    session: Session,
    payload: bytes,
    sig_header: Optional[str],
    settings: Optional[Settings] = None,
) -> str:
    settings = settings or get_settings()
    event = verify_webhook(payload, sig_header, settings)
    event_type = event["type"]
    obj = event["data"]["object"]

    if event_type in {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }:
        row = upsert_mirror(session, obj, settings=settings)
        if event_type == "customer.subscription.deleted":
            row.status = SubscriptionStatus.canceled
        session.commit()
        logger.info(
            f"stripe_webhook: type={event_type} subscription={obj['id']} "
            f"status={row.status.value}"
        )
    elif event_type == "invoice.payment_failed":
        sub_id = obj.get("subscription")
        row = None
        if sub_id:
            row = session.scalar(
                select(Subscription).where(
                    Subscription.stripe_subscription_id == sub_id
                )
            )
        if row is not None:
            row.status = SubscriptionStatus.past_due
            session.commit()
        logger.warning(
            f"stripe_payment_failed: invoice={obj.get('id')} "
            f"customer={obj.get('customer')} attempts={obj.get('attempt_count')}"
        )
    elif event_type == "invoice.payment_succeeded":
        logger.info(
            f"stripe_payment_succeeded: invoice={obj.get('id')} "
            f"customer={obj.get('customer')} amount_paid={obj.get('amount_paid')}"
        )
    else:
        logger.info(f"stripe_webhook_ignored: type={event_type}")
    return event_type
