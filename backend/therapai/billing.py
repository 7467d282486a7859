"""
Subscription billing: provider webhooks, plan state transitions and feature gating.

Both RevenueCat and Stripe events are normalised into a BillingEvent and go
through apply_billing_event, which implements the per-user state machine:

    free --purchase/renewal--> active --cancellation/expiration--> cancelled
    active --billing issue--> billing_issue
    cancelled --purchase--> active

Rows are upserted on user_id. An event older than the last one applied to the
row is skipped, so redelivered webhooks converge on the same state.
"""
import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

import httpx
import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapai import config
from therapai.crud import subscription as crud_subscription
from therapai.crud.user import update_user_tier
from therapai.models.subscription import Subscription

logger = logging.getLogger(__name__)

REVENUECAT_API_URL = "https://api.revenuecat.com/v1"
REVENUECAT_SIGNATURE_HEADER = "X-RevenueCat-Signature"

ACTIVATE = "activate"
CANCEL = "cancel"
BILLING_ISSUE = "billing_issue"

REVENUECAT_EVENT_KINDS = {
    "INITIAL_PURCHASE": ACTIVATE,
    "RENEWAL": ACTIVATE,
    "CANCELLATION": CANCEL,
    "EXPIRATION": CANCEL,
    "BILLING_ISSUE": BILLING_ISSUE,
}

PAID_PLANS = ("premium", "pro")
FEATURES = ("voice", "video", "unlimited_sessions")

# Raised by fromtimestamp/fromisoformat on out-of-range or non-numeric input
TIMESTAMP_ERRORS = (TypeError, ValueError, OverflowError, OSError, AttributeError)

class InvalidWebhookPayload(ValueError):
    """The webhook body could not be understood"""

class WebhookVerificationError(Exception):
    """The webhook signature did not match"""

class BillingProviderError(Exception):
    """The billing provider could not be reached or answered badly"""

class CheckoutError(Exception):
    """A checkout session could not be created"""

@dataclass
class BillingEvent:
    kind: str
    user_id: str
    provider: str
    plan: Optional[str] = None  # None keeps the current plan
    occurred_at: Optional[datetime] = None
    product_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None

@dataclass
class SubscriptionStatus:
    tier: str
    status: str
    expires_at: Optional[datetime]
    features: Dict[str, bool]
    source: str  # provider or local
    synced_at: Optional[datetime] = None
    plan: Dict = field(default_factory=dict)

def product_to_plan(product_id: Optional[str]) -> str:
    """Derive a plan from a store product id by substring"""
    product_id = (product_id or "").lower()
    if "premium" in product_id:
        return "premium"
    if "pro" in product_id:
        return "pro"
    return "free"

def get_plan(plan_or_tier: str) -> Dict:
    for plan in config.PLANS:
        if plan_or_tier in (plan["id"], plan["tier"]):
            return plan
    return config.PLANS[0]

def _from_ms(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)

def _from_seconds(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)

def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 string to an aware UTC datetime"""
    if not value:
        return None
    if not isinstance(value, str):
        raise TypeError(f"Expected an ISO-8601 string, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)

# Signature verification

def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check an HMAC-SHA256 body signature.

    Returns False when no secret is configured (verification skipped) and True
    when the signature matched. Raises WebhookVerificationError otherwise.
    """
    if not secret:
        logger.warning("Webhook secret not configured, skipping signature verification")
        return False

    if not signature:
        raise WebhookVerificationError("Missing webhook signature")

    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    if not hmac.compare_digest(compute_signature(body, secret), signature.strip()):
        raise WebhookVerificationError("Webhook signature mismatch")
    return True

# Event parsing

def parse_revenuecat_event(payload) -> Optional[BillingEvent]:
    """Normalise a RevenueCat webhook body. None for event types we ignore."""
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), dict):
        raise InvalidWebhookPayload("Missing event object")

    event = payload["event"]
    event_type = event.get("type")
    if not isinstance(event_type, str):
        raise InvalidWebhookPayload("Missing event type")

    kind = REVENUECAT_EVENT_KINDS.get(event_type)
    if kind is None:
        logger.info(f"Ignoring RevenueCat event type {event_type}")
        return None

    user_id = event.get("app_user_id")
    if not user_id:
        raise InvalidWebhookPayload("Missing app_user_id")

    product_id = event.get("product_id")
    if kind == ACTIVATE and not isinstance(product_id, str):
        raise InvalidWebhookPayload("Missing product_id")

    try:
        occurred_at = _from_ms(event.get("event_timestamp_ms"))
        if event.get("expiration_at_ms") is not None:
            expires_at = _from_ms(event["expiration_at_ms"])
        else:
            expires = _parse_iso(event.get("expires_date"))
            expires_at = expires.replace(tzinfo=None) if expires else None
    except TIMESTAMP_ERRORS as e:
        raise InvalidWebhookPayload(f"Bad timestamp: {e}")

    return BillingEvent(
        kind=kind,
        user_id=str(user_id),
        provider="revenuecat",
        plan=product_to_plan(product_id) if kind == ACTIVATE else None,
        occurred_at=occurred_at,
        product_id=product_id,
        expires_at=expires_at,
    )

def parse_stripe_event(db: Session, payload) -> Optional[BillingEvent]:
    """Normalise a Stripe event. None for event types we ignore or cannot attribute."""
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
        raise InvalidWebhookPayload("Missing data object")

    event_type = payload.get("type")
    obj = payload["data"].get("object")
    if not isinstance(event_type, str) or not isinstance(obj, dict):
        raise InvalidWebhookPayload("Missing event type or object")

    try:
        occurred_at = _from_seconds(payload.get("created"))
    except TIMESTAMP_ERRORS as e:
        raise InvalidWebhookPayload(f"Bad timestamp: {e}")

    if event_type == "checkout.session.completed":
        metadata = obj.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise InvalidWebhookPayload("Checkout metadata must be an object")
        user_id = metadata.get("userId") or obj.get("client_reference_id")
        plan = metadata.get("plan")
        if plan is not None and not isinstance(plan, str):
            raise InvalidWebhookPayload("Checkout plan must be a string")
        if not user_id or not plan:
            logger.warning("Stripe checkout session without userId/plan metadata, ignoring")
            return None
        return BillingEvent(
            kind=ACTIVATE,
            user_id=str(user_id),
            provider="stripe",
            plan=plan if plan in PAID_PLANS else product_to_plan(plan),
            occurred_at=occurred_at,
            stripe_customer_id=obj.get("customer"),
            stripe_subscription_id=obj.get("subscription"),
        )

    if event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
        customer_id = obj.get("customer")
        subscription = crud_subscription.get_subscription_by_stripe_customer(db, customer_id) if customer_id else None
        if subscription is None:
            logger.warning(f"No subscription for Stripe customer {customer_id}, ignoring {event_type}")
            return None
        return BillingEvent(
            kind=ACTIVATE if event_type == "invoice.payment_succeeded" else BILLING_ISSUE,
            user_id=subscription.user_id,
            provider="stripe",
            occurred_at=occurred_at,
        )

    if event_type == "customer.subscription.deleted":
        subscription = crud_subscription.get_subscription_by_stripe_subscription(db, obj.get("id"))
        if subscription is None and obj.get("customer"):
            subscription = crud_subscription.get_subscription_by_stripe_customer(db, obj["customer"])
        if subscription is None:
            logger.warning(f"No subscription for Stripe subscription {obj.get('id')}, ignoring")
            return None
        return BillingEvent(
            kind=CANCEL,
            user_id=subscription.user_id,
            provider="stripe",
            occurred_at=occurred_at,
        )

    logger.info(f"Ignoring Stripe event type {event_type}")
    return None

def construct_stripe_event(body: bytes, signature: Optional[str], secret: Optional[str]) -> Dict:
    """Verify a Stripe webhook and return the event as a plain dict"""
    if not secret:
        logger.warning("Stripe webhook secret not configured, skipping signature verification")
    else:
        try:
            stripe.Webhook.construct_event(body, signature or "", secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(str(e))
        except ValueError as e:
            raise InvalidWebhookPayload(str(e))

    try:
        return json.loads(body)
    except ValueError as e:
        raise InvalidWebhookPayload(str(e))

# State transitions

def apply_billing_event(db: Session, event: BillingEvent) -> Tuple[Optional[Subscription], bool]:
    """Apply one event to the user's subscription row.

    Returns the row and whether anything was written. Database errors roll
    back and propagate.
    """
    subscription = crud_subscription.get_subscription(db, event.user_id)

    if (
        subscription is not None
        and event.occurred_at is not None
        and subscription.last_event_at is not None
        and event.occurred_at < subscription.last_event_at
    ):
        logger.warning(
            f"Skipping stale {event.provider} event for user {event.user_id}: "
            f"{event.occurred_at} < {subscription.last_event_at}"
        )
        return subscription, False

    if event.kind == BILLING_ISSUE and (subscription is None or subscription.status != "active"):
        logger.warning(f"Billing issue for user {event.user_id} without an active subscription, ignoring")
        return subscription, False

    try:
        subscription = crud_subscription.get_or_create_subscription(db, event.user_id)

        if event.kind == ACTIVATE:
            subscription.status = "active"
            if event.plan is not None:
                subscription.plan = event.plan
            if event.expires_at is not None:
                subscription.expires_at = event.expires_at
        elif event.kind == CANCEL:
            subscription.status = "cancelled"
            subscription.plan = "free"
        elif event.kind == BILLING_ISSUE:
            subscription.status = "billing_issue"

        subscription.provider = event.provider
        if event.product_id:
            subscription.product_id = event.product_id
        if event.stripe_customer_id:
            subscription.stripe_customer_id = event.stripe_customer_id
        if event.stripe_subscription_id:
            subscription.stripe_subscription_id = event.stripe_subscription_id
        if event.occurred_at is not None:
            subscription.last_event_at = event.occurred_at
        subscription.updated_at = datetime.utcnow()

        update_user_tier(db, event.user_id, subscription.plan)

        db.commit()
        db.refresh(subscription)
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(
        f"Subscription for user {event.user_id} is now {subscription.plan}/{subscription.status} "
        f"({event.provider} {event.kind})"
    )
    return subscription, True

# Feature gating

def features_for_tier(tier: str) -> Dict[str, bool]:
    return {
        "voice": tier != "free",
        "video": tier == "pro",
        "unlimited_sessions": tier != "free",
    }

def can_access_feature(feature: str, tier: str, key_store=None) -> bool:
    """Whether a user on `tier` may use `feature`.

    Users who switched on their own keys are gated by key presence only,
    regardless of tier.
    """
    if key_store is not None and key_store.uses_own_keys():
        if feature == "voice":
            return key_store.has_key("elevenlabs")
        if feature == "video":
            return key_store.has_key("tavus")
        if feature == "unlimited_sessions":
            return True
        return False

    return features_for_tier(tier or "free").get(feature, False)

def entitlement_features(entitlements: Dict, now: Optional[datetime] = None) -> Dict[str, bool]:
    """Map RevenueCat entitlements to feature flags; null expiry means non-expiring"""
    now = now or datetime.now(timezone.utc)

    def active(name: str) -> bool:
        entitlement = entitlements.get(name)
        if not entitlement:
            return False
        expires = _parse_iso(entitlement.get("expires_date"))
        return expires is None or expires > now

    return {
        "voice": active("voice"),
        "video": active("video"),
        "unlimited_sessions": active("unlimited"),
    }

# Provider clients

class RevenueCatClient:
    """Subscriber lookups against the RevenueCat REST API"""

    def __init__(self, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key if api_key is not None else config.REVENUECAT_API_KEY
        self.transport = transport

    async def get_subscriber(self, app_user_id: str) -> Dict:
        if not self.api_key:
            raise BillingProviderError("RevenueCat API key not configured")

        try:
            async with httpx.AsyncClient(
                base_url=REVENUECAT_API_URL,
                transport=self.transport,
                timeout=config.HTTP_TIMEOUT_SECONDS,
            ) as client:
                response = await client.get(
                    f"/subscribers/{app_user_id}",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )
                response.raise_for_status()
                return response.json()["subscriber"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise BillingProviderError(f"RevenueCat subscriber lookup failed: {e}") from e

async def get_subscription_status(db: Session, user, client: RevenueCatClient) -> SubscriptionStatus:
    """Live entitlement data when the provider answers, else the last local record"""
    subscription = crud_subscription.get_subscription(db, user.id)
    tier = user.subscription_tier or "free"
    status = subscription.status if subscription else "active"
    expires_at = subscription.expires_at if subscription else None
    synced_at = subscription.updated_at if subscription else None

    try:
        subscriber = await client.get_subscriber(user.id)
        features = entitlement_features(subscriber.get("entitlements") or {})
        source = "provider"
    except (BillingProviderError, AttributeError, TypeError, ValueError) as e:
        logger.warning(f"Falling back to local subscription data for user {user.id}: {e}")
        features = features_for_tier(tier)
        source = "local"

    return SubscriptionStatus(
        tier=tier,
        status=status,
        expires_at=expires_at,
        features=features,
        source=source,
        synced_at=synced_at,
        plan=get_plan(tier),
    )

async def create_checkout_session(user_id: str, plan: str) -> str:
    """Create a Stripe Checkout session for a paid plan and return its URL"""
    if plan not in PAID_PLANS:
        raise ValueError(f"Invalid plan: {plan}")
    if not config.STRIPE_SECRET_KEY:
        raise CheckoutError("Stripe is not configured")

    stripe.api_key = config.STRIPE_SECRET_KEY
    try:
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            payment_method_types=["card"],
            line_items=[{"price": config.STRIPE_PRICE_BY_PLAN[plan], "quantity": 1}],
            mode="subscription",
            success_url=f"{config.FRONTEND_URL}/dashboard?upgrade=success",
            cancel_url=f"{config.FRONTEND_URL}/pricing?upgrade=cancelled",
            client_reference_id=user_id,
            metadata={"userId": user_id, "plan": plan},
        )
    except stripe.StripeError as e:
        raise CheckoutError(str(e)) from e
    return session.url
