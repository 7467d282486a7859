"""
Subscription and billing routes
"""
import json
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional

from therapai import billing, config
from therapai.api_keys import ApiKeyStore
from therapai.crud import subscription as crud_subscription
from therapai.database import get_db
from therapai.routers.deps import get_current_user, get_key_store

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/subscriptions",
    tags=["subscriptions"]
)

# Stripe variant of the webhook lives under the singular prefix
stripe_router = APIRouter(
    prefix="/api/subscription",
    tags=["subscriptions"]
)

class CheckoutRequest(BaseModel):
    plan: str

class SubscriptionResponse(BaseModel):
    user_id: str
    plan: str
    status: str
    provider: Optional[str] = None
    product_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

def get_revenuecat_client() -> billing.RevenueCatClient:
    return billing.RevenueCatClient()

@router.get("/plans")
async def get_plans():
    """Plan catalogue"""
    return {"success": True, "data": config.PLANS}

@router.get("/current")
async def get_current_subscription(
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The caller's local subscription record"""
    subscription = crud_subscription.get_subscription(db, current_user.id)
    if subscription is None:
        return {
            "success": True,
            "data": {"user_id": current_user.id, "plan": "free", "status": "active"},
        }
    return {"success": True, "data": SubscriptionResponse.model_validate(subscription)}

@router.get("/status")
async def get_subscription_status(
    current_user = Depends(get_current_user),
    client: billing.RevenueCatClient = Depends(get_revenuecat_client),
    db: Session = Depends(get_db)
):
    """Live entitlements from RevenueCat, or the local record when it is unreachable"""
    result = await billing.get_subscription_status(db, current_user, client)
    return {
        "success": True,
        "data": {
            "subscription_tier": result.tier,
            "subscription_status": result.status,
            "expires_at": result.expires_at,
            "features": result.features,
            "source": result.source,
            "synced_at": result.synced_at,
            "plan": result.plan,
        },
    }

@router.get("/features")
async def get_feature_access(
    current_user = Depends(get_current_user),
    key_store: ApiKeyStore = Depends(get_key_store)
):
    """Which gated features the caller can use right now"""
    return {
        "success": True,
        "data": {
            feature: billing.can_access_feature(feature, current_user.subscription_tier, key_store)
            for feature in billing.FEATURES
        },
    }

@router.post("/checkout")
async def create_checkout(
    request: CheckoutRequest,
    current_user = Depends(get_current_user)
):
    """Start a Stripe Checkout session for a paid plan"""
    if request.plan not in billing.PAID_PLANS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid plan"
        )

    try:
        url = await billing.create_checkout_session(current_user.id, request.plan)
    except billing.CheckoutError as e:
        logger.error(f"Create checkout session error for user {current_user.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create checkout session"
        )
    return {"success": True, "data": {"url": url}}

def _apply(db: Session, event: Optional[billing.BillingEvent]) -> dict:
    if event is None:
        return {"success": True, "data": {"applied": False}}

    try:
        subscription, applied = billing.apply_billing_event(db, event)
    except SQLAlchemyError as e:
        logger.error(f"Webhook database error for user {event.user_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    data = {"applied": applied}
    if subscription is not None:
        data.update({"user_id": subscription.user_id, "plan": subscription.plan, "status": subscription.status})
    return {"success": True, "data": data}

@router.post("/webhook")
async def revenuecat_webhook(request: Request, db: Session = Depends(get_db)):
    """RevenueCat subscription events"""
    body = await request.body()

    try:
        billing.verify_webhook_signature(
            body,
            request.headers.get(billing.REVENUECAT_SIGNATURE_HEADER),
            config.REVENUECAT_WEBHOOK_SECRET,
        )
    except billing.WebhookVerificationError as e:
        logger.warning(f"Rejected RevenueCat webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        event = billing.parse_revenuecat_event(json.loads(body))
    except (ValueError, billing.InvalidWebhookPayload) as e:
        logger.error(f"Malformed RevenueCat webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload"
        )

    return _apply(db, event)

@stripe_router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Stripe subscription events"""
    body = await request.body()

    try:
        payload = billing.construct_stripe_event(
            body,
            request.headers.get("stripe-signature"),
            config.STRIPE_WEBHOOK_SECRET,
        )
        event = billing.parse_stripe_event(db, payload)
    except billing.WebhookVerificationError as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook signature verification failed"
        )
    except billing.InvalidWebhookPayload as e:
        logger.error(f"Malformed Stripe webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload"
        )

    return _apply(db, event)
