"""
Subscription CRUD operations
"""
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
from therapai.models.subscription import Subscription

def get_subscription(db: Session, user_id: str) -> Optional[Subscription]:
    """The subscription row of a user, if any"""
    return db.query(Subscription).filter(Subscription.user_id == user_id).first()

def get_subscription_by_stripe_customer(db: Session, customer_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.stripe_customer_id == customer_id
    ).first()

def get_subscription_by_stripe_subscription(db: Session, subscription_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.stripe_subscription_id == subscription_id
    ).first()

def get_or_create_subscription(db: Session, user_id: str) -> Subscription:
    """Return the user's row, adding a free/active one to the session when missing.

    Does not commit; the caller owns the transaction.
    """
    subscription = get_subscription(db, user_id)
    if subscription is None:
        subscription = Subscription(
            user_id=user_id,
            plan="free",
            status="active",
            created_at=datetime.utcnow()
        )
        db.add(subscription)
    return subscription
