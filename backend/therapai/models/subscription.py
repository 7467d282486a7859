"""
Subscription and stored API key models
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from therapai.database import Base

class Subscription(Base):
    """Billing state of one user, one row per user"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    # No foreign key: provider webhooks may arrive before the user is mirrored locally
    user_id = Column(String(64), unique=True, index=True, nullable=False)

    plan = Column(String, nullable=False, default="free")  # free, premium, pro
    status = Column(String, nullable=False, default="active")  # active, cancelled, billing_issue

    provider = Column(String)  # revenuecat, stripe
    product_id = Column(String)
    stripe_customer_id = Column(String, index=True)
    stripe_subscription_id = Column(String, index=True)

    expires_at = Column(DateTime)
    last_event_at = Column(DateTime)  # provider event time of the last applied webhook

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class UserApiKeys(Base):
    """Third-party API keys a user supplied for the own-keys path"""
    __tablename__ = "user_api_keys"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), unique=True, nullable=False)

    keys = Column(JSON, default=dict)  # {"gemini": ..., "elevenlabs": ..., "tavus": ...}
    use_own_keys = Column(Boolean, default=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="api_keys")
