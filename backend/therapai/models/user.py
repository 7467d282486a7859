"""
User model
"""
import uuid
from sqlalchemy import Column, String, DateTime, Boolean, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from therapai.database import Base

class User(Base):
    """Local mirror of an authenticated user"""
    __tablename__ = "users"

    # uuid for local sign-ups, the provider's subject id, or guest_<hex>
    id = Column(String(64), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True, nullable=True)
    hashed_password = Column(String, nullable=True)
    full_name = Column(String)
    avatar_url = Column(String)
    auth_provider = Column(String, default="local")  # local, supabase, guest
    subscription_tier = Column(String, default="free")  # free, premium, pro
    preferences = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_active = Column(DateTime)

    sessions = relationship("TherapySession", back_populates="user")
    api_keys = relationship("UserApiKeys", back_populates="user", uselist=False)
