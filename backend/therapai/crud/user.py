"""
User CRUD operations
"""
import uuid
from datetime import datetime
from sqlalchemy.orm import Session
from therapai.models.user import User
from therapai.security import get_password_hash, verify_password
from typing import Optional

def get_user(db: Session, user_id: str) -> Optional[User]:
    """Fetch a user by id"""
    return db.query(User).filter(User.id == user_id).first()

def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """Fetch a user by email"""
    return db.query(User).filter(User.email == email).first()

def create_user(db: Session, email: str, password: str, full_name: Optional[str] = None) -> User:
    """Create a local user with a hashed password"""
    db_user = User(
        email=email,
        hashed_password=get_password_hash(password),
        full_name=full_name,
        auth_provider="local",
        subscription_tier="free",
        preferences={},
    )

    db.add(db_user)
    db.commit()
    db.refresh(db_user)

    return db_user

def create_guest_user(db: Session) -> User:
    """Create the synthetic guest user used when nobody signs in"""
    db_user = User(
        id=f"guest_{uuid.uuid4().hex[:16]}",
        full_name="Guest User",
        auth_provider="guest",
        subscription_tier="free",
        preferences={},
    )

    db.add(db_user)
    db.commit()
    db.refresh(db_user)

    return db_user

def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Return the user when email and password match"""
    user = get_user_by_email(db, email)
    if not user or not user.hashed_password:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user

def map_provider_user(claims: dict) -> dict:
    """Map an auth provider's user object onto local User fields"""
    metadata = claims.get("user_metadata") or {}
    return {
        "id": claims.get("sub") or claims.get("id"),
        "email": claims.get("email"),
        "full_name": metadata.get("full_name") or metadata.get("name"),
        "avatar_url": metadata.get("avatar_url"),
    }

def sync_provider_user(db: Session, claims: dict) -> Optional[User]:
    """Insert or refresh the local mirror of a provider user"""
    fields = map_provider_user(claims)
    if not fields["id"]:
        return None

    user = get_user(db, fields["id"])
    if user is None:
        user = User(
            id=fields["id"],
            auth_provider="supabase",
            subscription_tier="free",
            preferences={},
        )
        db.add(user)

    # Provider data wins, but never blank out what we already have
    for key in ("email", "full_name", "avatar_url"):
        if fields[key]:
            setattr(user, key, fields[key])

    db.commit()
    db.refresh(user)
    return user

def update_profile(
    db: Session,
    user: User,
    full_name: Optional[str] = None,
    preferences: Optional[dict] = None
) -> User:
    """Update editable profile fields"""
    if full_name is not None:
        user.full_name = full_name
    if preferences is not None:
        user.preferences = preferences
    user.updated_at = datetime.utcnow()

    db.commit()
    db.refresh(user)
    return user

def touch_last_active(db: Session, user: User) -> None:
    user.last_active = datetime.utcnow()
    db.commit()

def update_user_tier(db: Session, user_id: str, tier: str) -> Optional[User]:
    """Mirror a subscription plan onto the user row, when the user exists"""
    user = get_user(db, user_id)
    if user:
        user.subscription_tier = tier
        user.updated_at = datetime.utcnow()
    return user
