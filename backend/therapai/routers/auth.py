"""
Authentication routes
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional

from therapai import config
from therapai.database import get_db
from therapai.crud import user as crud_user
from therapai.routers.deps import get_current_user
from therapai.security import create_access_token, decode_provider_token

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/auth",
    tags=["auth"]
)

class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    full_name: Optional[str] = None

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class ProviderSession(BaseModel):
    """Access token issued by the external auth provider"""
    access_token: str = Field(..., min_length=1)

class UserResponse(BaseModel):
    id: str
    email: Optional[str]
    full_name: Optional[str]
    avatar_url: Optional[str]
    subscription_tier: str
    auth_provider: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True

def _session_payload(user) -> dict:
    token = create_access_token(data={"sub": user.id, "email": user.email})
    return {
        "success": True,
        "data": {
            "user": UserResponse.model_validate(user),
            "token": token,
            "token_type": "bearer",
        },
    }

@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    user_data: UserRegister,
    db: Session = Depends(get_db)
):
    """Sign up with email and password"""
    if crud_user.get_user_by_email(db, email=user_data.email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User already exists"
        )

    user = crud_user.create_user(
        db=db,
        email=user_data.email,
        password=user_data.password,
        full_name=user_data.full_name
    )
    logger.info(f"Registered user {user.id}")
    return _session_payload(user)

@router.post("/login")
async def login(
    credentials: UserLogin,
    db: Session = Depends(get_db)
):
    """Sign in with email and password"""
    user = crud_user.authenticate_user(
        db=db,
        email=credentials.email,
        password=credentials.password
    )

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _session_payload(user)

@router.post("/guest", status_code=status.HTTP_201_CREATED)
async def continue_as_guest(db: Session = Depends(get_db)):
    """Create a throwaway free-tier user"""
    user = crud_user.create_guest_user(db)
    logger.info(f"Created guest user {user.id}")
    return _session_payload(user)

@router.post("/provider")
async def provider_session(
    session_data: ProviderSession,
    db: Session = Depends(get_db)
):
    """Exchange an auth provider (Supabase) access token for a local session"""
    if not config.SUPABASE_JWT_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provider sign-in is not configured"
        )

    claims = decode_provider_token(session_data.access_token, config.SUPABASE_JWT_SECRET)
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid provider token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = crud_user.sync_provider_user(db, claims)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Provider token has no subject"
        )

    return _session_payload(user)

@router.get("/me")
async def read_users_me(current_user = Depends(get_current_user)):
    """The signed-in user"""
    return {"success": True, "data": UserResponse.model_validate(current_user)}
