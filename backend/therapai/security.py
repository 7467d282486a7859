"""
Password hashing and JWT helpers
"""
from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from passlib.context import CryptContext

from therapai import config

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a session token; `sub` carries the user id"""
    now = datetime.utcnow()
    lifetime = expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)

    claims = dict(data)
    claims.update({"iat": now, "exp": now + lifetime})
    return jwt.encode(claims, config.SECRET_KEY, algorithm=config.ALGORITHM)

def decode_access_token(token: str) -> Optional[dict]:
    """Claims of one of our own tokens, None when invalid or expired"""
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        return None

def decode_provider_token(token: str, secret: str) -> Optional[dict]:
    """Claims of an access token issued by the auth provider (Supabase)"""
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except JWTError:
        return None
