# Authentication Dependencies for TrustWork
# Provides dependencies for getting the current principal from a JWT token

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
from typing import Optional
from pydantic import BaseModel

from config.app_config import JWT_SECRET_KEY, JWT_ALGORITHM
from database.config import get_db
from auth.principal import Principal, resolve_principal
from core.errors import Unauthenticated


security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    user_id: Optional[str] = None


def create_access_token(user_id: str, expires_minutes: int = 60 * 24) -> str:
    """Issue a signed token for a profile id."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode({"sub": user_id, "exp": expire}, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[TokenData]:
    """Decode and validate JWT token."""
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if user_id is None:
        return None
    return TokenData(user_id=user_id)


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Principal:
    """
    Validate JWT token and return the current principal.
    This is the core authentication dependency.
    """
    if credentials is None:
        raise Unauthenticated("Missing bearer token")

    token_data = decode_access_token(credentials.credentials)
    if token_data is None:
        raise Unauthenticated("Invalid authentication credentials")

    return resolve_principal(db, token_data.user_id)


async def get_optional_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Optional[Principal]:
    """Return principal if authenticated, else None."""
    if not credentials:
        return None

    token_data = decode_access_token(credentials.credentials)
    if token_data is None:
        return None

    try:
        return resolve_principal(db, token_data.user_id)
    except Unauthenticated:
        return None
