from datetime import datetime, timedelta
from typing import Optional
import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

import config
from engine.errors import Unauthenticated

# JWT Configuration
SECRET_KEY = config.JWT_SECRET_KEY
ALGORITHM = "HS256"

ACCESS_TOKEN_EXPIRE_MINUTES = 30

# HTTP Bearer for token extraction; a missing header is reported by us as 401
security = HTTPBearer(auto_error=False)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT access token.
    Issued by the identity service in production; used here by tests and tooling.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire, "type": "access"})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

def decode_access_token(token: str) -> dict:
    """Decode and validate JWT access token"""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Access token has expired. Please refresh.")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Could not validate credentials")

    # Verify token type
    if payload.get("type") != "access":
        raise Unauthenticated("Invalid token type")

    return payload

async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    """Extract and validate current user from JWT token"""
    if credentials is None:
        raise Unauthenticated("Not authenticated")

    payload = decode_access_token(credentials.credentials)

    user_id = payload.get("user_id")
    if user_id is None:
        raise Unauthenticated("Invalid authentication credentials")

    return payload
