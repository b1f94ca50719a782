"""
Authentication service: password hashing and JWT access/refresh tokens
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

import bcrypt
from jose import jwt, JWTError
from fastapi import HTTPException, status

from eduaccess.config import settings

ALGORITHM = "HS256"
ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def _secret_for(token_type: str) -> str:
    return settings.REFRESH_SECRET_KEY if token_type == REFRESH_TOKEN else settings.SECRET_KEY


def create_token(user_id: int, token_type: str = ACCESS_TOKEN, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed JWT for a user

    Args:
        user_id: ID of the user the token is issued to
        token_type: "access" or "refresh"
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token
    """
    if expires_delta is None:
        minutes = (
            settings.REFRESH_TOKEN_EXPIRE_MINUTES
            if token_type == REFRESH_TOKEN
            else settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )
        expires_delta = timedelta(minutes=minutes)

    to_encode = {
        "sub": str(user_id),
        "type": token_type,
        "exp": datetime.utcnow() + expires_delta,
    }
    return jwt.encode(to_encode, _secret_for(token_type), algorithm=ALGORITHM)


def create_token_pair(user_id: int) -> Dict[str, str]:
    return {
        "access_token": create_token(user_id, ACCESS_TOKEN),
        "refresh_token": create_token(user_id, REFRESH_TOKEN),
        "token_type": "bearer",
    }


def verify_token(token: str, token_type: str = ACCESS_TOKEN) -> Dict[str, Any]:
    """
    Verify and decode a JWT token

    Args:
        token: JWT token to verify
        token_type: Expected token type

    Returns:
        Decoded token payload

    Raises:
        HTTPException: If token is invalid, expired or of the wrong type
    """
    credentials_error = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid authentication credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, _secret_for(token_type), algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_error

    if payload.get("sub") is None or payload.get("type") != token_type:
        raise credentials_error
    return payload
