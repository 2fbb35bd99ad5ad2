from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import logging
import os
import secrets

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("JWT_SECRET") or os.getenv("SECRET_KEY") or None
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# Without a secret, token claims are trusted unverified (local development only).
SOFT_FAIL = SECRET_KEY is None
_DEV_SECRET = secrets.token_urlsafe(32)

http_bearer = HTTPBearer(auto_error=False)


def warn_if_unverified():
    if SOFT_FAIL:
        logger.warning(
            "JWT_SECRET is not set: chat tokens are accepted WITHOUT signature verification. "
            "Never run like this outside local development."
        )


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if "sub" in to_encode:
        to_encode["sub"] = str(to_encode["sub"])
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY or _DEV_SECRET, algorithm=ALGORITHM)


def decode_user_id(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        if SOFT_FAIL:
            payload = jwt.get_unverified_claims(token)
        else:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as exc:
        logger.warning("Token rejected: %s", exc)
        return None
    user_id = payload.get("sub") or payload.get("id")
    return str(user_id) if user_id else None


def extract_token(query_params, headers) -> Optional[str]:
    token = query_params.get("token") or query_params.get("access_token")
    if token:
        return token
    header = headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def get_current_user_id(credentials: HTTPAuthorizationCredentials = Depends(http_bearer)) -> str:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = decode_user_id(credentials.credentials)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id
