# cartsync/utils/security.py
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from cartsync.utils.settings import JWT_ALGORITHM, SECRET_KEY


def create_access_token(user_id: str, expires_delta: timedelta = timedelta(hours=1)) -> str:
    """Issue a bearer token. Tokens normally come from the auth service; this is for tooling and tests."""
    now = datetime.now(timezone.utc)
    to_encode = {"sub": str(user_id), "iat": now, "exp": now + expires_delta}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


def verify_token(token: str) -> Optional[str]:
    """Return the user id (``sub``) of a valid token, None otherwise."""
    payload = decode_token(token)
    if payload:
        return payload.get("sub")
    return None
