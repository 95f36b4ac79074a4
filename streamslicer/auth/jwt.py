"""JWT token handling."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from streamslicer.errors import ConfigurationError


ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = 30


def create_access_token(
    user_id: str,
    secret_key: str,
    expires_delta: Optional[timedelta] = None,
    email: Optional[str] = None,
) -> str:
    """Create JWT access token."""
    if not secret_key:
        raise ConfigurationError("SECRET_KEY is not configured")

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS)

    to_encode = {
        "sub": user_id,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    if email:
        to_encode["email"] = email

    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def verify_token(token: str, secret_key: str) -> Optional[str]:
    """Verify JWT token and return user_id."""
    if not secret_key:
        return None

    try:
        payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            return None
        return user_id
    except JWTError:
        return None
